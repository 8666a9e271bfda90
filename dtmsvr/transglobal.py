"""Global transactions as handled by the server, and the processors that drive them."""

from __future__ import annotations

import enum
import json
import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Union

from .storage import TransBranchStore, TransGlobalStore

log = logging.getLogger(__name__)

PROTOCOL_HTTP = "http"


class CronType(enum.IntEnum):
    """How the next cron time of a transaction is chosen."""

    BACKOFF = 0
    RESET = 1
    KEEP = 2


class TransProcessor(ABC):
    """Drives one kind of global transaction."""

    @abstractmethod
    def gen_branches(self) -> list[TransBranchStore]:
        """Return the branches to save when the transaction is created."""

    @abstractmethod
    def process_once(self, branches: list[TransBranchStore]) -> None:
        """Advance the transaction one step, raising on failure."""


ProcessorCreator = Callable[["TransGlobal"], TransProcessor]

_processor_creators: dict[str, ProcessorCreator] = {}
_creators_lock = threading.Lock()


def register_processor_creator(trans_type: str, creator: ProcessorCreator) -> None:
    """Register the processor factory used for ``trans_type``."""
    with _creators_lock:
        _processor_creators[trans_type] = creator


@dataclass
class TransGlobal:
    """A stored global transaction together with request-only data."""

    store: TransGlobalStore = field(default_factory=TransGlobalStore)
    req_extra: dict[str, str] = field(default_factory=dict)
    bin_payloads: list[bytes] = field(default_factory=list)
    context: Any = None
    last_touched: Optional[datetime] = None
    update_branch_sync: bool = False

    def setup_payloads(self) -> None:
        """Collect payloads and step data as bytes, and default the protocol."""
        self.bin_payloads.extend(p.encode() for p in self.store.payloads or [])
        self.bin_payloads.extend(
            step["data"].encode() for step in self.store.steps or [] if step.get("data")
        )
        if not self.store.protocol:
            self.store.protocol = PROTOCOL_HTTP

    def get_processor(self) -> TransProcessor:
        """Build the processor registered for this transaction's type."""
        with _creators_lock:
            creator = _processor_creators.get(self.store.trans_type)
        if creator is None:
            raise ValueError(f"unknown trans type: {self.store.trans_type}")
        return creator(self)


def _from_mapping(data: Any) -> TransGlobal:
    if not isinstance(data, Mapping):
        raise ValueError("transaction should be a JSON object")
    body = dict(data)
    req_extra = body.pop("req_extra", None) or {}
    if not isinstance(req_extra, Mapping):
        raise ValueError("req_extra should be an object")
    trans = TransGlobal(
        store=TransGlobalStore.from_dict(body),
        req_extra={str(k): str(v) for k, v in req_extra.items()},
    )
    trans.setup_payloads()
    return trans


def trans_from_json(raw: Union[str, bytes]) -> TransGlobal:
    """Build a transaction from a JSON request body."""
    log.debug("creating trans in prepare")
    return _from_mapping(json.loads(raw))


def trans_from_jrpc_params(params: Any) -> TransGlobal:
    """Build a transaction from the params of a JSON-RPC request."""
    return _from_mapping(params)