"""Storage records for transactions, branches and key-value pairs, and the store interface."""

from __future__ import annotations

import abc
import base64
import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, ClassVar, Optional

STATUS_FAILED = "failed"
STATUS_SUCCEED = "succeed"


class StorageError(Exception):
    """Base class of storage errors."""


class NotFoundError(StorageError):
    """The queried item is not in storage."""

    def __init__(self, message: str = "storage: NotFound") -> None:
        super().__init__(message)


class UniqueConflictError(StorageError):
    """The item conflicts with an existing unique key."""

    def __init__(self, message: str = "storage: UniqueKeyConflict") -> None:
        super().__init__(message)


_FRACTION = re.compile(r"\.(\d+)")


def _format_time(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    text = value.isoformat()
    if value.tzinfo is not None and value.utcoffset() == timedelta(0) and text.endswith("+00:00"):
        text = text[: -len("+00:00")] + "Z"
    return text


def _parse_time(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    text = str(value)
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    text = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
    result = datetime.fromisoformat(text)
    if result.tzinfo is not None and result.utcoffset() == timedelta(0):
        result = result.replace(tzinfo=timezone.utc)
    return result


def _dumps(data: Any) -> str:
    return json.dumps(data, separators=(",", ":"), ensure_ascii=False)


def _put_nonempty(out: dict[str, Any], pairs: tuple[tuple[str, Any], ...]) -> dict[str, Any]:
    for key, value in pairs:
        if value:
            out[key] = value
    return out


def _base_pairs(record: Any) -> tuple[tuple[str, Any], ...]:
    return (
        ("id", record.id),
        ("create_time", _format_time(record.create_time)),
        ("update_time", _format_time(record.update_time)),
    )


def _str(data: dict[str, Any], key: str) -> str:
    value = data.get(key)
    return "" if value is None else str(value)


def _int(data: dict[str, Any], key: str) -> int:
    return int(data.get(key) or 0)


@dataclass
class TransOptions:
    """Per-transaction options chosen by the client."""

    wait_result: bool = False
    timeout_to_fail: int = 0
    retry_interval: int = 0
    branch_headers: dict[str, str] = field(default_factory=dict)
    request_timeout: int = 0
    retry_limit: int = 0

    def to_dict(self) -> dict[str, Any]:
        """Return the options as a JSON-ready dict, leaving out empty values."""
        return _put_nonempty(
            {},
            (
                ("wait_result", self.wait_result),
                ("timeout_to_fail", self.timeout_to_fail),
                ("retry_interval", self.retry_interval),
                ("branch_headers", dict(self.branch_headers)),
                ("request_timeout", self.request_timeout),
                ("retry_limit", self.retry_limit),
            ),
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TransOptions:
        """Build options from a dict, ignoring unknown keys."""
        headers = data.get("branch_headers") or {}
        return cls(
            wait_result=bool(data.get("wait_result", False)),
            timeout_to_fail=_int(data, "timeout_to_fail"),
            retry_interval=_int(data, "retry_interval"),
            branch_headers={str(k): str(v) for k, v in headers.items()},
            request_timeout=_int(data, "request_timeout"),
            retry_limit=_int(data, "retry_limit"),
        )


@dataclass
class TransGlobalExt:
    """Extra data of a global transaction, stored in its ext_data field."""

    headers: dict[str, str] = field(default_factory=dict)


@dataclass
class TransGlobalStore:
    """Stored record of a global transaction."""

    table_name: ClassVar[str] = "trans_global"

    id: int = 0
    create_time: Optional[datetime] = None
    update_time: Optional[datetime] = None
    gid: str = ""
    trans_type: str = ""
    steps: list[dict[str, str]] = field(default_factory=list)
    payloads: list[str] = field(default_factory=list)
    bin_payloads: list[bytes] = field(default_factory=list)
    status: str = ""
    query_prepared: str = ""
    protocol: str = ""
    finish_time: Optional[datetime] = None
    rollback_time: Optional[datetime] = None
    result: str = ""
    rollback_reason: str = ""
    options: str = ""
    custom_data: str = ""
    next_cron_interval: int = 0
    next_cron_time: Optional[datetime] = None
    owner: str = ""
    ext: TransGlobalExt = field(default_factory=TransGlobalExt)
    ext_data: str = ""
    trans_options: TransOptions = field(default_factory=TransOptions)

    def is_finished(self) -> bool:
        """Return True if the transaction has failed or succeeded."""
        return self.status in (STATUS_FAILED, STATUS_SUCCEED)

    def to_dict(self) -> dict[str, Any]:
        """Return the record as a JSON-ready dict; empty fields are left out."""
        out = _put_nonempty(
            {},
            _base_pairs(self)
            + (
                ("gid", self.gid),
                ("trans_type", self.trans_type),
                ("steps", [dict(step) for step in self.steps]),
                ("payloads", list(self.payloads)),
                ("status", self.status),
                ("query_prepared", self.query_prepared),
                ("protocol", self.protocol),
                ("finish_time", _format_time(self.finish_time)),
                ("rollback_time", _format_time(self.rollback_time)),
                ("result", self.result),
                ("rollback_reason", self.rollback_reason),
                ("options", self.options),
                ("custom_data", self.custom_data),
                ("next_cron_interval", self.next_cron_interval),
                ("next_cron_time", _format_time(self.next_cron_time)),
                ("owner", self.owner),
                ("ext_data", self.ext_data),
            ),
        )
        out.update(self.trans_options.to_dict())
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TransGlobalStore:
        """Build a record from a dict as produced by to_dict."""
        return cls(
            id=_int(data, "id"),
            create_time=_parse_time(data.get("create_time")),
            update_time=_parse_time(data.get("update_time")),
            gid=_str(data, "gid"),
            trans_type=_str(data, "trans_type"),
            steps=[{str(k): str(v) for k, v in step.items()} for step in data.get("steps") or []],
            payloads=[str(p) for p in data.get("payloads") or []],
            status=_str(data, "status"),
            query_prepared=_str(data, "query_prepared"),
            protocol=_str(data, "protocol"),
            finish_time=_parse_time(data.get("finish_time")),
            rollback_time=_parse_time(data.get("rollback_time")),
            result=_str(data, "result"),
            rollback_reason=_str(data, "rollback_reason"),
            options=_str(data, "options"),
            custom_data=_str(data, "custom_data"),
            next_cron_interval=_int(data, "next_cron_interval"),
            next_cron_time=_parse_time(data.get("next_cron_time")),
            owner=_str(data, "owner"),
            ext_data=_str(data, "ext_data"),
            trans_options=TransOptions.from_dict(data),
        )

    def to_json(self) -> str:
        """Return the record as compact JSON."""
        return _dumps(self.to_dict())

    @classmethod
    def from_json(cls, text: str | bytes) -> TransGlobalStore:
        """Parse a record from JSON."""
        return cls.from_dict(json.loads(text))

    def __str__(self) -> str:
        return self.to_json()


@dataclass
class TransBranchStore:
    """Stored record of one branch operation of a transaction."""

    table_name: ClassVar[str] = "trans_branch_op"

    id: int = 0
    create_time: Optional[datetime] = None
    update_time: Optional[datetime] = None
    gid: str = ""
    url: str = ""
    bin_data: bytes = b""
    branch_id: str = ""
    op: str = ""
    status: str = ""
    finish_time: Optional[datetime] = None
    rollback_time: Optional[datetime] = None
    error: Optional[Exception] = field(default=None, compare=False, repr=False)

    def to_dict(self) -> dict[str, Any]:
        """Return the record as a JSON-ready dict; bin_data is base64 encoded."""
        return _put_nonempty(
            {},
            _base_pairs(self)
            + (
                ("gid", self.gid),
                ("url", self.url),
                ("bin_data", base64.b64encode(self.bin_data).decode("ascii") if self.bin_data else ""),
                ("branch_id", self.branch_id),
                ("op", self.op),
                ("status", self.status),
                ("finish_time", _format_time(self.finish_time)),
                ("rollback_time", _format_time(self.rollback_time)),
            ),
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TransBranchStore:
        """Build a record from a dict as produced by to_dict."""
        raw = data.get("bin_data")
        return cls(
            id=_int(data, "id"),
            create_time=_parse_time(data.get("create_time")),
            update_time=_parse_time(data.get("update_time")),
            gid=_str(data, "gid"),
            url=_str(data, "url"),
            bin_data=base64.b64decode(raw) if raw else b"",
            branch_id=_str(data, "branch_id"),
            op=_str(data, "op"),
            status=_str(data, "status"),
            finish_time=_parse_time(data.get("finish_time")),
            rollback_time=_parse_time(data.get("rollback_time")),
        )

    def to_json(self) -> str:
        """Return the record as compact JSON."""
        return _dumps(self.to_dict())

    @classmethod
    def from_json(cls, text: str | bytes) -> TransBranchStore:
        """Parse a record from JSON."""
        return cls.from_dict(json.loads(text))

    def __str__(self) -> str:
        return self.to_json()


@dataclass
class KVStore:
    """Stored key-value pair within a category."""

    table_name: ClassVar[str] = "kv"

    id: int = 0
    create_time: Optional[datetime] = None
    update_time: Optional[datetime] = None
    cat: str = ""
    k: str = ""
    v: str = ""
    version: int = 0

    def to_dict(self) -> dict[str, Any]:
        """Return the pair as a JSON-ready dict."""
        out = _put_nonempty({}, _base_pairs(self))
        out.update({"cat": self.cat, "k": self.k, "v": self.v, "version": self.version})
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> KVStore:
        """Build a pair from a dict as produced by to_dict."""
        return cls(
            id=_int(data, "id"),
            create_time=_parse_time(data.get("create_time")),
            update_time=_parse_time(data.get("update_time")),
            cat=_str(data, "cat"),
            k=_str(data, "k"),
            v=_str(data, "v"),
            version=_int(data, "version"),
        )

    def to_json(self) -> str:
        """Return the pair as compact JSON."""
        return _dumps(self.to_dict())

    @classmethod
    def from_json(cls, text: str | bytes) -> KVStore:
        """Parse a pair from JSON."""
        return cls.from_dict(json.loads(text))


class Store(abc.ABC):
    """Interface every storage backend implements."""

    @abc.abstractmethod
    def ping(self) -> None:
        """Check the backend is reachable; raise if it is not."""

    @abc.abstractmethod
    def populate_data(self, skip_drop: bool) -> None:
        """Create the storage layout, dropping existing data unless skip_drop."""

    @abc.abstractmethod
    def find_trans_global_store(self, gid: str) -> Optional[TransGlobalStore]:
        """Return the global transaction with this gid, or None."""

    @abc.abstractmethod
    def scan_trans_global_stores(self, position: str, limit: int) -> tuple[list[TransGlobalStore], str]:
        """Return up to limit transactions after position, and the next position ('' at the end)."""

    @abc.abstractmethod
    def find_branches(self, gid: str) -> list[TransBranchStore]:
        """Return the branches of a transaction in order."""

    @abc.abstractmethod
    def update_branches(self, branches: list[TransBranchStore], updates: list[str]) -> int:
        """Update the named columns of branches; return the affected count."""

    @abc.abstractmethod
    def lock_global_save_branches(
        self, gid: str, status: str, branches: list[TransBranchStore], branch_start: int
    ) -> None:
        """Save branches if the transaction has the given status; raise NotFoundError otherwise."""

    @abc.abstractmethod
    def may_save_new_trans(self, global_: TransGlobalStore, branches: list[TransBranchStore]) -> None:
        """Save a new transaction; raise UniqueConflictError if the gid exists."""

    @abc.abstractmethod
    def change_global_status(
        self, global_: TransGlobalStore, new_status: str, updates: list[str], finished: bool
    ) -> None:
        """Move a transaction to new_status; raise NotFoundError if its status changed meanwhile."""

    @abc.abstractmethod
    def touch_cron_time(self, global_: TransGlobalStore, next_cron_interval: int, next_cron_time: datetime) -> None:
        """Set the next time the transaction is picked up by the cron job."""

    @abc.abstractmethod
    def lock_one_global_trans(self, expire_in: timedelta) -> Optional[TransGlobalStore]:
        """Lock and return one unfinished transaction due within expire_in, or None."""

    @abc.abstractmethod
    def reset_cron_time(self, after: timedelta, limit: int) -> tuple[int, bool]:
        """Make transactions due later than after due now; return (count, has_remaining)."""

    @abc.abstractmethod
    def scan_kv(self, cat: str, position: str, limit: int) -> tuple[list[KVStore], str]:
        """Return up to limit pairs of cat after position, and the next position."""

    @abc.abstractmethod
    def find_kv(self, cat: str, key: str) -> list[KVStore]:
        """Return the pairs matching cat and key; empty arguments match everything."""

    @abc.abstractmethod
    def update_kv(self, kv: KVStore) -> None:
        """Store a new value, bumping its version; raise NotFoundError on a version mismatch."""

    @abc.abstractmethod
    def delete_kv(self, cat: str, key: str) -> None:
        """Delete a pair; raise NotFoundError if it does not exist."""

    @abc.abstractmethod
    def create_kv(self, cat: str, key: str, value: str) -> None:
        """Create a pair with version 1; raise UniqueConflictError if it exists."""