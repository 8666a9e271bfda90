"""Choice of the storage backend named by the configuration, one instance per backend."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from typing import Optional

from .config import BOLTDB, MYSQL, POSTGRES, REDIS, ServerConfig
from .storage import Store

log = logging.getLogger(__name__)


class SingletonFactory:
    """Builds a store on first use and hands out that same store afterwards."""

    def __init__(self, creator: Callable[[], Store]) -> None:
        self._creator = creator
        self._store: Optional[Store] = None
        self._lock = threading.Lock()

    def get_storage(self) -> Store:
        """Return the store, creating it the first time."""
        if self._store is None:
            with self._lock:
                if self._store is None:
                    self._store = self._creator()
        return self._store


def _make_factories(config: ServerConfig) -> dict[str, SingletonFactory]:
    def bolt() -> Store:
        from .boltstore import BoltStore

        return BoltStore(config.store.data_expire, config.retry_interval)

    def redis_store() -> Store:
        from .redisstore import RedisStore

        return RedisStore(config)

    def sql() -> Store:
        from .sqlstore import SqlStore

        return SqlStore(config)

    sql_factory = SingletonFactory(sql)
    return {
        BOLTDB: SingletonFactory(bolt),
        REDIS: SingletonFactory(redis_store),
        MYSQL: sql_factory,
        POSTGRES: sql_factory,
    }


_registries: dict[int, tuple[ServerConfig, dict[str, SingletonFactory]]] = {}
_registries_lock = threading.Lock()


def get_store(config: ServerConfig) -> Store:
    """Return the store for the configured driver; the same instance every time."""
    with _registries_lock:
        entry = _registries.get(id(config))
        if entry is None or entry[0] is not config:
            entry = (config, _make_factories(config))
            _registries[id(config)] = entry
    factory = entry[1].get(config.store.driver)
    if factory is None:
        raise ValueError(f"unknown store driver: {config.store.driver!r}")
    return factory.get_storage()


def wait_store_up(config: ServerConfig, interval: float = 3.0) -> None:
    """Block until the configured store answers a ping."""
    while True:
        try:
            get_store(config).ping()
            return
        except Exception as exc:  # any failure means the store is not up yet
            log.info("wait store up: %s", exc)
            time.sleep(interval)