"""Transaction storage kept in a local LMDB file, with sorted buckets like a B+tree store."""

from __future__ import annotations

import logging
import math
from collections.abc import Collection, Iterator
from datetime import datetime, timedelta
from typing import Any, Optional, Union

import lmdb

from .storage import (
    KVStore,
    NotFoundError,
    Store,
    TransBranchStore,
    TransGlobalStore,
    UniqueConflictError,
)

log = logging.getLogger(__name__)

BUCKET_GLOBAL = b"global"
BUCKET_BRANCHES = b"branches"
BUCKET_INDEX = b"index"
BUCKET_KV = b"kv"
ALL_BUCKETS = (BUCKET_BRANCHES, BUCKET_GLOBAL, BUCKET_INDEX, BUCKET_KV)

DEFAULT_PATH = "./dtm.bolt"
DEFAULT_MAP_SIZE = 1 << 30


def _now() -> datetime:
    return datetime.now().astimezone()


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.astimezone()


def _unix(value: Optional[datetime]) -> int:
    if value is None:
        raise ValueError("next_cron_time is required")
    return math.floor(value.timestamp())


def _open_bucket(env: lmdb.Environment, txn: lmdb.Transaction, name: bytes) -> Optional[Any]:
    try:
        return env.open_db(name, txn=txn, create=False)
    except lmdb.NotFoundError:
        return None


def _iter_from(txn: lmdb.Transaction, db: Any, start: bytes) -> Iterator[tuple[bytes, bytes]]:
    """Yield (key, value) pairs from the first key >= start to the end."""
    cursor = txn.cursor(db=db)
    positioned = cursor.set_range(start) if start else cursor.first()
    if not positioned:
        return
    yield from cursor.iternext()


def initialize_buckets(env: lmdb.Environment) -> dict[bytes, Any]:
    """Make sure every bucket exists; return their handles by name."""
    with env.begin(write=True) as txn:
        return {name: env.open_db(name, txn=txn, create=True) for name in ALL_BUCKETS}


def cleanup_expired_data(expire: Union[timedelta, int, float], env: lmdb.Environment) -> None:
    """Delete transactions finished or rolled back longer than expire ago, with their branches and index."""
    if not isinstance(expire, timedelta):
        expire = timedelta(seconds=expire)
    if expire <= timedelta(0):
        return
    last_keep = _now() - expire
    with env.begin(write=True) as txn:
        bucket = _open_bucket(env, txn, BUCKET_GLOBAL)
        if bucket is None:
            return
        expired: set[str] = set()
        for key, value in _iter_from(txn, bucket, b""):
            trans = TransGlobalStore.from_json(value)
            done = trans.finish_time or trans.rollback_time
            if done is not None and last_keep > _aware(done):
                expired.add(key.decode())
        cleanup_global_with_gids(env, txn, expired)
        cleanup_branch_with_gids(env, txn, expired)
        cleanup_index_with_gids(env, txn, expired)


def cleanup_global_with_gids(env: lmdb.Environment, txn: lmdb.Transaction, gids: Optional[Collection[str]]) -> None:
    """Delete the global records of the given gids."""
    bucket = _open_bucket(env, txn, BUCKET_GLOBAL)
    if bucket is None:
        return
    gids = gids or ()
    log.debug("Start to cleanup %d gids", len(gids))
    for gid in gids:
        log.debug("Start to delete gid: %s", gid)
        txn.delete(gid.encode(), db=bucket)


def cleanup_branch_with_gids(env: lmdb.Environment, txn: lmdb.Transaction, gids: Optional[Collection[str]]) -> None:
    """Delete the branch records of the given gids."""
    bucket = _open_bucket(env, txn, BUCKET_BRANCHES)
    if bucket is None:
        return
    keys: list[bytes] = []
    for gid in gids or ():
        for key, value in _iter_from(txn, bucket, gid.encode()):
            if TransBranchStore.from_json(value).gid != gid:
                break
            keys.append(key)
    log.debug("Start to cleanup %d branches", len(keys))
    for key in keys:
        log.debug("Start to delete branch: %s", key)
        txn.delete(key, db=bucket)


def cleanup_index_with_gids(env: lmdb.Environment, txn: lmdb.Transaction, gids: Optional[Collection[str]]) -> None:
    """Delete the cron index entries of the given gids."""
    bucket = _open_bucket(env, txn, BUCKET_INDEX)
    if bucket is None:
        return
    gids = gids or ()
    keys = []
    for key, _ in _iter_from(txn, bucket, b""):
        parts = key.decode().split("-")
        if len(parts) == 2 and parts[1] in gids:
            keys.append(key)
    log.debug("Start to cleanup %d indexes", len(keys))
    for key in keys:
        log.debug("Start to delete index: %s", key)
        txn.delete(key, db=bucket)


class BoltStore(Store):
    """Store backed by a single local LMDB file."""

    def __init__(
        self,
        data_expire: int,
        retry_interval: int,
        path: str = DEFAULT_PATH,
        map_size: int = DEFAULT_MAP_SIZE,
    ) -> None:
        self.data_expire = data_expire
        self.retry_interval = retry_interval
        self._env = lmdb.open(str(path), subdir=False, max_dbs=len(ALL_BUCKETS) + 4, map_size=map_size)
        try:
            self._db = initialize_buckets(self._env)
            cleanup_expired_data(timedelta(seconds=data_expire), self._env)
        except Exception:
            self._env.close()
            raise

    def close(self) -> None:
        """Close the underlying file."""
        self._env.close()

    def __enter__(self) -> BoltStore:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    # -- helpers working inside a transaction --

    def _get_global(self, txn: lmdb.Transaction, gid: str) -> Optional[TransGlobalStore]:
        if not gid:
            return None
        raw = txn.get(gid.encode(), db=self._db[BUCKET_GLOBAL])
        return None if raw is None else TransGlobalStore.from_json(raw)

    def _put_global(self, txn: lmdb.Transaction, global_: TransGlobalStore) -> None:
        txn.put(global_.gid.encode(), global_.to_json().encode(), db=self._db[BUCKET_GLOBAL])

    def _get_branches(self, txn: lmdb.Transaction, gid: str) -> list[TransBranchStore]:
        branches = []
        for _, value in _iter_from(txn, self._db[BUCKET_BRANCHES], gid.encode()):
            branch = TransBranchStore.from_json(value)
            if branch.gid != gid:
                break
            branches.append(branch)
        return branches

    def _put_branches(self, txn: lmdb.Transaction, branches: list[TransBranchStore], start: int) -> None:
        if not branches:
            return
        if start == -1:
            first = branches[0]
            existing = self._get_branches(txn, first.gid)
            if any(b.branch_id == first.branch_id and b.op == first.op for b in existing):
                raise UniqueConflictError()
            start = len(existing)
        for offset, branch in enumerate(branches, start):
            key = f"{branch.gid}{offset:03d}".encode()
            txn.put(key, branch.to_json().encode(), db=self._db[BUCKET_BRANCHES])

    def _put_index(self, txn: lmdb.Transaction, unix: int, gid: str) -> None:
        txn.put(f"{unix}-{gid}".encode(), gid.encode(), db=self._db[BUCKET_INDEX])

    def _del_index(self, txn: lmdb.Transaction, unix: int, gid: str) -> None:
        txn.delete(f"{unix}-{gid}".encode(), db=self._db[BUCKET_INDEX])

    @staticmethod
    def _kv_key(cat: str, key: str) -> bytes:
        return f"{cat}-{key}".encode()

    def _get_kv(self, txn: lmdb.Transaction, cat: str, key: str) -> Optional[KVStore]:
        raw = txn.get(self._kv_key(cat, key), db=self._db[BUCKET_KV])
        return None if raw is None else KVStore.from_json(raw)

    def _put_kv(self, txn: lmdb.Transaction, kv: KVStore) -> None:
        txn.put(self._kv_key(kv.cat, kv.k), kv.to_json().encode(), db=self._db[BUCKET_KV])

    # -- Store interface --

    def ping(self) -> None:
        """The local file is always reachable once opened."""
        return None

    def populate_data(self, skip_drop: bool) -> None:
        if skip_drop:
            return
        with self._env.begin(write=True) as txn:
            for name in (BUCKET_INDEX, BUCKET_BRANCHES, BUCKET_GLOBAL, BUCKET_KV):
                txn.drop(self._db[name], delete=False)
        log.info("Reset all data for boltdb")

    def find_trans_global_store(self, gid: str) -> Optional[TransGlobalStore]:
        with self._env.begin() as txn:
            return self._get_global(txn, gid)

    def scan_trans_global_stores(self, position: str, limit: int) -> tuple[list[TransGlobalStore], str]:
        globals_: list[TransGlobalStore] = []
        start = position.encode()
        with self._env.begin() as txn:
            for key, value in _iter_from(txn, self._db[BUCKET_GLOBAL], start):
                if key == start:
                    continue
                globals_.append(TransGlobalStore.from_json(value))
                if len(globals_) == limit:
                    break
        next_position = "" if len(globals_) < limit else globals_[-1].gid
        return globals_, next_position

    def find_branches(self, gid: str) -> list[TransBranchStore]:
        with self._env.begin() as txn:
            return self._get_branches(txn, gid)

    def update_branches(self, branches: list[TransBranchStore], updates: list[str]) -> int:
        """Branch updates are not supported by this store; nothing is changed."""
        return 0

    def lock_global_save_branches(
        self, gid: str, status: str, branches: list[TransBranchStore], branch_start: int
    ) -> None:
        with self._env.begin(write=True) as txn:
            current = self._get_global(txn, gid)
            if current is None or current.status != status:
                raise NotFoundError()
            self._put_branches(txn, branches, branch_start)

    def may_save_new_trans(self, global_: TransGlobalStore, branches: list[TransBranchStore]) -> None:
        unix = _unix(global_.next_cron_time)
        with self._env.begin(write=True) as txn:
            if self._get_global(txn, global_.gid) is not None:
                raise UniqueConflictError()
            self._put_global(txn, global_)
            self._put_index(txn, unix, global_.gid)
            self._put_branches(txn, branches, 0)

    def change_global_status(
        self, global_: TransGlobalStore, new_status: str, updates: list[str], finished: bool
    ) -> None:
        old = global_.status
        global_.status = new_status
        with self._env.begin(write=True) as txn:
            current = self._get_global(txn, global_.gid)
            if current is None or current.status != old:
                raise NotFoundError()
            if finished:
                self._del_index(txn, _unix(current.next_cron_time), current.gid)
            self._put_global(txn, global_)

    def touch_cron_time(self, global_: TransGlobalStore, next_cron_interval: int, next_cron_time: datetime) -> None:
        old_unix = _unix(global_.next_cron_time)
        global_.update_time = _now()
        global_.next_cron_time = next_cron_time
        global_.next_cron_interval = next_cron_interval
        with self._env.begin(write=True) as txn:
            if self._get_global(txn, global_.gid) is None:
                raise NotFoundError()
            self._del_index(txn, old_unix, global_.gid)
            self._put_global(txn, global_)
            self._put_index(txn, _unix(next_cron_time), global_.gid)

    def lock_one_global_trans(self, expire_in: timedelta) -> Optional[TransGlobalStore]:
        max_key = str(_unix(_now() + expire_in)).encode()
        trans: Optional[TransGlobalStore] = None
        with self._env.begin(write=True) as txn:
            index = self._db[BUCKET_INDEX]
            to_delete = []
            for key, value in _iter_from(txn, index, b""):
                if key > max_key or (trans is not None and not trans.is_finished()):
                    break
                trans = self._get_global(txn, value.decode())
                to_delete.append(key)
            for key in to_delete:
                txn.delete(key, db=index)
            if trans is not None and not trans.is_finished():
                next_time = _now() + timedelta(seconds=self.retry_interval)
                trans.next_cron_time = next_time
                self._put_global(txn, trans)
                # after the deletes: the new key may equal one just removed
                self._put_index(txn, _unix(next_time), trans.gid)
        return trans

    def reset_cron_time(self, after: timedelta, limit: int) -> tuple[int, bool]:
        next_time = _now()
        min_key = str(_unix(_now() + after)).encode()
        succeed_count = 0
        with self._env.begin(write=True) as txn:
            index = self._db[BUCKET_INDEX]
            entries = []
            for entry in _iter_from(txn, index, min_key):
                entries.append(entry)
                if len(entries) > limit:
                    break
            has_remaining = len(entries) > limit
            for key, value in entries[:limit]:
                txn.delete(key, db=index)
                trans = self._get_global(txn, value.decode())
                if trans is None:
                    continue
                trans.next_cron_time = next_time
                self._put_global(txn, trans)
                self._put_index(txn, _unix(next_time), trans.gid)
                succeed_count += 1
        return succeed_count, has_remaining

    def scan_kv(self, cat: str, position: str, limit: int) -> tuple[list[KVStore], str]:
        kvs: list[KVStore] = []
        start = position.encode()
        prefix = cat.encode()
        with self._env.begin() as txn:
            for key, value in _iter_from(txn, self._db[BUCKET_KV], start):
                if key == start or not key.startswith(prefix):
                    continue
                kvs.append(KVStore.from_json(value))
                if len(kvs) == limit:
                    break
        next_position = "" if len(kvs) < limit else f"{cat}-{kvs[-1].k}"
        return kvs, next_position

    def find_kv(self, cat: str, key: str) -> list[KVStore]:
        with self._env.begin() as txn:
            if cat and key:
                found = self._get_kv(txn, cat, key)
                return [] if found is None else [found]
            prefix = cat.encode()
            return [
                KVStore.from_json(value)
                for k, value in _iter_from(txn, self._db[BUCKET_KV], b"")
                if k.startswith(prefix)
            ]

    def update_kv(self, kv: KVStore) -> None:
        kv.update_time = _now()
        old_version = kv.version
        kv.version = old_version + 1
        with self._env.begin(write=True) as txn:
            current = self._get_kv(txn, kv.cat, kv.k)
            if current is None or current.version != old_version:
                raise NotFoundError()
            self._put_kv(txn, kv)

    def delete_kv(self, cat: str, key: str) -> None:
        with self._env.begin(write=True) as txn:
            if self._get_kv(txn, cat, key) is None:
                raise NotFoundError()
            txn.delete(self._kv_key(cat, key), db=self._db[BUCKET_KV])

    def create_kv(self, cat: str, key: str, value: str) -> None:
        now = _now()
        kv = KVStore(create_time=now, update_time=now, cat=cat, k=key, v=value, version=1)
        with self._env.begin(write=True) as txn:
            if self._get_kv(txn, cat, key) is not None:
                raise UniqueConflictError()
            self._put_kv(txn, kv)