"""Transaction storage kept in a relational database (MySQL or PostgreSQL)."""

from __future__ import annotations

import logging
import sys
import threading
import uuid
from datetime import datetime, timedelta
from typing import Any, Optional

import sqlalchemy as sa
from sqlalchemy.engine import URL, Connection, Engine
from sqlalchemy.exc import IntegrityError

from .config import MYSQL, POSTGRES, ServerConfig
from .storage import (
    KVStore,
    NotFoundError,
    Store,
    TransBranchStore,
    TransGlobalStore,
    UniqueConflictError,
)

log = logging.getLogger(__name__)

_UNFINISHED = ("prepared", "aborting", "submitted")
_DRIVER_NAMES = {MYSQL: "mysql+pymysql", POSTGRES: "postgresql"}


def _id_type() -> Any:
    return sa.BigInteger().with_variant(sa.Integer(), "sqlite")


def _to_db(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is not None:
        return value.astimezone().replace(tzinfo=None)
    return value


def _from_db(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    return value.astimezone() if value.tzinfo is None else value


def _time_after(seconds: float) -> datetime:
    """Local time ``seconds`` from now, truncated to whole seconds."""
    return (datetime.now() + timedelta(seconds=seconds)).replace(microsecond=0)


def _nonzero(values: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in values.items() if v is not None and v != "" and v != 0 and v != b""}


def _pick(values: dict[str, Any], columns: list[str]) -> dict[str, Any]:
    unknown = [c for c in columns if c not in values]
    if unknown:
        raise ValueError(f"unknown columns: {', '.join(unknown)}")
    return {c: values[c] for c in columns}


class SqlStore(Store):
    """Store backed by a MySQL or PostgreSQL database."""

    def __init__(self, config: Optional[ServerConfig] = None, engine: Optional[Engine] = None) -> None:
        self.config = config if config is not None else ServerConfig()
        self._engine_value = engine
        self._lock = threading.Lock()
        schema = self.config.store.schema if self.config.store.driver == POSTGRES else None
        self.metadata = sa.MetaData()
        self.trans_global = sa.Table(
            TransGlobalStore.table_name,
            self.metadata,
            sa.Column("id", _id_type(), primary_key=True, autoincrement=True),
            sa.Column("gid", sa.String(128), nullable=False, unique=True),
            sa.Column("trans_type", sa.String(45), nullable=False, default=""),
            sa.Column("status", sa.String(12), nullable=False, default=""),
            sa.Column("query_prepared", sa.String(1024), nullable=False, default=""),
            sa.Column("protocol", sa.String(45), nullable=False, default=""),
            sa.Column("create_time", sa.DateTime),
            sa.Column("update_time", sa.DateTime),
            sa.Column("finish_time", sa.DateTime),
            sa.Column("rollback_time", sa.DateTime),
            sa.Column("options", sa.String(1024), default=""),
            sa.Column("custom_data", sa.String(1024), default=""),
            sa.Column("next_cron_interval", sa.Integer, default=0),
            sa.Column("next_cron_time", sa.DateTime),
            sa.Column("owner", sa.String(128), nullable=False, default=""),
            sa.Column("ext_data", sa.Text),
            sa.Column("result", sa.String(1024), default=""),
            sa.Column("rollback_reason", sa.String(1024), default=""),
            schema=schema,
        )
        self.trans_branch = sa.Table(
            TransBranchStore.table_name,
            self.metadata,
            sa.Column("id", _id_type(), primary_key=True, autoincrement=True),
            sa.Column("gid", sa.String(128), nullable=False),
            sa.Column("url", sa.String(1024), nullable=False, default=""),
            sa.Column("bin_data", sa.LargeBinary),
            sa.Column("branch_id", sa.String(128), nullable=False),
            sa.Column("op", sa.String(45), nullable=False),
            sa.Column("status", sa.String(45), nullable=False),
            sa.Column("finish_time", sa.DateTime),
            sa.Column("rollback_time", sa.DateTime),
            sa.Column("create_time", sa.DateTime),
            sa.Column("update_time", sa.DateTime),
            sa.UniqueConstraint("gid", "branch_id", "op", name="gid_branch_uniq"),
            schema=schema,
        )
        self.kv = sa.Table(
            KVStore.table_name,
            self.metadata,
            sa.Column("id", _id_type(), primary_key=True, autoincrement=True),
            sa.Column("cat", sa.String(45), nullable=False),
            sa.Column("k", sa.String(128), nullable=False),
            sa.Column("v", sa.Text),
            sa.Column("version", sa.BigInteger, default=1),
            sa.Column("create_time", sa.DateTime),
            sa.Column("update_time", sa.DateTime),
            sa.UniqueConstraint("cat", "k", name="uniq_k"),
            schema=schema,
        )

    # -- connection --

    @property
    def _engine(self) -> Engine:
        if self._engine_value is None:
            with self._lock:
                if self._engine_value is None:
                    self._engine_value = self._create_engine()
        return self._engine_value

    def _create_engine(self) -> Engine:
        db = self.config.store.get_db_conf()
        drivername = _DRIVER_NAMES.get(db.driver)
        if drivername is None:
            raise ValueError(f"unsupported database driver: {db.driver!r}")
        url = URL.create(
            drivername,
            username=db.user or None,
            password=db.password or None,
            host=db.host or None,
            port=db.port or None,
            database=db.db or None,
        )
        store = self.config.store
        idle = max(int(store.max_idle_conns), 1)
        return sa.create_engine(
            url,
            pool_size=idle,
            max_overflow=max(int(store.max_open_conns) - idle, 0),
            pool_recycle=int(store.conn_max_life_time) * 60,
        )

    # -- row conversion --

    @staticmethod
    def _global_values(g: TransGlobalStore) -> dict[str, Any]:
        return {
            "gid": g.gid,
            "trans_type": g.trans_type,
            "status": g.status,
            "query_prepared": g.query_prepared,
            "protocol": g.protocol,
            "create_time": _to_db(g.create_time),
            "update_time": _to_db(g.update_time),
            "finish_time": _to_db(g.finish_time),
            "rollback_time": _to_db(g.rollback_time),
            "options": g.options,
            "custom_data": g.custom_data,
            "next_cron_interval": g.next_cron_interval,
            "next_cron_time": _to_db(g.next_cron_time),
            "owner": g.owner,
            "ext_data": g.ext_data,
            "result": g.result,
            "rollback_reason": g.rollback_reason,
        }

    @staticmethod
    def _global_from_row(row: Any) -> TransGlobalStore:
        m = row._mapping
        return TransGlobalStore(
            id=m["id"],
            gid=m["gid"],
            trans_type=m["trans_type"] or "",
            status=m["status"] or "",
            query_prepared=m["query_prepared"] or "",
            protocol=m["protocol"] or "",
            create_time=_from_db(m["create_time"]),
            update_time=_from_db(m["update_time"]),
            finish_time=_from_db(m["finish_time"]),
            rollback_time=_from_db(m["rollback_time"]),
            options=m["options"] or "",
            custom_data=m["custom_data"] or "",
            next_cron_interval=m["next_cron_interval"] or 0,
            next_cron_time=_from_db(m["next_cron_time"]),
            owner=m["owner"] or "",
            ext_data=m["ext_data"] or "",
            result=m["result"] or "",
            rollback_reason=m["rollback_reason"] or "",
        )

    @staticmethod
    def _branch_values(b: TransBranchStore) -> dict[str, Any]:
        return {
            "gid": b.gid,
            "url": b.url,
            "bin_data": b.bin_data,
            "branch_id": b.branch_id,
            "op": b.op,
            "status": b.status,
            "finish_time": _to_db(b.finish_time),
            "rollback_time": _to_db(b.rollback_time),
            "create_time": _to_db(b.create_time),
            "update_time": _to_db(b.update_time),
        }

    @staticmethod
    def _branch_from_row(row: Any) -> TransBranchStore:
        m = row._mapping
        return TransBranchStore(
            id=m["id"],
            gid=m["gid"],
            url=m["url"] or "",
            bin_data=bytes(m["bin_data"] or b""),
            branch_id=m["branch_id"],
            op=m["op"],
            status=m["status"],
            finish_time=_from_db(m["finish_time"]),
            rollback_time=_from_db(m["rollback_time"]),
            create_time=_from_db(m["create_time"]),
            update_time=_from_db(m["update_time"]),
        )

    @staticmethod
    def _kv_values(kv: KVStore) -> dict[str, Any]:
        return {
            "cat": kv.cat,
            "k": kv.k,
            "v": kv.v,
            "version": kv.version,
            "create_time": _to_db(kv.create_time),
            "update_time": _to_db(kv.update_time),
        }

    @staticmethod
    def _kv_from_row(row: Any) -> KVStore:
        m = row._mapping
        return KVStore(
            id=m["id"],
            cat=m["cat"],
            k=m["k"],
            v=m["v"] or "",
            version=m["version"] or 0,
            create_time=_from_db(m["create_time"]),
            update_time=_from_db(m["update_time"]),
        )

    def _insert_branch(self, conn: Connection, branch: TransBranchStore) -> None:
        result = conn.execute(sa.insert(self.trans_branch).values(**self._branch_values(branch)))
        branch.id = result.inserted_primary_key[0]

    # -- Store interface --

    def ping(self) -> None:
        with self._engine.connect() as conn:
            conn.execute(sa.text("select 1"))

    def populate_data(self, skip_drop: bool) -> None:
        if not skip_drop:
            self.metadata.drop_all(self._engine)
        self.metadata.create_all(self._engine)

    def find_trans_global_store(self, gid: str) -> Optional[TransGlobalStore]:
        t = self.trans_global
        with self._engine.connect() as conn:
            row = conn.execute(sa.select(t).where(t.c.gid == gid).limit(1)).first()
        return None if row is None else self._global_from_row(row)

    def scan_trans_global_stores(self, position: str, limit: int) -> tuple[list[TransGlobalStore], str]:
        t = self.trans_global
        lid = int(position) if position else sys.maxsize
        query = sa.select(t).where(t.c.id < lid).order_by(t.c.id.desc()).limit(limit)
        with self._engine.connect() as conn:
            globals_ = [self._global_from_row(r) for r in conn.execute(query)]
        next_position = "" if len(globals_) < limit else str(globals_[-1].id)
        return globals_, next_position

    def find_branches(self, gid: str) -> list[TransBranchStore]:
        t = self.trans_branch
        query = sa.select(t).where(t.c.gid == gid).order_by(t.c.id.asc())
        with self._engine.connect() as conn:
            return [self._branch_from_row(r) for r in conn.execute(query)]

    def update_branches(self, branches: list[TransBranchStore], updates: list[str]) -> int:
        """Insert branches, or update the named columns of those already saved."""
        t = self.trans_branch
        now = datetime.now().astimezone()
        affected = 0
        with self._engine.begin() as conn:
            for branch in branches:
                branch.create_time = branch.create_time or now
                branch.update_time = branch.update_time or now
                chosen = _pick(self._branch_values(branch), updates)
                if chosen:
                    result = conn.execute(
                        sa.update(t)
                        .where(t.c.gid == branch.gid, t.c.branch_id == branch.branch_id, t.c.op == branch.op)
                        .values(**chosen)
                    )
                    if result.rowcount:
                        affected += result.rowcount
                        continue
                self._insert_branch(conn, branch)
                affected += 1
        return affected

    def lock_global_save_branches(
        self, gid: str, status: str, branches: list[TransBranchStore], branch_start: int
    ) -> None:
        t = self.trans_global
        b = self.trans_branch
        try:
            with self._engine.begin() as conn:
                found = conn.execute(
                    sa.select(t.c.id).where(t.c.gid == gid, t.c.status == status).limit(1).with_for_update()
                ).first()
                if found is None:
                    raise NotFoundError()
                for branch in branches:
                    if branch_start != -1 and branch.id:
                        result = conn.execute(
                            sa.update(b).where(b.c.id == branch.id).values(**self._branch_values(branch))
                        )
                        if result.rowcount:
                            continue
                    self._insert_branch(conn, branch)
        except IntegrityError as exc:
            raise UniqueConflictError() from exc

    def may_save_new_trans(self, global_: TransGlobalStore, branches: list[TransBranchStore]) -> None:
        with self._engine.begin() as conn:
            try:
                result = conn.execute(sa.insert(self.trans_global).values(**self._global_values(global_)))
            except IntegrityError as exc:
                raise UniqueConflictError() from exc
            global_.id = result.inserted_primary_key[0]
            for branch in branches:
                self._insert_branch(conn, branch)

    def change_global_status(
        self, global_: TransGlobalStore, new_status: str, updates: list[str], finished: bool
    ) -> None:
        t = self.trans_global
        old = global_.status
        global_.status = new_status
        values = self._global_values(global_)
        chosen = _pick(values, updates) if updates else _nonzero(values)
        with self._engine.begin() as conn:
            result = conn.execute(sa.update(t).where(t.c.status == old, t.c.gid == global_.gid).values(**chosen))
        if result.rowcount == 0:
            raise NotFoundError()

    def touch_cron_time(self, global_: TransGlobalStore, next_cron_interval: int, next_cron_time: datetime) -> None:
        t = self.trans_global
        global_.update_time = datetime.now().astimezone()
        global_.next_cron_time = next_cron_time
        global_.next_cron_interval = next_cron_interval
        with self._engine.begin() as conn:
            conn.execute(
                sa.update(t)
                .where(t.c.status == global_.status, t.c.gid == global_.gid)
                .values(
                    next_cron_time=_to_db(next_cron_time),
                    update_time=_to_db(global_.update_time),
                    next_cron_interval=next_cron_interval,
                )
            )

    def lock_one_global_trans(self, expire_in: timedelta) -> Optional[TransGlobalStore]:
        t = self.trans_global
        owner = uuid.uuid4().hex
        threshold = _time_after(int(expire_in.total_seconds()))
        due = sa.and_(t.c.next_cron_time < threshold, t.c.status.in_(_UNFINISHED))
        with self._engine.begin() as conn:
            tid = conn.execute(sa.select(t.c.id).where(due).limit(1)).scalar()
            if tid is None:
                return None
            result = conn.execute(
                sa.update(t)
                .where(t.c.id == tid, due)
                .values(
                    update_time=_time_after(0),
                    next_cron_time=_time_after(self.config.retry_interval),
                    owner=owner,
                )
            )
            if result.rowcount == 0:
                return None
            row = conn.execute(sa.select(t).where(t.c.owner == owner).limit(1)).first()
        return None if row is None else self._global_from_row(row)

    def reset_cron_time(self, after: timedelta, limit: int) -> tuple[int, bool]:
        t = self.trans_global
        threshold = _time_after(int(after.total_seconds()))
        with self._engine.begin() as conn:
            ids = list(
                conn.execute(
                    sa.select(t.c.id)
                    .where(t.c.next_cron_time > threshold, t.c.status.in_(_UNFINISHED))
                    .limit(limit)
                ).scalars()
            )
            affected = 0
            if ids:
                now = _time_after(0)
                result = conn.execute(
                    sa.update(t).where(t.c.id.in_(ids)).values(update_time=now, next_cron_time=now)
                )
                affected = result.rowcount
        return affected, affected == limit

    def scan_kv(self, cat: str, position: str, limit: int) -> tuple[list[KVStore], str]:
        t = self.kv
        lid = int(position) if position else sys.maxsize
        query = sa.select(t).where(t.c.cat == cat, t.c.id < lid).order_by(t.c.id.desc()).limit(limit)
        with self._engine.connect() as conn:
            kvs = [self._kv_from_row(r) for r in conn.execute(query)]
        next_position = "" if len(kvs) < limit else str(kvs[-1].id)
        return kvs, next_position

    def find_kv(self, cat: str, key: str) -> list[KVStore]:
        t = self.kv
        query = sa.select(t)
        if cat:
            query = query.where(t.c.cat == cat)
        if key:
            query = query.where(t.c.k == key)
        with self._engine.connect() as conn:
            return [self._kv_from_row(r) for r in conn.execute(query.order_by(t.c.id))]

    def update_kv(self, kv: KVStore) -> None:
        t = self.kv
        kv.update_time = datetime.now().astimezone()
        old_version = kv.version
        kv.version = old_version + 1
        with self._engine.begin() as conn:
            result = conn.execute(
                sa.update(t)
                .where(t.c.id == kv.id, t.c.version == old_version)
                .values(**_nonzero(self._kv_values(kv)))
            )
        if result.rowcount == 0:
            raise NotFoundError()

    def delete_kv(self, cat: str, key: str) -> None:
        t = self.kv
        with self._engine.begin() as conn:
            result = conn.execute(sa.delete(t).where(t.c.cat == cat, t.c.k == key))
        if result.rowcount == 0:
            raise NotFoundError()

    def create_kv(self, cat: str, key: str, value: str) -> None:
        now = datetime.now().astimezone()
        kv = KVStore(create_time=now, update_time=now, cat=cat, k=key, v=value, version=1)
        try:
            with self._engine.begin() as conn:
                conn.execute(sa.insert(self.kv).values(**self._kv_values(kv)))
        except IntegrityError as exc:
            raise UniqueConflictError() from exc