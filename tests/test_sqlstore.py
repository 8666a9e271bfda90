from datetime import datetime, timedelta

import pytest
import sqlalchemy as sa
from sqlalchemy.pool import StaticPool

from dtmsvr.config import ServerConfig
from dtmsvr.sqlstore import SqlStore
from dtmsvr.storage import (
    NotFoundError,
    TransBranchStore,
    TransGlobalStore,
    UniqueConflictError,
)


@pytest.fixture
def store():
    engine = sa.create_engine(
        "sqlite://", poolclass=StaticPool, connect_args={"check_same_thread": False}
    )
    s = SqlStore(ServerConfig(), engine=engine)
    s.populate_data(False)
    yield s
    engine.dispose()


def _now():
    return datetime.now().astimezone()


def init_trans(store, gid, next_time=None):
    next_time = next_time or _now() + timedelta(seconds=10)
    g = TransGlobalStore(gid=gid, status="prepared", next_cron_time=next_time)
    store.may_save_new_trans(g, [TransBranchStore(gid=gid, branch_id="01", op="action", status="prepared")])
    return g


def test_save_and_lock_branches(store):
    gid = "test_store_save"
    g = init_trans(store, gid)
    found = store.find_trans_global_store(gid)
    assert found.gid == gid
    assert found.id == g.id
    assert [b.branch_id for b in store.find_branches(gid)] == ["01"]

    store.lock_global_save_branches(
        gid, g.status, [TransBranchStore(gid=gid, branch_id="02", op="action", status="prepared")], -1
    )
    assert [b.branch_id for b in store.find_branches(gid)] == ["01", "02"]

    with pytest.raises(NotFoundError):
        store.lock_global_save_branches(gid, "submitted", [TransBranchStore(gid=gid, branch_id="02")], 1)

    store.change_global_status(g, "succeed", [], True)
    assert store.find_trans_global_store(gid).status == "succeed"


def test_duplicate_trans_conflicts(store):
    init_trans(store, "dup")
    with pytest.raises(UniqueConflictError):
        init_trans(store, "dup")


def test_missing_trans_is_none(store):
    assert store.find_trans_global_store("missing") is None


def test_change_status(store):
    gid = "test_store_change_status"
    g = init_trans(store, gid)
    g.status = "no"
    with pytest.raises(NotFoundError):
        store.change_global_status(g, "submitted", [], False)
    g.status = "prepared"
    store.change_global_status(g, "submitted", [], False)
    assert store.find_trans_global_store(gid).status == "submitted"
    store.change_global_status(g, "succeed", ["status"], True)
    assert store.find_trans_global_store(gid).status == "succeed"


def test_lock_trans(store):
    gid = "test_store_lock_trans"
    retry = store.config.retry_interval
    g = init_trans(store, gid)

    g2 = store.lock_one_global_trans(timedelta(seconds=2 * retry))
    assert g2 is not None and g2.gid == gid

    store.touch_cron_time(g, 3 * retry, _now() + timedelta(seconds=3 * retry))
    assert store.lock_one_global_trans(timedelta(seconds=2 * retry)) is None

    store.touch_cron_time(g, retry, _now() + timedelta(seconds=retry))
    g2 = store.lock_one_global_trans(timedelta(seconds=2 * retry))
    assert g2 is not None and g2.gid == gid

    store.change_global_status(g, "succeed", [], True)
    assert store.lock_one_global_trans(timedelta(seconds=2 * retry)) is None


def test_reset_cron_time(store):
    after, lock_in, limit = 100, timedelta(seconds=2), 10
    for i in range(limit):
        init_trans(store, f"reset{i}", _now() + timedelta(seconds=after + 10))
    init_trans(store, "reset10", _now() + timedelta(seconds=after - 10))

    assert store.lock_one_global_trans(lock_in) is None

    assert store.reset_cron_time(timedelta(seconds=after), limit - 1) == (limit - 1, True)
    for _ in range(limit - 1):
        g = store.lock_one_global_trans(lock_in)
        assert g is not None
        store.change_global_status(g, "succeed", [], True)
    assert store.lock_one_global_trans(lock_in) is None

    assert store.reset_cron_time(timedelta(seconds=after), limit) == (1, False)
    g = store.lock_one_global_trans(lock_in)
    assert g is not None
    store.change_global_status(g, "succeed", [], True)
    assert store.lock_one_global_trans(lock_in) is None

    assert store.reset_cron_time(timedelta(seconds=after - 12), limit) == (1, False)
    g = store.lock_one_global_trans(lock_in)
    assert g is not None
    store.change_global_status(g, "succeed", [], True)
    assert store.lock_one_global_trans(lock_in) is None

    assert store.reset_cron_time(timedelta(seconds=after - 12), limit) == (0, False)


def test_scan_trans_global_stores_pages(store):
    for gid in ("s1", "s2", "s3"):
        init_trans(store, gid)
    page, position = store.scan_trans_global_stores("", 2)
    assert [g.gid for g in page] == ["s3", "s2"]
    assert position == str(page[-1].id)
    rest, position = store.scan_trans_global_stores(position, 2)
    assert [g.gid for g in rest] == ["s1"]
    assert position == ""


def test_update_branches_upserts(store):
    gid = "upsert"
    init_trans(store, gid)
    changed = TransBranchStore(gid=gid, branch_id="01", op="action", status="succeed")
    added = TransBranchStore(gid=gid, branch_id="02", op="action", status="succeed")
    count = store.update_branches([changed, added], ["status", "update_time"])
    assert count == 2
    assert [(b.branch_id, b.status) for b in store.find_branches(gid)] == [
        ("01", "succeed"),
        ("02", "succeed"),
    ]


def test_kv_lifecycle(store):
    store.create_kv("topics", "t1", "[]")
    with pytest.raises(UniqueConflictError):
        store.create_kv("topics", "t1", "[]")
    kvs = store.find_kv("topics", "t1")
    assert [(kv.k, kv.v, kv.version) for kv in kvs] == [("t1", "[]", 1)]

    kv = kvs[0]
    kv.v = "[1]"
    store.update_kv(kv)
    assert store.find_kv("topics", "t1")[0].version == 2
    assert store.find_kv("topics", "t1")[0].v == "[1]"

    stale = kvs[0]
    stale.version = 1
    with pytest.raises(NotFoundError):
        store.update_kv(stale)

    store.delete_kv("topics", "t1")
    assert store.find_kv("topics", "t1") == []
    with pytest.raises(NotFoundError):
        store.delete_kv("topics", "t1")


def test_scan_kv_pages(store):
    for key in ("a", "b", "c"):
        store.create_kv("cat", key, key)
    store.create_kv("other", "x", "x")
    page, position = store.scan_kv("cat", "", 2)
    assert [kv.k for kv in page] == ["c", "b"]
    rest, position = store.scan_kv("cat", position, 2)
    assert [kv.k for kv in rest] == ["a"]
    assert position == ""
    assert {kv.cat for kv in store.find_kv("", "")} == {"cat", "other"}


def test_populate_data_skip_drop_keeps_rows(store):
    init_trans(store, "keep")
    store.populate_data(True)
    assert store.find_trans_global_store("keep").gid == "keep"
    store.populate_data(False)
    assert store.find_trans_global_store("keep") is None


def test_unsupported_driver_cannot_connect():
    with pytest.raises(ValueError):
        SqlStore(ServerConfig()).ping()