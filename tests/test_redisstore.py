import json
from datetime import datetime, timedelta, timezone

import pytest

from dtmsvr.config import ServerConfig
from dtmsvr.redisstore import ArgList, RedisStore, handle_redis_result
from dtmsvr.storage import (
    KVStore,
    NotFoundError,
    TransBranchStore,
    TransGlobalStore,
    UniqueConflictError,
)


class FakeRedis:
    def __init__(self):
        self.eval_calls = []
        self.eval_results = []
        self.values = {}
        self.lists = {}
        self.scan_results = []
        self.scan_calls = []
        self.deleted = []
        self.flushed = 0

    def eval(self, script, numkeys, *keys_and_args):
        keys = list(keys_and_args[:numkeys])
        args = list(keys_and_args[numkeys:])
        self.eval_calls.append((script, keys, args))
        return self.eval_results.pop(0) if self.eval_results else None

    def get(self, key):
        return self.values.get(key)

    def mget(self, keys):
        return [self.values.get(k) for k in keys]

    def lrange(self, key, start, end):
        return list(self.lists.get(key, []))

    def scan(self, cursor=0, match=None, count=None):
        self.scan_calls.append((cursor, match, count))
        return self.scan_results.pop(0)

    def scan_iter(self, match=None):
        prefix = match.rstrip("*")
        return [k for k in self.values if k.startswith(prefix)]

    def delete(self, key):
        self.deleted.append(key)
        return 1 if self.values.pop(key, None) is not None else 0

    def ping(self):
        return True

    def flushall(self):
        self.flushed += 1
        self.values.clear()
        self.lists.clear()


@pytest.fixture
def fake():
    return FakeRedis()


@pytest.fixture
def store(fake):
    return RedisStore(ServerConfig(), client=fake)


def _global(gid="g1", status="prepared"):
    return TransGlobalStore(
        gid=gid,
        status=status,
        next_cron_time=datetime(2022, 1, 1, tzinfo=timezone.utc),
    )


def test_handle_redis_result_errors():
    with pytest.raises(NotFoundError):
        handle_redis_result("NOT_FOUND")
    with pytest.raises(UniqueConflictError):
        handle_redis_result(b"UNIQUE_CONFLICT")


def test_handle_redis_result_values():
    assert handle_redis_result("abc") == "abc"
    assert handle_redis_result(b"xyz") == "xyz"
    assert handle_redis_result(None) == ""


def test_arg_list_gid_keys():
    args = ArgList(prefix="{a}").append_gid("g1")
    assert args.keys == ["{a}_g_g1", "{a}_b_g1", "{a}_u", "{a}_s_g1"]


def test_arg_list_raw_and_object():
    args = ArgList().append_raw(True).append_raw(False).append_raw(-1).append_object(604800)
    assert args.args == ["1", "0", "-1", "604800"]


def test_arg_list_branches_round_trip():
    branches = [TransBranchStore(gid="g1", branch_id="01", op="action")]
    args = ArgList().append_branches(branches)
    assert [TransBranchStore.from_json(a) for a in args.args] == branches


def test_may_save_new_trans_arguments(store, fake):
    global_ = _global()
    branches = [TransBranchStore(gid="g1", branch_id="01")]
    store.may_save_new_trans(global_, branches)
    _, keys, args = fake.eval_calls[0]
    assert keys[0] == "{a}_g_g1"
    assert args[0] == "{a}"
    assert args[1] == "604800"
    assert json.loads(args[2])["gid"] == "g1"
    assert args[3] == str(int(global_.next_cron_time.timestamp()))
    assert args[4:6] == ["g1", "prepared"]
    assert TransBranchStore.from_json(args[6]) == branches[0]


def test_may_save_new_trans_conflict(store, fake):
    fake.eval_results.append("UNIQUE_CONFLICT")
    with pytest.raises(UniqueConflictError):
        store.may_save_new_trans(_global(), [])


def test_find_trans_global_store(store, fake):
    fake.values["{a}_g_g1"] = _global().to_json()
    found = store.find_trans_global_store("g1")
    assert found.gid == "g1"
    assert found.status == "prepared"
    assert store.find_trans_global_store("missing") is None


def test_find_branches(store, fake):
    branches = [TransBranchStore(gid="g1", branch_id="01"), TransBranchStore(gid="g1", branch_id="02")]
    fake.lists["{a}_b_g1"] = [b.to_json() for b in branches]
    assert store.find_branches("g1") == branches


def test_lock_global_save_branches_not_found(store, fake):
    fake.eval_results.append("NOT_FOUND")
    with pytest.raises(NotFoundError):
        store.lock_global_save_branches("g1", "submitted", [TransBranchStore(gid="g1")], 1)
    _, _, args = fake.eval_calls[0]
    assert args[2:4] == ["submitted", "1"]


def test_change_global_status(store, fake):
    global_ = _global()
    store.change_global_status(global_, "succeed", [], True)
    assert global_.status == "succeed"
    _, _, args = fake.eval_calls[0]
    assert args[3:7] == ["prepared", "1", "g1", "succeed"]
    assert args[7] == "86400"


def test_change_global_status_mismatch(store, fake):
    fake.eval_results.append("NOT_FOUND")
    with pytest.raises(NotFoundError):
        store.change_global_status(_global(status="no"), "submitted", [], False)


def test_lock_one_global_trans_none(store, fake):
    fake.eval_results.append("NOT_FOUND")
    assert store.lock_one_global_trans(timedelta(seconds=2)) is None


def test_lock_one_global_trans_skips_missing(store, fake):
    fake.values["{a}_g_g2"] = _global("g2").to_json()
    fake.eval_results.extend(["g1", "g2"])
    found = store.lock_one_global_trans(timedelta(seconds=2))
    assert found.gid == "g2"
    assert len(fake.eval_calls) == 2


def test_reset_cron_time(store, fake):
    fake.eval_results.append("10")
    assert store.reset_cron_time(timedelta(seconds=100), 9) == (9, True)
    fake.eval_results.append("1")
    assert store.reset_cron_time(timedelta(seconds=100), 10) == (1, False)


def test_touch_cron_time(store, fake):
    global_ = _global()
    nxt = datetime(2023, 1, 1, tzinfo=timezone.utc)
    store.touch_cron_time(global_, 30, nxt)
    assert global_.next_cron_time == nxt
    assert global_.next_cron_interval == 30
    _, _, args = fake.eval_calls[0]
    assert args[3] == str(int(nxt.timestamp()))


def test_scan_trans_global_stores_position(store, fake):
    fake.values["{a}_g_g1"] = _global().to_json()
    fake.scan_results.append((5, ["{a}_g_g1"]))
    globals_, position = store.scan_trans_global_stores("", 1)
    assert [g.gid for g in globals_] == ["g1"]
    assert position == "5"
    fake.scan_results.append((0, []))
    globals_, position = store.scan_trans_global_stores(position, 1)
    assert globals_ == []
    assert position == ""
    assert fake.scan_calls[1][0] == 5


def test_find_kv(store, fake):
    kv = KVStore(cat="topics", k="t1", v="[]", version=1)
    fake.values["{a}_kv_topics_t1"] = kv.to_json()
    assert store.find_kv("topics", "t1") == [kv]
    assert store.find_kv("topics", "nope") == []
    assert store.find_kv("topics", "") == [kv]


def test_update_kv(store, fake):
    kv = KVStore(cat="topics", k="t1", v="[]", version=3)
    store.update_kv(kv)
    assert kv.version == 4
    _, keys, args = fake.eval_calls[0]
    assert keys == ["{a}_kv_topics_t1"]
    assert args[0] == "3"
    assert KVStore.from_json(args[1]).version == 4


def test_update_kv_not_found(store, fake):
    fake.eval_results.append("NOT_FOUND")
    with pytest.raises(NotFoundError):
        store.update_kv(KVStore(cat="topics", k="t1"))


def test_create_kv(store, fake):
    store.create_kv("topics", "t1", "[]")
    _, keys, args = fake.eval_calls[0]
    created = KVStore.from_json(args[0])
    assert (created.cat, created.k, created.v, created.version) == ("topics", "t1", "[]", 1)
    fake.eval_results.append("UNIQUE_CONFLICT")
    with pytest.raises(UniqueConflictError):
        store.create_kv("topics", "t1", "[]")


def test_delete_kv(store, fake):
    fake.values["{a}_kv_topics_t1"] = "{}"
    store.delete_kv("topics", "t1")
    assert "{a}_kv_topics_t1" not in fake.values
    with pytest.raises(NotFoundError):
        store.delete_kv("topics", "t1")


def test_update_branches_does_nothing(store):
    assert store.update_branches([], []) == 0


def test_populate_data(store, fake):
    fake.values["{a}_g_g1"] = _global().to_json()
    store.populate_data(True)
    assert fake.flushed == 0
    assert store.find_trans_global_store("g1").gid == "g1"
    store.populate_data(False)
    assert fake.flushed == 1
    assert store.find_trans_global_store("g1") is None