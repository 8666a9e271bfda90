# dtmsvr

This package is the storage and bookkeeping layer of a distributed
transaction manager server. It stores global transactions, their branches,
key-value data and topic subscriptions. Three backends can hold the data:

- an embedded LMDB file
- Redis
- a MySQL or PostgreSQL database, through SQLAlchemy

## Installation

```
pip install dtmsvr
```

To run the tests:

```
pip install "dtmsvr[test]"
pytest
```

The SQL backend builds its engine URL as `mysql+pymysql://…` for MySQL and
`postgresql://…` for PostgreSQL. The package does not install the driver for
either database. To use one of them, install the driver yourself: PyMySQL for
MySQL, or psycopg2 for PostgreSQL.

## Configuration

`dtmsvr.config.ServerConfig` is a dataclass that holds every server setting,
each with a default value. Nested sections hold related settings:

- `StoreConfig`
- `MicroService`
- `HTTPMicroService`
- `Log`

`must_load_config(conf_file)` builds a `ServerConfig` in three steps:

1. It reads every setting from the environment. The variable name is the YAML
   key path in upper snake case, for example `STORE_DRIVER`, `STORE_HOST` or
   `RETRY_INTERVAL`. A setting with no variable set keeps its default.
2. If `conf_file` is not empty, it reads that YAML file. Values in the file
   override the values from the environment.
3. It validates the result with `check_config`.

An invalid setting raises `ConfigError`.

```python
from dtmsvr.config import must_load_config

conf = must_load_config("conf.yml")
print(conf.store.driver, conf.retry_interval)
```

`check_config` enforces these rules:

- `RetryInterval` is at least 10.
- `TimeoutToFail` is not less than `RetryInterval`.
- A MySQL or PostgreSQL store has a host, a port, a user and a schema.
- A Redis store has a host and a port.

The helpers `load_from_env(prefix, conf)` and `to_underscore_upper(key)` are
public, so you can use them on your own configuration dataclasses.

## Storage

`dtmsvr.storage` defines the record types:

- `TransGlobalStore`
- `TransBranchStore`
- `KVStore`
- `TransOptions`

Each record type has `to_dict`/`from_dict` and `to_json`/`from_json`.

The same module defines the abstract `Store` interface. Three classes
implement it:

- `BoltStore(data_expire, retry_interval, path="./dtm.bolt")` in
  `dtmsvr.boltstore`. It keeps the data in one LMDB file. When it opens, it
  removes transactions that finished more than `data_expire` seconds ago.
- `RedisStore(config, client=None)` in `dtmsvr.redisstore`. It makes its
  atomic updates with Lua scripts, and keys are prefixed with
  `config.store.redis_prefix`.
- `SqlStore(config, engine=None)` in `dtmsvr.sqlstore`. It defines the
  `trans_global`, `trans_branch_op` and `kv` tables. Call
  `populate_data(skip_drop)` to create them.

`dtmsvr.registry.get_store(config)` returns the store for
`config.store.driver`, which is one of `boltdb`, `redis`, `mysql` or
`postgres`. It builds the store once per configuration object and returns
that same instance on later calls. `wait_store_up(config, interval)` blocks
until the store answers a ping.

```python
from datetime import datetime, timedelta

from dtmsvr.registry import get_store
from dtmsvr.storage import TransBranchStore, TransGlobalStore

store = get_store(conf)
global_ = TransGlobalStore(
    gid="order-1",
    status="prepared",
    next_cron_time=datetime.now() + timedelta(seconds=10),
)
store.may_save_new_trans(global_, [TransBranchStore(gid="order-1", branch_id="01")])
print(store.find_branches("order-1"))

due = store.lock_one_global_trans(timedelta(seconds=20))
count, has_remaining = store.reset_cron_time(timedelta(seconds=100), 10)
transactions, next_position = store.scan_trans_global_stores("", 100)
```

Errors from the stores:

- A missing record, a status that changed, or a stale KV version raises
  `NotFoundError`.
- A gid or key that already exists raises `UniqueConflictError`.

Both errors subclass `StorageError`. `update_branches` does nothing on
`BoltStore` and `RedisStore` and returns 0.

## Topics

`dtmsvr.topics` keeps topic subscriptions in the key-value category `topics`:

- `subscribe(store, topic, url, remark="")` adds a URL to a topic. It creates
  the topic if needed.
- `unsubscribe(store, topic, url)` removes a URL from a topic.
- `delete_topic(store, topic)` deletes the whole topic.

An invalid request raises `TopicError`. Examples are an empty topic or URL, a
duplicate URL, and an unknown topic or URL.

`TopicCache` holds an in-memory copy of the topics:

- `update(store)` reloads every topic whose stored version is newer than the
  cached one.
- `urls(topic)` lists the subscriber URLs of a topic.

## Transactions

`dtmsvr.transglobal.TransGlobal` wraps a `TransGlobalStore` together with
data that exists only on the request. You can build one in two ways:

- `trans_from_json(raw)` builds it from a JSON request body.
- `trans_from_jrpc_params(params)` builds it from the params of a JSON-RPC
  request.

Both collect payloads and step data into `bin_payloads`, and set the protocol
to `http` when the request does not give one.

To drive a transaction type, register a `TransProcessor` subclass for it with
`register_processor_creator(trans_type, creator)`. `TransGlobal.get_processor()`
then builds that processor for the transaction.

## What this package does not do

The package provides no server and no command to run:

- It has no HTTP, gRPC or JSON-RPC API.
- It has no cron job that retries due transactions.
- It has no asynchronous branch-status flushing.
- It has no metrics.

It also registers no transaction processors. Saga, TCC, XA, msg and workflow
logic must come from whatever code uses these modules.