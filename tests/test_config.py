import pytest

from dtmsvr.config import (
    BOLTDB,
    MYSQL,
    POSTGRES,
    REDIS,
    ConfigError,
    DBConf,
    MicroService,
    ServerConfig,
    StoreConfig,
    check_config,
    load_from_env,
    must_load_config,
    to_underscore_upper,
)


def _message(conf):
    with pytest.raises(ConfigError) as info:
        check_config(conf)
    return str(info.value)


def test_to_underscore_upper():
    assert to_underscore_upper("MicroService_Driver") == "MICRO_SERVICE_DRIVER"
    assert to_underscore_upper("_Store_Driver") == "STORE_DRIVER"
    assert to_underscore_upper("UpdateBranchAsyncGoroutineNum") == "UPDATE_BRANCH_ASYNC_GOROUTINE_NUM"
    assert to_underscore_upper("Log_RotationConfigJSON") == "LOG_ROTATION_CONFIG_JSON"


def test_load_from_env(monkeypatch):
    monkeypatch.setenv("T_DRIVER", "d1")
    ms = MicroService()
    load_from_env("T", ms)
    assert ms.driver == "d1"


def test_load_from_env_resets_to_defaults(monkeypatch):
    for name in ("T_DRIVER", "T_TARGET", "T_END_POINT"):
        monkeypatch.delenv(name, raising=False)
    ms = MicroService(driver="custom", target="somewhere")
    load_from_env("T", ms)
    assert ms == MicroService(driver="default", target="", end_point="")


def test_load_from_env_nested_and_int(monkeypatch):
    monkeypatch.setenv("STORE_DRIVER", REDIS)
    monkeypatch.setenv("STORE_PORT", "6379")
    monkeypatch.setenv("RETRY_INTERVAL", "15")
    conf = ServerConfig()
    load_from_env("", conf)
    assert conf.store.driver == REDIS
    assert conf.store.port == 6379
    assert conf.retry_interval == 15


def test_load_from_env_bad_int(monkeypatch):
    monkeypatch.setenv("X_PORT", "abc")
    with pytest.raises(ValueError):
        load_from_env("X", StoreConfig())


def test_load_from_env_rejects_non_config():
    with pytest.raises(TypeError):
        load_from_env("", {"Driver": "x"})


def test_check_config():
    conf = ServerConfig()
    conf.retry_interval = 1
    assert _message(conf) == "RetryInterval should not be less than 10"

    conf.retry_interval = 10
    conf.timeout_to_fail = 5
    assert _message(conf) == "TimeoutToFail should not be less than RetryInterval"

    conf.timeout_to_fail = 20
    assert check_config(conf) is None

    conf.store = StoreConfig(driver=MYSQL, host="", port=0, user="", schema="")
    assert _message(conf) == "Db host not valid "

    conf.store = StoreConfig(driver=MYSQL, host="127.0.0.1", port=0, user="", schema="")
    assert _message(conf) == "Db port not valid "

    conf.store = StoreConfig(driver=MYSQL, host="127.0.0.1", port=8686, user="", schema="")
    assert _message(conf) == "Db user not valid "

    conf.store = StoreConfig(driver=POSTGRES, host="127.0.0.1", port=8686, user="postgres", schema="")
    assert _message(conf) == "Postgres schema not valid"

    conf.store = StoreConfig(driver=REDIS, host="", port=8686)
    assert _message(conf) == "Redis host not valid"

    conf.store = StoreConfig(driver=REDIS, host="127.0.0.1", port=0)
    assert _message(conf) == "Redis port not valid"


def test_check_config_fields():
    conf = ServerConfig()
    conf.store.driver = ""
    assert check_config(conf) is None
    conf = ServerConfig()
    conf.store.user = ""
    assert check_config(conf) is None
    conf = ServerConfig()
    conf.retry_interval = 9
    assert _message(conf) == "RetryInterval should not be less than 10"
    conf = ServerConfig()
    conf.timeout_to_fail = 9
    assert _message(conf) == "TimeoutToFail should not be less than RetryInterval"


def test_must_load_config_file(tmp_path, monkeypatch):
    monkeypatch.setenv("RETRY_INTERVAL", "20")
    monkeypatch.setenv("TIMEOUT_TO_FAIL", "40")
    monkeypatch.delenv("STORE_DRIVER", raising=False)
    path = tmp_path / "conf.yml"
    path.write_text("Store:\n  Driver: redis\n  Host: localhost\n  Port: 6379\nRetryInterval: 30\n")
    conf = must_load_config(str(path))
    assert conf.store.driver == REDIS
    assert conf.store.host == "localhost"
    assert conf.store.port == 6379
    assert conf.retry_interval == 30
    assert conf.timeout_to_fail == 40


def test_must_load_config_env_only(monkeypatch):
    monkeypatch.setenv("STORE_DRIVER", BOLTDB)
    monkeypatch.setenv("RETRY_INTERVAL", "12")
    monkeypatch.setenv("TIMEOUT_TO_FAIL", "36")
    conf = must_load_config("")
    assert conf.store.driver == BOLTDB
    assert conf.retry_interval == 12
    assert conf.timeout_to_fail == 36


def test_must_load_config_invalid(tmp_path, monkeypatch):
    monkeypatch.delenv("TIMEOUT_TO_FAIL", raising=False)
    path = tmp_path / "conf.yml"
    path.write_text("RetryInterval: 5\n")
    with pytest.raises(ConfigError) as info:
        must_load_config(str(path))
    assert "RetryInterval should not be less than 10" in str(info.value)


def test_must_load_config_bad_type(tmp_path):
    path = tmp_path / "conf.yml"
    path.write_text("RetryInterval: [1, 2]\n")
    with pytest.raises(ConfigError):
        must_load_config(str(path))


def test_store_db_helpers():
    password = "password"
    store = StoreConfig(driver=MYSQL, host="localhost", port=3306, user="root", password=password)
    assert store.is_db()
    assert StoreConfig(driver=POSTGRES).is_db()
    assert not StoreConfig(driver=REDIS).is_db()
    assert store.get_db_conf() == DBConf(
        driver=MYSQL,
        host="localhost",
        port=3306,
        user="root",
        password=password,
        db="dtm",
        schema="public",
    )