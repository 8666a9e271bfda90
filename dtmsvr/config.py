"""Server configuration: defaults, environment overrides, YAML loading and validation."""

from __future__ import annotations

import json
import logging
import os
import re
from collections.abc import Mapping
from dataclasses import asdict, dataclass, field, fields, is_dataclass
from typing import Any

import yaml

log = logging.getLogger(__name__)

DTM_METRICS_PORT = 8889
MYSQL = "mysql"
REDIS = "redis"
BOLTDB = "boltdb"
POSTGRES = "postgres"


class ConfigError(ValueError):
    """Raised when the configuration is invalid or cannot be loaded."""


def _setting(name: str, default: Any) -> Any:
    return field(default=default, metadata={"yaml": name})


def _section(name: str, factory: Any) -> Any:
    return field(default_factory=factory, metadata={"yaml": name})


@dataclass
class MicroService:
    """Settings for gRPC based micro-service registration."""

    driver: str = _setting("Driver", "default")
    target: str = _setting("Target", "")
    end_point: str = _setting("EndPoint", "")


@dataclass
class HTTPMicroService:
    """Settings for HTTP based micro-service registration."""

    driver: str = _setting("Driver", "default")
    registry_type: str = _setting("RegistryType", "")
    registry_address: str = _setting("RegistryAddress", "")
    registry_options: str = _setting("RegistryOptions", "{}")
    target: str = _setting("Target", "")
    end_point: str = _setting("EndPoint", "")


@dataclass
class Log:
    """Log output settings."""

    outputs: str = _setting("Outputs", "stderr")
    rotation_enable: int = _setting("RotationEnable", 0)
    rotation_config_json: str = _setting("RotationConfigJSON", "{}")


@dataclass
class DBConf:
    """Connection settings for a relational database."""

    driver: str = ""
    host: str = ""
    port: int = 0
    user: str = ""
    password: str = ""
    db: str = ""
    schema: str = ""


@dataclass
class StoreConfig:
    """Storage backend settings."""

    driver: str = _setting("Driver", BOLTDB)
    host: str = _setting("Host", "")
    port: int = _setting("Port", 0)
    user: str = _setting("User", "")
    password: str = _setting("Password", "")
    db: str = _setting("Db", "dtm")
    schema: str = _setting("Schema", "public")
    max_open_conns: int = _setting("MaxOpenConns", 500)
    max_idle_conns: int = _setting("MaxIdleConns", 500)
    conn_max_life_time: int = _setting("ConnMaxLifeTime", 5)
    # Seconds before transaction data expires (redis and boltdb only).
    data_expire: int = _setting("DataExpire", 604800)
    # Seconds before finished transaction data expires (redis only).
    finished_data_expire: int = _setting("FinishedDataExpire", 86400)
    redis_prefix: str = _setting("RedisPrefix", "{a}")

    def is_db(self) -> bool:
        """Return True when the driver is a relational database."""
        return self.driver in (MYSQL, POSTGRES)

    def get_db_conf(self) -> DBConf:
        """Return the database connection settings."""
        return DBConf(
            driver=self.driver,
            host=self.host,
            port=self.port,
            user=self.user,
            password=self.password,
            db=self.db,
            schema=self.schema,
        )


@dataclass
class ServerConfig:
    """Complete configuration of the transaction server."""

    store: StoreConfig = _section("Store", StoreConfig)
    trans_cron_interval: int = _setting("TransCronInterval", 3)
    timeout_to_fail: int = _setting("TimeoutToFail", 35)
    retry_interval: int = _setting("RetryInterval", 10)
    request_timeout: int = _setting("RequestTimeout", 3)
    http_port: int = _setting("HttpPort", 36789)
    grpc_port: int = _setting("GrpcPort", 36790)
    json_rpc_port: int = _setting("JsonRpcPort", 36791)
    micro_service: MicroService = _section("MicroService", MicroService)
    http_micro_service: HTTPMicroService = _section("HttpMicroService", HTTPMicroService)
    update_branch_sync: int = _setting("UpdateBranchSync", 0)
    update_branch_async_goroutine_num: int = _setting("UpdateBranchAsyncGoroutineNum", 1)
    log_level: str = _setting("LogLevel", "info")
    log: Log = _section("Log", Log)
    time_zone_offset: str = _setting("TimeZoneOffset", "")
    config_update_interval: int = _setting("ConfigUpdateInterval", 3)
    alert_retry_limit: int = _setting("AlertRetryLimit", 3)
    alert_web_hook: str = _setting("AlertWebHook", "")


_LAST_CAP = re.compile(r"([A-Z])([A-Z][a-z])")
_FIRST_CAP = re.compile(r"([a-z])([A-Z]+)")


def to_underscore_upper(key: str) -> str:
    """Turn a CamelCase key path into an UPPER_SNAKE environment name."""
    key = key.strip("_")
    key = _LAST_CAP.sub(r"\1_\2", key)
    key = _FIRST_CAP.sub(r"\1_\2", key)
    return key.upper()


def load_from_env(prefix: str, conf: Any) -> None:
    """Fill every field of ``conf`` from the environment, or from its default."""
    if not is_dataclass(conf) or isinstance(conf, type):
        raise TypeError(f"should be a configuration instance, but {type(conf).__name__} found")
    _load_env_into(prefix, conf)


def _load_env_into(prefix: str, conf: Any) -> None:
    for f in fields(conf):
        key = f"{prefix}_{f.metadata['yaml']}"
        current = getattr(conf, f.name)
        if is_dataclass(current):
            _load_env_into(key, current)
            continue
        raw = os.environ.get(to_underscore_upper(key), "")
        if isinstance(current, bool):
            raise TypeError(f"unsupported type: {type(current).__name__}")
        if isinstance(current, int):
            setattr(conf, f.name, int(raw) if raw else f.default)
        elif isinstance(current, str):
            setattr(conf, f.name, raw or f.default)
        else:
            raise TypeError(f"unsupported type: {type(current).__name__}")


def _apply_yaml(conf: Any, data: Mapping[str, Any]) -> None:
    for f in fields(conf):
        name = f.metadata["yaml"]
        if name not in data:
            continue
        value = data[name]
        current = getattr(conf, f.name)
        if is_dataclass(current):
            if value is None:
                continue
            if not isinstance(value, Mapping):
                raise ConfigError(f"{name} should be a mapping")
            _apply_yaml(current, value)
        elif isinstance(current, int):
            if value is None:
                setattr(conf, f.name, 0)
            elif isinstance(value, int) and not isinstance(value, bool):
                setattr(conf, f.name, value)
            else:
                raise ConfigError(f"{name} should be an integer, got {value!r}")
        else:
            if value is None:
                setattr(conf, f.name, "")
            elif isinstance(value, bool):
                setattr(conf, f.name, "true" if value else "false")
            elif isinstance(value, (str, int, float)):
                setattr(conf, f.name, str(value))
            else:
                raise ConfigError(f"{name} should be a string, got {value!r}")


def check_config(conf: ServerConfig) -> None:
    """Validate a configuration, raising ConfigError on the first problem."""
    if conf.retry_interval < 10:
        raise ConfigError("RetryInterval should not be less than 10")
    if conf.timeout_to_fail < conf.retry_interval:
        raise ConfigError("TimeoutToFail should not be less than RetryInterval")
    store = conf.store
    if store.driver in (MYSQL, POSTGRES):
        if store.host == "":
            raise ConfigError("Db host not valid ")
        if store.port == 0:
            raise ConfigError("Db port not valid ")
        if store.user == "":
            raise ConfigError("Db user not valid ")
        if store.schema == "":
            raise ConfigError("Postgres schema not valid")
    elif store.driver == REDIS:
        if store.host == "":
            raise ConfigError("Redis host not valid")
        if store.port == 0:
            raise ConfigError("Redis port not valid")


def must_load_config(conf_file: str) -> ServerConfig:
    """Load the configuration from the environment and an optional YAML file."""
    conf = ServerConfig()
    load_from_env("", conf)
    if conf_file:
        with open(conf_file, encoding="utf-8") as fh:
            try:
                data = yaml.safe_load(fh)
            except yaml.YAMLError as exc:
                raise ConfigError(f"cannot parse {conf_file}: {exc}") from exc
        if data is not None:
            if not isinstance(data, Mapping):
                raise ConfigError(f"{conf_file} should hold a mapping")
            _apply_yaml(conf, data)
    log.info("config file: %s loaded config is: \n%s", conf_file, json.dumps(asdict(conf), indent=2))
    try:
        check_config(conf)
    except ConfigError as exc:
        raise ConfigError(f"config error: '{exc}'") from exc
    return conf