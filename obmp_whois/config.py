from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field


class ServerConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    host: str = "0.0.0.0"
    port: int = Field(default=43, ge=0, le=65535)
    max_connections: int = Field(default=10, ge=1)
    # Seconds a connection may wait for a free slot before it is rejected
    slot_wait_timeout: float = Field(default=2.0, ge=0)
    shutdown_grace: float = Field(default=0.5, ge=0)
    read_limit: int = Field(default=4096, ge=64)
    exact_prefix_match: bool = False


class PostgresConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    host: str = "localhost"
    port: int = 5432
    user: str = ""
    password: str = ""
    dbname: str = ""
    sslmode: str = "require"
    connect_timeout: int = 4
    application_name: str = "obmp-whoisd"
    pool_recycle: int = 120
    max_idle: int = 2


class LoggingConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    logfile: str = "/var/log/whoisd.log"
    debug: bool = False


class WhoisConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    server: ServerConfig = Field(default_factory=ServerConfig)
    postgres: PostgresConfig = Field(default_factory=PostgresConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def _merge(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in overrides.items():
        if value is None:
            continue
        if isinstance(value, dict):
            merged[key] = _merge(merged.get(key) or {}, value)
        else:
            merged[key] = value
    return merged


def load_config(path: Optional[str] = None, overrides: Optional[Dict[str, Any]] = None) -> WhoisConfig:
    """Builds the immutable daemon configuration.

    Values from the YAML file at ``path`` are overlaid with ``overrides``
    (nested dicts keyed by section); ``None`` override values are ignored so
    unset command line flags never mask the file.
    """
    data: Dict[str, Any] = {}
    if path:
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Config file {path} must contain a mapping")

    if overrides:
        data = _merge(data, overrides)

    return WhoisConfig(**data)
