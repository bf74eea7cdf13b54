"""
Application settings.

Settings come from three layers, later ones winning:

1. defaults declared on the models below;
2. an optional YAML file (``REPORTFLOW_CONFIG`` or an explicit path);
3. environment variables (a ``.env`` file in the working directory is
   loaded first when present).

Expected YAML format:
```yaml
bus:
  backend: redis
  redis_url: redis://localhost:6379/0
store:
  backend: postgres
  host: localhost
cache:
  ttl_seconds: 3600
worker:
  reports_dir: /var/lib/reportflow/reports
logging:
  level: INFO
  format: json
```
"""

import os
from pathlib import Path
from typing import Any, Literal, Mapping, Optional

import yaml
from dotenv import find_dotenv, load_dotenv
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from reportflow.core.errors import ConfigError

CONFIG_PATH_ENV = "REPORTFLOW_CONFIG"


class _Section(BaseModel):
    class Config:
        extra = "forbid"


class BusSettings(_Section):
    backend: Literal["memory", "redis"] = "memory"
    redis_url: str = "redis://localhost:6379/0"
    stream_prefix: str = "reportflow"
    visibility_timeout: float = Field(default=30.0, gt=0)
    block_timeout: float = Field(default=1.0, gt=0)
    publish_attempts: int = Field(default=3, ge=1)


class StoreSettings(_Section):
    backend: Literal["memory", "postgres"] = "memory"
    host: str = "localhost"
    port: int = Field(default=5432, ge=1, le=65535)
    database: str = "reportflow"
    user: str = "reportflow"
    password: Optional[str] = None
    min_size: int = Field(default=1, ge=1)
    max_size: int = Field(default=5, ge=1)


class ProviderSettings(_Section):
    base_url: str = "https://www.omdbapi.com/"
    api_key: Optional[str] = None
    timeout: float = Field(default=5.0, gt=0)
    retry_attempts: int = Field(default=3, ge=1)
    retry_wait: float = Field(default=0.5, ge=0)


class CacheSettings(_Section):
    ttl_seconds: float = Field(default=3600.0, gt=0)
    max_entries: Optional[int] = Field(default=None, ge=1)


class WorkerSettings(_Section):
    subscription: str = "report-orchestrator"
    concurrency: int = Field(default=4, ge=1)
    idempotency_window_seconds: float = Field(default=86400.0, gt=0)
    idempotency_max_entries: int = Field(default=10000, ge=1)
    reports_dir: str = "reports"
    dataset_path: Optional[str] = None


class RequesterSettings(_Section):
    status_subscription: str = "status-reconciler"
    completed_subscription: str = "completion-reconciler"
    concurrency: int = Field(default=4, ge=1)
    stale_pending_seconds: float = Field(default=300.0, gt=0)
    sweep_batch_size: int = Field(default=100, ge=1)
    requested_by: str = "reportflow-cli"


class LoggingSettings(_Section):
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    format: Literal["json", "text"] = "json"


class MetricsSettings(_Section):
    enabled: bool = False
    port: int = Field(default=9108, ge=1, le=65535)


class Settings(_Section):
    bus: BusSettings = Field(default_factory=BusSettings)
    store: StoreSettings = Field(default_factory=StoreSettings)
    provider: ProviderSettings = Field(default_factory=ProviderSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    worker: WorkerSettings = Field(default_factory=WorkerSettings)
    requester: RequesterSettings = Field(default_factory=RequesterSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    metrics: MetricsSettings = Field(default_factory=MetricsSettings)


# Environment variable -> (section, field)
ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "BUS_BACKEND": ("bus", "backend"),
    "REDIS_URL": ("bus", "redis_url"),
    "STORE_BACKEND": ("store", "backend"),
    "DB_HOST": ("store", "host"),
    "DB_PORT": ("store", "port"),
    "DB_NAME": ("store", "database"),
    "DB_USER": ("store", "user"),
    "DB_PASSWORD": ("store", "password"),
    "PROVIDER_BASE_URL": ("provider", "base_url"),
    "PROVIDER_API_KEY": ("provider", "api_key"),
    "PROVIDER_TIMEOUT": ("provider", "timeout"),
    "CACHE_TTL_SECONDS": ("cache", "ttl_seconds"),
    "REPORTS_DIR": ("worker", "reports_dir"),
    "LOG_LEVEL": ("logging", "level"),
    "LOG_FORMAT": ("logging", "format"),
    "METRICS_PORT": ("metrics", "port"),
}


def _read_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise ConfigError(f"Configuration file not found: {path}")

    try:
        with open(path) as f:
            config = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if config is None:
        return {}
    if not isinstance(config, dict):
        raise ConfigError(f"Configuration file {path} must contain a mapping")
    return config


def _apply_env(config: dict[str, Any], env: Mapping[str, str]) -> dict[str, Any]:
    for variable, (section, field) in ENV_OVERRIDES.items():
        value = env.get(variable)
        if value is None or value == "":
            continue
        target = config.setdefault(section, {})
        if not isinstance(target, dict):
            raise ConfigError(f"Configuration section '{section}' must be a mapping")
        if variable == "LOG_LEVEL":
            value = value.upper()
        target[field] = value

    # Setting a metrics port through the environment turns the exporter on
    if env.get("METRICS_PORT"):
        config["metrics"].setdefault("enabled", True)

    return config


def load_settings(
    path: str | Path | None = None,
    env: Optional[Mapping[str, str]] = None,
    load_env_file: bool = True,
) -> Settings:
    """
    Load and validate settings.

    Args:
        path: YAML file (defaults to $REPORTFLOW_CONFIG when set)
        env: Environment mapping (defaults to os.environ)
        load_env_file: Load a .env file into os.environ before reading it

    Returns:
        Validated Settings

    Raises:
        ConfigError: If the file is missing or invalid, or a value fails validation
    """
    if env is None:
        if load_env_file:
            load_dotenv(find_dotenv(usecwd=True), override=False)
        env = os.environ

    path = path or env.get(CONFIG_PATH_ENV)
    config = _read_yaml(Path(path)) if path else {}
    config = _apply_env(config, env)

    try:
        return Settings.model_validate(config)
    except PydanticValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ConfigError(f"Invalid configuration: {problems}") from e
