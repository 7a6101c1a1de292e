"""Engine configuration.

Defaults match the production tuning; a YAML file can override any section:

    dedup:
      ttl_ms: 10000
    throttle:
      routine_interval_ms: 8000
    store:
      db_path: ${COLLAB_NOTIFY_DATA}/notifications.db
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from collab_notify.logs import get_logger

logger = get_logger(__name__)

DEFAULT_CONFIG_PATH = "~/.collab_notify/config.yml"
CONFIG_PATH_ENV = "COLLAB_NOTIFY_CONFIG"
DB_PATH_ENV = "COLLAB_NOTIFY_DB_PATH"


class DedupConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    ttl_ms: int = 10_000
    comment_ttl_ms: int = 30_000
    wait_ms: int = 3_000
    eviction_rate: float = 0.02


class LookupConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    negative_ttl_ms: int = 2_000  # 0 disables negative caching
    result_limit: int = 5


class CacheConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    ttl_ms: int = 60_000
    sweep_max_age_ms: int = 1_800_000
    sweep_rate: float = 0.2


class PoolConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    max_age_ms: int = 180_000
    feed_limit: int = 20


class ThrottleConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    urgent_debounce_ms: int = 100
    routine_debounce_ms: int = 1_000
    urgent_interval_ms: int = 1_000
    routine_interval_ms: int = 5_000

    @field_validator("routine_interval_ms")
    @classmethod
    def validate_routine_interval(cls, v: int) -> int:
        if not 5_000 <= v <= 10_000:
            raise ValueError(f"routine_interval_ms must be within 5000-10000, got: {v}")
        return v

    @field_validator("urgent_interval_ms")
    @classmethod
    def validate_urgent_interval(cls, v: int) -> int:
        if not 1_000 <= v <= 2_000:
            raise ValueError(f"urgent_interval_ms must be within 1000-2000, got: {v}")
        return v

    @model_validator(mode="after")
    def validate_debounce(self) -> "ThrottleConfig":
        if self.urgent_debounce_ms > self.routine_debounce_ms:
            raise ValueError("urgent_debounce_ms cannot exceed routine_debounce_ms")
        return self


class StoreConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    db_path: str = "~/.collab_notify/notifications.db"
    collection: str = "notifications"


class MaintenanceConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    reset_cooldown_ms: int = 60_000
    scan_limit: int = 100


class EngineConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    dedup: DedupConfig = Field(default_factory=DedupConfig)
    lookup: LookupConfig = Field(default_factory=LookupConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    pool: PoolConfig = Field(default_factory=PoolConfig)
    throttle: ThrottleConfig = Field(default_factory=ThrottleConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    maintenance: MaintenanceConfig = Field(default_factory=MaintenanceConfig)


def expand_env_vars(config: object) -> object:
    """Recursively replace ``${VAR}`` patterns with environment values."""
    if isinstance(config, dict):
        return {k: expand_env_vars(v) for k, v in config.items()}  # type: ignore[misc]
    if isinstance(config, list):
        return [expand_env_vars(item) for item in config]
    if isinstance(config, str):

        def replace_env_var(match: re.Match[str]) -> str:
            env_var = match.group(1)
            return os.getenv(env_var, match.group(0))

        return re.sub(r"\$\{([^}]+)\}", replace_env_var, config)
    return config


def _warn_unknown_keys(model: BaseModel, path: str, config_path: Path) -> None:
    """Recursively warn about unknown keys in a model and its nested models."""
    if model.model_extra:
        logger.warning("unknown config keys", section=path, path=str(config_path), keys=list(model.model_extra))
    for field_name, field_value in model.__dict__.items():
        if isinstance(field_value, BaseModel):
            _warn_unknown_keys(field_value, f"{path}.{field_name}", config_path)


def load_config(path: Path | str | None = None) -> EngineConfig:
    """Load and validate engine configuration.

    Resolution order for the file: explicit ``path``, ``$COLLAB_NOTIFY_CONFIG``,
    then ``~/.collab_notify/config.yml``. A missing or unreadable file yields the
    defaults. ``$COLLAB_NOTIFY_DB_PATH`` always overrides ``store.db_path``.
    """
    load_dotenv()
    if path is None:
        path = os.getenv(CONFIG_PATH_ENV) or DEFAULT_CONFIG_PATH
    config_path = Path(path).expanduser()

    raw: dict[str, Any] = {}
    if config_path.exists():
        try:
            with open(config_path, "r", encoding="utf-8") as f:
                raw = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.warning("failed to read config file", path=str(config_path), error=str(e))
            raw = {}

    expanded = expand_env_vars(raw)
    config = EngineConfig.model_validate(expanded)
    _warn_unknown_keys(config, "root", config_path)

    db_override = os.getenv(DB_PATH_ENV)
    if db_override:
        config.store.db_path = db_override
    return config
