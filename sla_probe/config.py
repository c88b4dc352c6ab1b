"""Configuration management for the SLA probe."""

import hashlib
import json
import os
import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import structlog
import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from sla_probe.records import KEY_SEP


logger = structlog.get_logger(__name__)

DEFAULT_CONFIG_PATH = "config/sla-probe.yaml"


class ConfigError(ValueError):
    """Configuration file is unreadable or invalid."""


class TargetConfig(BaseModel):
    """One monitored service: where to submit and where to confirm."""
    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1, max_length=200, description="Target identifier")
    submit_url: str = Field(..., min_length=1, description="Endpoint receiving synthetic transactions")
    probe_url: Optional[str] = Field(default=None, description="Status endpoint; falls back to verify_api_url")
    payload: str = Field(default="", description="Request body sent on every submission")
    user_code: str = Field(default="", description="Tenant tag forwarded with every request")
    validator_timeout: Optional[int] = Field(default=None, ge=1, description="Per-target deadline in seconds")

    @field_validator("name")
    @classmethod
    def _name_is_key_safe(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("target name is empty")
        if KEY_SEP in cleaned:
            raise ValueError(f"target name must not contain {KEY_SEP!r}: {cleaned!r}")
        return cleaned

    @field_validator("payload", mode="before")
    @classmethod
    def _payload_as_text(cls, value: Any) -> Any:
        if isinstance(value, (dict, list)):
            return json.dumps(value, ensure_ascii=False)
        if value is None:
            return ""
        return value


class ProbeConfig(BaseModel):
    """Main configuration for the SLA probe."""
    model_config = ConfigDict(frozen=True)

    # Scheduling, all in seconds
    sender_interval: int = Field(default=30, ge=1, description="Seconds between sender ticks")
    validator_interval: int = Field(default=10, ge=1, description="Seconds between validator ticks")
    validator_timeout: int = Field(default=300, ge=1, description="Verification deadline in seconds")
    hot_update_interval: int = Field(default=5, ge=1, description="Seconds between config re-reads")

    # Storage
    storage_path: str = Field(default="data/sla-probe.db", description="sqlite file holding probe state")
    record_retention_hours: int = Field(default=24, ge=0, description="Audit record retention, 0 keeps forever")

    # Remote service
    verify_api_url: str = Field(
        default="http://127.0.0.1:3000/auto_tx/api/get_onchain_hash",
        description="Default status endpoint for targets without probe_url",
    )
    connect_timeout: float = Field(default=1.0, gt=0, description="HTTP connect timeout in seconds")
    request_timeout: float = Field(default=2.0, gt=0, description="HTTP request timeout in seconds")

    # Metrics endpoint
    metrics_host: str = Field(default="0.0.0.0", description="Scrape endpoint bind host")
    metrics_port: int = Field(default=61616, ge=0, le=65535, description="Scrape endpoint port")

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="console", description="console or json")

    targets: List[TargetConfig] = Field(default_factory=list, description="Monitored targets, in send order")

    @model_validator(mode="after")
    def _unique_target_names(self) -> "ProbeConfig":
        seen: set[str] = set()
        for target in self.targets:
            if target.name in seen:
                raise ValueError(f"Duplicate target name: {target.name}")
            seen.add(target.name)
        return self

    def target(self, name: str) -> Optional[TargetConfig]:
        for target in self.targets:
            if target.name == name:
                return target
        return None

    def timeout_for(self, name: str) -> int:
        """Deadline in seconds; targets that vanished from config use the global one."""
        target = self.target(name)
        if target is not None and target.validator_timeout is not None:
            return int(target.validator_timeout)
        return int(self.validator_timeout)

    def probe_url_for(self, name: str) -> Optional[str]:
        target = self.target(name)
        if target is not None and target.probe_url:
            return target.probe_url
        return self.verify_api_url or None


def _read_config_data(path: Path) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"Cannot read config {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError("Config YAML must be a mapping")
    return data


def _apply_env_overrides(config_data: Dict[str, Any]) -> None:
    env_overrides = {
        "log_level": os.getenv("LOG_LEVEL"),
        "metrics_port": os.getenv("SLA_PROBE_METRICS_PORT"),
        "storage_path": os.getenv("SLA_PROBE_STORAGE_PATH"),
    }
    for key, value in env_overrides.items():
        if value is not None:
            config_data[key] = value


def resolve_config_path(config_path: Optional[str] = None) -> Path:
    if config_path is None:
        config_path = os.getenv("SLA_PROBE_CONFIG", DEFAULT_CONFIG_PATH)
    return Path(config_path)


def load_config(config_path: Optional[str] = None, *, missing_ok: bool = True) -> ProbeConfig:
    """Load configuration from file, environment overrides applied on top."""
    path = resolve_config_path(config_path)

    config_data: Dict[str, Any] = {}
    if path.exists():
        config_data = _read_config_data(path)
    elif not missing_ok:
        raise ConfigError(f"Config file not found: {path}")
    else:
        logger.warning("Config file not found, using defaults", path=str(path))

    _apply_env_overrides(config_data)

    try:
        return ProbeConfig(**config_data)
    except ValidationError as exc:
        raise ConfigError(f"Invalid config {path}: {exc}") from exc


def config_digest(path: Path) -> Optional[str]:
    try:
        return hashlib.md5(path.read_bytes()).hexdigest()
    except OSError:
        return None


# Settings that are bound once at startup; a reload cannot move them.
_RESTART_ONLY_FIELDS = ("storage_path", "metrics_host", "metrics_port", "log_level", "log_format")


class ConfigHolder:
    """Holds the current immutable config snapshot.

    Readers call ``current`` once per tick and keep that snapshot; reloads swap
    the reference and never mutate a published snapshot.
    """

    def __init__(self, config: ProbeConfig, path: Optional[Path] = None):
        self._config = config
        self._lock = threading.Lock()
        self._listeners: List[Callable[[ProbeConfig, ProbeConfig], None]] = []
        self.path = path
        self.digest = config_digest(path) if path is not None else None

    @property
    def current(self) -> ProbeConfig:
        with self._lock:
            return self._config

    def replace(self, config: ProbeConfig) -> ProbeConfig:
        with self._lock:
            old = self._config
            self._config = config
        for listener in list(self._listeners):
            try:
                listener(old, config)
            except Exception:
                logger.exception("Config listener failed")
        return old

    def subscribe(self, listener: Callable[[ProbeConfig, ProbeConfig], None]) -> None:
        self._listeners.append(listener)

    def reload(self) -> bool:
        """Re-read the file; swap the snapshot only if its content changed and is valid."""
        if self.path is None:
            return False

        digest = config_digest(self.path)
        if digest is None:
            logger.error("Config reload failed, keeping previous config", path=str(self.path), error="unreadable")
            return False
        if digest == self.digest:
            return False

        try:
            new_config = load_config(str(self.path), missing_ok=False)
        except ConfigError as exc:
            # Remember the digest so a broken file is reported once, not every tick.
            self.digest = digest
            logger.error("Config reload rejected, keeping previous config", path=str(self.path), error=str(exc))
            return False

        self.digest = digest
        old = self.replace(new_config)
        for field_name in _RESTART_ONLY_FIELDS:
            if getattr(old, field_name) != getattr(new_config, field_name):
                logger.warning("Config change takes effect after restart", field=field_name)
        logger.info("Config reloaded", path=str(self.path), targets=len(new_config.targets))
        return True
