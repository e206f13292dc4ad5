"""
Configuration loader for the automation core.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Optional

import yaml

from core.errors import ConfigurationError

DROP_POLICIES = ("drop_oldest", "drop_new")


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./automation.db"            # postgresql:// | mysql:// | sqlite://
    store_backend: str = "memory"                      # "sql" | "memory"


@dataclass
class DispatchConfig:
    device_concurrency: int = 2         # concurrent sends per device
    batch_size: int = 10                # items claimed per round
    max_attempts: int = 3               # total send attempts per item
    backoff_base_seconds: float = 2.0   # first retry delay, doubled per attempt
    backoff_max_seconds: float = 60.0
    backoff_jitter: float = 0.1         # +/- fraction applied to each delay
    send_timeout_seconds: float = 30.0
    rate_per_second: float = 1.0        # per-device outbound token bucket
    burst: int = 1
    poll_interval_seconds: float = 1.0  # idle wait while retries are pending
    claim_ttl_seconds: float = 300.0    # in-flight claims older than this are requeued


@dataclass
class BotConfig:
    rate_limit_per_window: int = 5      # auto-replies per sender per window
    rate_limit_window_seconds: int = 60
    dedup_ttl_seconds: int = 300
    reply_max_attempts: int = 3
    reply_backoff_seconds: float = 1.0
    known_bots: list[str] = field(default_factory=list)


@dataclass
class EventsConfig:
    subscriber_buffer: int = 256
    drop_policy: str = "drop_oldest"
    progress_interval_seconds: float = 1.5
    redis_url: str = ""                 # empty disables the Redis relay
    redis_stream: str = "automation:events"
    redis_maxlen: int = 10000


@dataclass
class WhatsAppConfig:
    api_base_url: str = "https://graph.facebook.com"
    api_version: str = "v18.0"
    access_token: str = ""
    verify_token: str = ""
    timeout_seconds: float = 15.0
    phone_number_ids: dict[str, str] = field(default_factory=dict)   # device_id -> phone_number_id


@dataclass
class Settings:
    app_name: str = "AutomationCore"
    debug: bool = False
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    dispatch: DispatchConfig = field(default_factory=DispatchConfig)
    bot: BotConfig = field(default_factory=BotConfig)
    events: EventsConfig = field(default_factory=EventsConfig)
    whatsapp: WhatsAppConfig = field(default_factory=WhatsAppConfig)
    rules: dict[str, list[dict[str, Any]]] = field(default_factory=dict)   # device_id -> rule dicts


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values; unset variables become empty."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, "")
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def _section(cls, raw: dict[str, Any]):
    """Build a config dataclass from a raw dict, ignoring unknown keys. Empty values keep the default."""
    known = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in (raw or {}).items() if k in known and v not in ("", None)})


def validate_settings(settings: Settings) -> None:
    errors = []
    d = settings.dispatch
    if d.max_attempts < 1:
        errors.append("dispatch.max_attempts must be >= 1")
    if d.device_concurrency < 1:
        errors.append("dispatch.device_concurrency must be >= 1")
    if d.batch_size < 1:
        errors.append("dispatch.batch_size must be >= 1")
    if d.send_timeout_seconds <= 0:
        errors.append("dispatch.send_timeout_seconds must be > 0")
    if not 0 <= d.backoff_jitter < 1:
        errors.append("dispatch.backoff_jitter must be in [0, 1)")
    if settings.events.drop_policy not in DROP_POLICIES:
        errors.append(f"events.drop_policy must be one of {DROP_POLICIES}")
    if settings.events.subscriber_buffer < 1:
        errors.append("events.subscriber_buffer must be >= 1")
    if settings.database.store_backend not in ("sql", "memory"):
        errors.append("database.store_backend must be 'sql' or 'memory'")
    if errors:
        raise ConfigurationError("; ".join(errors))


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "AUTOMATION_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)

        if "database" in raw:
            settings.database = _section(DatabaseConfig, raw["database"])
        if "dispatch" in raw:
            settings.dispatch = _section(DispatchConfig, raw["dispatch"])
        if "bot" in raw:
            settings.bot = _section(BotConfig, raw["bot"])
        if "events" in raw:
            settings.events = _section(EventsConfig, raw["events"])
        if "whatsapp" in raw:
            settings.whatsapp = _section(WhatsAppConfig, raw["whatsapp"])

        settings.rules = raw.get("rules", {}) or {}

    validate_settings(settings)
    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Drop the cached settings (for testing)."""
    global _settings
    _settings = None
