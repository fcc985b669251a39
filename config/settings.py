"""
Configuration loader for the WaDispatch system.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import dataclasses
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class QueueConfig:
    pacing_delay_min_ms: int = 1000     # human-like delay before a job becomes eligible
    pacing_delay_max_ms: int = 3000
    max_attempts: int = 3               # total delivery attempts per job
    backoff_base_ms: int = 2000
    backoff_max_ms: int = 30000
    dispatch_timeout_s: float = 30.0
    poll_interval_ms: int = 250
    rate_limit_per_second: float = 1.0  # dispatches per second, 0 disables
    priority_aging_s: float = 60.0      # +1 weight per interval waited, 0 = strict priority
    recover_on_startup: bool = True
    completed_retention_h: float = 24.0
    failed_retention_h: float = 168.0
    cleanup_interval_s: float = 3600.0  # 0 disables periodic cleanup


@dataclass
class WebhookConfig:
    enabled: bool = True
    timeout_s: float = 10.0
    max_attempts: int = 1               # 1 = fire once, no retry
    retry_backoff_s: float = 1.0
    user_agent: str = "WaDispatch-Webhook/1.0"
    signature_header: str = "X-Webhook-Signature"


@dataclass
class DeliveryConfig:
    bridge_url: str = ""                # automation bridge; empty → simulated sends
    api_key: str = ""
    timeout_s: float = 30.0
    circuit_failure_threshold: int = 5
    circuit_recovery_s: float = 60.0


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./wadispatch.db"            # postgresql:// | mysql:// | sqlite://
    store_backend: str = "memory"                      # "sql" | "memory" | "file"
    store_file_dir: str = "./data"                     # directory for file backend


@dataclass
class Settings:
    app_name: str = "WaDispatch"
    debug: bool = False
    queue: QueueConfig = field(default_factory=QueueConfig)
    webhooks: WebhookConfig = field(default_factory=WebhookConfig)
    delivery: DeliveryConfig = field(default_factory=DeliveryConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
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
    """Build a config dataclass from a YAML mapping, coercing to the default's type."""
    defaults = cls()
    values = {}
    for f in dataclasses.fields(cls):
        if f.name not in raw:
            continue
        value = raw[f.name]
        default = getattr(defaults, f.name)
        if isinstance(default, bool) and isinstance(value, str):
            value = value.strip().lower() in ("1", "true", "yes", "on")
        elif isinstance(default, (int, float)) and not isinstance(default, bool) and isinstance(value, str):
            value = type(default)(value)
        values[f.name] = value
    return cls(**values)


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "WADISPATCH_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)

        if "queue" in raw:
            settings.queue = _section(QueueConfig, raw["queue"] or {})
        if "webhooks" in raw:
            settings.webhooks = _section(WebhookConfig, raw["webhooks"] or {})
        if "delivery" in raw:
            settings.delivery = _section(DeliveryConfig, raw["delivery"] or {})
        if "database" in raw:
            settings.database = _section(DatabaseConfig, raw["database"] or {})

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
