"""
Configuration loader for the ticket pipeline.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class QueueConfig:
    backend: str = "memory"             # "memory" for dev, "redis" for production
    redis_url: str = "redis://localhost:6379"
    topic: str = "tickets-topic"
    ack_deadline_seconds: int = 60
    max_batch: int = 10                 # messages pulled per tier per cycle
    recover_batch_size: int = 100       # bounded re-pull when an ack handle is lost
    io_timeout_seconds: float = 10.0
    ack_mode: str = "on_close"          # "on_close" (deferred) | "on_read" (early, lossy)


@dataclass
class CacheConfig:
    backend: str = "memory"             # "memory" | "redis" (redis + in-memory failover)
    redis_url: str = "redis://localhost:6379"
    key_prefix: str = "TicketSystem:"
    ttl_days: int = 7
    io_timeout_seconds: float = 5.0


@dataclass
class DispatchConfig:
    concurrency: int = 5                # max concurrent tickets per batch
    notify_timeout_seconds: float = 15.0


@dataclass
class NotifierConfig:
    backend: str = "log"                # "log" | "mailgun"
    api_key: str = ""
    domain: str = ""
    from_email: str = ""
    from_name: str = "IT Support System"
    recipients: list[str] = field(default_factory=list)
    base_url: str = "https://api.mailgun.net/v3"


@dataclass
class ArchiveConfig:
    url: str = "sqlite:///./ticket_archive.db"    # postgresql:// | mysql:// | sqlite://
    retention_days: int = 7


@dataclass
class Settings:
    app_name: str = "TicketPipeline"
    debug: bool = False
    json_logs: bool = False
    queue: QueueConfig = field(default_factory=QueueConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    dispatch: DispatchConfig = field(default_factory=DispatchConfig)
    notifier: NotifierConfig = field(default_factory=NotifierConfig)
    archive: ArchiveConfig = field(default_factory=ArchiveConfig)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} / ${VAR_NAME:-default} patterns with environment values."""
    pattern = re.compile(r'\$\{(\w+)(?::-([^}]*))?\}')
    def replacer(match):
        var_name, default = match.group(1), match.group(2)
        if default is not None:
            return os.environ.get(var_name) or default
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
    """Build a config dataclass from a raw dict, ignoring unknown keys."""
    known = {k: v for k, v in (raw or {}).items() if k in cls.__dataclass_fields__}
    return cls(**known)


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "TICKETS_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)
        settings.json_logs = raw.get("json_logs", settings.json_logs)

        if "queue" in raw:
            settings.queue = _section(QueueConfig, raw["queue"])
        if "cache" in raw:
            settings.cache = _section(CacheConfig, raw["cache"])
        if "dispatch" in raw:
            settings.dispatch = _section(DispatchConfig, raw["dispatch"])
        if "notifier" in raw:
            notifier = dict(raw["notifier"])
            recipients = notifier.get("recipients", [])
            if isinstance(recipients, str):
                notifier["recipients"] = [r.strip() for r in recipients.split(",") if r.strip()]
            settings.notifier = _section(NotifierConfig, notifier)
        if "archive" in raw:
            settings.archive = _section(ArchiveConfig, raw["archive"])

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
