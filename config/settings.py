"""
Configuration loader for the travel inbox pipeline.
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
class TenantLLMConfig:
    api_key: str = ""
    model: str = ""


@dataclass
class LLMConfig:
    provider: str = "anthropic"                # "anthropic" | "openai"
    model: str = "claude-sonnet-4-20250514"
    vision_model: str = ""                     # falls back to model
    temperature: float = 0.2
    max_tokens: int = 2048
    api_key: str = ""
    input_cost_per_mtok: float = 3.0           # USD per million input tokens
    output_cost_per_mtok: float = 15.0         # USD per million output tokens
    client_cache_ttl_s: float = 3600.0
    client_cache_max_size: int = 100
    tenants: dict[str, TenantLLMConfig] = field(default_factory=dict)


@dataclass
class MailConfig:
    smtp_host: str = ""                        # empty → no delivery channel
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    use_tls: bool = True
    from_address: str = ""
    from_name: str = "Travel Desk"


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./travel_inbox.db"           # postgresql:// | mysql:// | sqlite://
    store_backend: str = "memory"                      # "sql" | "memory" | "file"
    store_file_dir: str = "./data"                     # directory for file backend
    echo: bool = False                                 # log SQL statements
    pool_size: int = 10                                # ignored for sqlite
    max_overflow: int = 20


@dataclass
class QueueConfig:
    backend: str = "memory"             # "redis" | "memory" | "sync"
    redis_url: str = "redis://localhost:6379"
    name: str = "email-processing"      # key prefix for the durable backend
    concurrency: int = 3                # concurrent handler invocations per worker
    poll_interval_s: Optional[float] = 0.1   # upper bound on dispatch latency; None → wakeups only
    max_attempts: int = 3
    backoff_type: str = "exponential"   # "exponential" | "fixed"
    backoff_delay_s: float = 5.0
    allow_memory_fallback: bool = True  # unreachable redis → memory (else sync)
    delayed_promote_interval_s: float = 1.0
    stalled_lease_s: float = 60.0       # redis: a running job with no heartbeat for this long is taken back
    clean_grace_s: float = 7 * 24 * 3600


@dataclass
class PipelineConfig:
    confidence_threshold: float = 70
    max_missing_fields: int = 3
    high_value_threshold: float = 5000
    fallback_good_match_score: int = 60


@dataclass
class MatchingConfig:
    min_total_score: int = 30
    min_destination_score: int = 20
    max_results: int = 5
    soon_valid_days: int = 30


@dataclass
class ReviewConfig:
    vip_budget_threshold: float = 5000
    sla_minutes: dict[str, int] = field(default_factory=lambda: {
        "urgent": 30, "high": 120, "normal": 480, "low": 1440,
    })
    reminder_window_minutes: int = 240


@dataclass
class Settings:
    app_name: str = "TravelInbox"
    debug: bool = False
    llm: LLMConfig = field(default_factory=LLMConfig)
    mail: MailConfig = field(default_factory=MailConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    matching: MatchingConfig = field(default_factory=MatchingConfig)
    review: ReviewConfig = field(default_factory=ReviewConfig)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """
    Replace ${VAR_NAME} / ${VAR_NAME:-default} patterns with environment values.
    Unset variables without a default resolve to "" so optional channels stay off.
    """
    pattern = re.compile(r'\$\{(\w+)(?::-([^}]*))?\}')
    def replacer(match):
        var_name, default = match.group(1), match.group(2)
        return os.environ.get(var_name, default if default is not None else "")
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


def _build(cls, raw: dict[str, Any]):
    """Instantiate a config dataclass from the keys it declares."""
    known = {k: v for k, v in (raw or {}).items() if k in cls.__dataclass_fields__}
    return cls(**known)


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "TRAVEL_INBOX_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)

        if "llm" in raw:
            llm = dict(raw["llm"])
            tenants = llm.pop("tenants", None) or {}
            settings.llm = _build(LLMConfig, llm)
            settings.llm.tenants = {
                tenant_id: _build(TenantLLMConfig, data)
                for tenant_id, data in tenants.items()
            }

        if "mail" in raw:
            settings.mail = _build(MailConfig, raw["mail"])

        if "database" in raw:
            settings.database = _build(DatabaseConfig, raw["database"])

        if "queue" in raw:
            settings.queue = _build(QueueConfig, raw["queue"])

        if "pipeline" in raw:
            settings.pipeline = _build(PipelineConfig, raw["pipeline"])

        if "matching" in raw:
            settings.matching = _build(MatchingConfig, raw["matching"])

        if "review" in raw:
            review = dict(raw["review"])
            sla = review.pop("sla_minutes", None)
            settings.review = _build(ReviewConfig, review)
            if sla:
                settings.review.sla_minutes.update({k: int(v) for k, v in sla.items()})

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Drop cached settings (for testing)."""
    global _settings
    _settings = None
