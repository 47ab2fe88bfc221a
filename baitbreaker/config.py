from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import os


DETECTION_HEURISTIC = "heuristic"
DETECTION_MODEL = "model"

SENSITIVITY_MIN = 1
SENSITIVITY_MAX = 10
SENSITIVITY_DEFAULT = 5


def _env_str(name: str, default: str | None = None) -> str:
    value = os.getenv(name)
    if value is None:
        if default is None:
            raise RuntimeError(f"Missing required env: {name}")
        return default
    return value


def _env_int(name: str, default: int | None = None) -> int:
    value = os.getenv(name)
    if value is None:
        if default is None:
            raise RuntimeError(f"Missing required env: {name}")
        return default
    return int(value)


def _env_float(name: str, default: float | None = None) -> float:
    value = os.getenv(name)
    if value is None:
        if default is None:
            raise RuntimeError(f"Missing required env: {name}")
        return default
    return float(value)


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    value = value.strip().lower()
    return value in {"1", "true", "yes", "y", "on"}


@dataclass(frozen=True)
class Config:
    # Requester
    message_timeout_seconds: float
    max_retries: int
    retry_delay_seconds: float
    prefetch_summaries: bool

    # Coordinator
    classification_base_timeout_seconds: float
    classification_per_item_timeout_seconds: float
    summary_timeout_seconds: float
    idle_timeout_seconds: float
    keepalive_interval_seconds: float
    concurrency_limit: int
    detection_mode: str
    sensitivity: int

    # Cache
    cache_ttl_days: float
    cache_max_size: int
    sqlite_path: Path

    # Article fetching
    fetch_timeout_seconds: int
    fetch_max_retries: int
    article_length_limit: int
    user_agent: str

    # Model backend
    ai_base_url: str
    ai_api_key: str
    ai_model: str
    ai_timeout_seconds: int
    ai_max_retries: int
    ai_min_interval_seconds: float
    ai_fallback_summary_chars: int

    # Rules
    rules_path: Path
    rules_overrides_path: Path

    # Metrics
    metrics_enabled: bool
    metrics_bind: str
    metrics_port: int

    # Logging
    log_level: str
    log_file: str

    @property
    def cache_ttl_seconds(self) -> float:
        return self.cache_ttl_days * 24 * 60 * 60


def clamp_sensitivity(value) -> int:
    try:
        n = int(value)
    except (TypeError, ValueError):
        return SENSITIVITY_DEFAULT
    return max(SENSITIVITY_MIN, min(SENSITIVITY_MAX, n))


def load_config() -> Config:
    idle_timeout = _env_float("IDLE_TIMEOUT_SECONDS", 30.0)
    return Config(
        message_timeout_seconds=_env_float("MESSAGE_TIMEOUT_SECONDS", 45.0),
        max_retries=_env_int("MAX_RETRIES", 2),
        retry_delay_seconds=_env_float("RETRY_DELAY_SECONDS", 1.0),
        prefetch_summaries=_env_bool("PREFETCH_SUMMARIES", True),
        classification_base_timeout_seconds=_env_float("CLASSIFICATION_BASE_TIMEOUT_SECONDS", 30.0),
        classification_per_item_timeout_seconds=_env_float("CLASSIFICATION_PER_ITEM_TIMEOUT_SECONDS", 5.0),
        summary_timeout_seconds=_env_float("SUMMARY_TIMEOUT_SECONDS", 30.0),
        idle_timeout_seconds=idle_timeout,
        # pings must land well inside the host's idle window
        keepalive_interval_seconds=_env_float("KEEPALIVE_INTERVAL_SECONDS", idle_timeout / 6),
        concurrency_limit=_env_int("CONCURRENCY_LIMIT", 5),
        detection_mode=_env_str("DETECTION_MODE", DETECTION_HEURISTIC),
        sensitivity=clamp_sensitivity(_env_int("SENSITIVITY", SENSITIVITY_DEFAULT)),
        cache_ttl_days=_env_float("CACHE_TTL_DAYS", 7.0),
        cache_max_size=_env_int("CACHE_MAX_SIZE", 1000),
        sqlite_path=Path(_env_str("SQLITE_PATH", "data/baitbreaker.db")),
        fetch_timeout_seconds=_env_int("FETCH_TIMEOUT_SECONDS", 20),
        fetch_max_retries=_env_int("FETCH_MAX_RETRIES", 2),
        article_length_limit=_env_int("ARTICLE_LENGTH_LIMIT", 10000),
        user_agent=_env_str(
            "USER_AGENT",
            "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0 Safari/537.36",
        ),
        ai_base_url=_env_str("AI_BASE_URL", ""),
        ai_api_key=_env_str("AI_API_KEY", ""),
        ai_model=_env_str("AI_MODEL", ""),
        ai_timeout_seconds=_env_int("AI_TIMEOUT_SECONDS", 60),
        ai_max_retries=_env_int("AI_MAX_RETRIES", 2),
        ai_min_interval_seconds=_env_float("AI_MIN_INTERVAL_SECONDS", 0.0),
        ai_fallback_summary_chars=_env_int("AI_FALLBACK_SUMMARY_CHARS", 1000),
        rules_path=Path(_env_str("RULES_PATH", "rules/patterns.yaml")),
        rules_overrides_path=Path(_env_str("RULES_OVERRIDES_PATH", "rules/overrides.yaml")),
        metrics_enabled=_env_bool("METRICS_ENABLED", False),
        metrics_bind=_env_str("METRICS_BIND", "127.0.0.1"),
        metrics_port=_env_int("METRICS_PORT", 9109),
        log_level=_env_str("LOG_LEVEL", "INFO"),
        log_file=_env_str("LOG_FILE", ""),
    )
