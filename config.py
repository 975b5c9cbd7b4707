"""Configuration management for the Relay stream scheduler.

This module provides centralized configuration for all core components.
All settings are loaded from environment variables with sensible defaults.

Environment Variables:
    Server:
        HOST: Bind address for the real-time server
        PORT: Port for the real-time server
        AUTH_TOKENS: Comma-separated token:owner pairs accepted by 'authenticate'

    Storage:
        DB_PATH: SQLite database file path
        REPORTS_DIR: Directory for markdown copies of newsletters
        LOG_DIR: Directory for log files

    Scheduling:
        TICK_INTERVAL_SECONDS: Delay between scheduler ticks
        SCHEDULER_MAX_RETRIES: Consecutive failed cycles before a stream is paused
        BACKOFF_BASE_SECONDS: Base delay for retry backoff
        BACKOFF_CAP_SECONDS: Maximum retry backoff delay
        LEASE_SECONDS: Execution lease length (renewed while running)

    Pipeline:
        MAX_WORKERS: Concurrent pipeline executions
        STAGE_TIMEOUT_SECONDS: Maximum duration of a single stage
        STAGE_RETRY_BUDGET: In-execution retries for discovery/analysis/synthesis
        CONFIDENCE_SATURATION: Source count at which the count term saturates
        DISCOVERY_LIMIT: Maximum sources requested per discovery

    Alerts:
        DEDUP_WINDOW_HOURS: Rolling window for alert deduplication
        DEDUP_SIMILARITY: Title similarity (0-1) treated as a duplicate

    Synthesis:
        GEMINI_API_KEY: Enables the PydanticAI synthesizer when set
        SYNTHESIS_MODEL: Model for newsletter synthesis (provider:model)
        LANGUAGE: Output language ('zh' or 'en')

    Notifications:
        NOTIFICATION_WEBHOOK_URL: HTTP endpoint for alert/newsletter webhooks
        ALERTS_FILE: Path for JSONL alert file

    Optional Features:
        ENABLE_LOGFIRE: Enable Logfire/OpenTelemetry tracing

    Logging:
        LOG_LEVEL: Logging verbosity (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        LOG_BACKUP_COUNT: Number of rotated log files to keep
        LOG_MAX_BYTES: Max log file size in bytes (0 = time-based rotation)
        LOG_FORMAT: Log format ('text' or 'json' for structured logging)
"""

import os
from dataclasses import dataclass, field
from pathlib import Path


def _env(key: str, default: str = "") -> str:
    """Get string environment variable with optional default."""
    return os.environ.get(key, default)


def _env_int(key: str, default: int) -> int:
    """Get integer environment variable with default.

    Raises:
        ValueError: If value is set but cannot be parsed as integer
    """
    val = os.environ.get(key)
    if not val:
        return default
    try:
        return int(val)
    except ValueError:
        raise ValueError(f"Invalid integer value for {key}: '{val}'")


def _env_float(key: str, default: float) -> float:
    """Get float environment variable with default.

    Raises:
        ValueError: If value is set but cannot be parsed as float
    """
    val = os.environ.get(key)
    if not val:
        return default
    try:
        return float(val)
    except ValueError:
        raise ValueError(f"Invalid float value for {key}: '{val}'")


def _env_bool(key: str, default: bool = False) -> bool:
    """Get boolean environment variable with default.

    Recognizes truthy values: '1', 'true', 'yes', 'on'
    Recognizes falsy values: '0', 'false', 'no', 'off'
    """
    val = os.environ.get(key, "").lower()
    if val in ("1", "true", "yes", "on"):
        return True
    if val in ("0", "false", "no", "off"):
        return False
    return default


def _parse_tokens(raw: str) -> dict[str, str]:
    """Parse 'token:owner,token2:owner2' into a token -> owner map."""
    tokens = {}
    for pair in raw.split(","):
        pair = pair.strip()
        if not pair:
            continue
        token, sep, owner = pair.partition(":")
        if not sep or not token or not owner:
            raise ValueError(f"Invalid AUTH_TOKENS entry: '{pair}' (expected token:owner)")
        tokens[token.strip()] = owner.strip()
    return tokens


@dataclass
class Config:
    """Application configuration loaded from environment variables.

    Example:
        >>> config = Config.load()
        >>> if error := config.validate():
        ...     print(f"Config error: {error}")
    """

    # === Server ===
    host: str = "127.0.0.1"  # HOST
    port: int = 8765  # PORT
    auth_tokens: dict[str, str] = field(default_factory=dict)  # AUTH_TOKENS

    # === Storage ===
    db_path: Path = field(default_factory=lambda: Path("relay.db"))  # DB_PATH
    reports_dir: Path = field(default_factory=lambda: Path("reports"))  # REPORTS_DIR
    log_dir: Path = field(default_factory=lambda: Path("log"))  # LOG_DIR

    # === Scheduling ===
    tick_interval_seconds: float = 30.0  # TICK_INTERVAL_SECONDS
    scheduler_max_retries: int = 5  # SCHEDULER_MAX_RETRIES - failed cycles before pause
    backoff_base_seconds: float = 60.0  # BACKOFF_BASE_SECONDS
    backoff_cap_seconds: float = 3600.0  # BACKOFF_CAP_SECONDS
    lease_seconds: float = 300.0  # LEASE_SECONDS
    monitor_interval_seconds: float = 300.0  # MONITOR_INTERVAL_SECONDS - real-time news checks
    monitor_window_minutes: float = 30.0  # MONITOR_WINDOW_MINUTES - lookback of a real-time check

    # === Pipeline ===
    max_workers: int = 4  # MAX_WORKERS - concurrent executions
    stage_timeout_seconds: float = 120.0  # STAGE_TIMEOUT_SECONDS
    stage_retry_budget: int = 2  # STAGE_RETRY_BUDGET - extra attempts per stage
    confidence_saturation: int = 10  # CONFIDENCE_SATURATION
    discovery_limit: int = 30  # DISCOVERY_LIMIT

    # === Alerts ===
    dedup_window_hours: float = 24.0  # DEDUP_WINDOW_HOURS
    dedup_similarity: float = 0.85  # DEDUP_SIMILARITY

    # === Synthesis ===
    gemini_api_key: str = ""  # GEMINI_API_KEY - enables the AI synthesizer
    synthesis_model: str = "google-gla:gemini-3-flash-preview"  # SYNTHESIS_MODEL
    language: str = "en"  # LANGUAGE - 'zh' or 'en'

    # === Notifications ===
    webhook_url: str = ""  # NOTIFICATION_WEBHOOK_URL
    alerts_file: str = ""  # ALERTS_FILE

    # === Logging Configuration ===
    log_level: str = "INFO"
    log_backup_count: int = 30
    log_max_bytes: int = 0
    log_format: str = "text"

    # === Optional: Observability ===
    enable_logfire: bool = False  # ENABLE_LOGFIRE
    logfire_token: str = ""  # LOGFIRE_TOKEN

    @classmethod
    def load(cls) -> "Config":
        """Load configuration from environment variables."""
        return cls(
            host=_env("HOST", "127.0.0.1"),
            port=_env_int("PORT", 8765),
            auth_tokens=_parse_tokens(_env("AUTH_TOKENS")),
            db_path=Path(_env("DB_PATH", "relay.db")),
            reports_dir=Path(_env("REPORTS_DIR", "reports")),
            log_dir=Path(_env("LOG_DIR", "log")),
            tick_interval_seconds=_env_float("TICK_INTERVAL_SECONDS", 30.0),
            scheduler_max_retries=_env_int("SCHEDULER_MAX_RETRIES", 5),
            backoff_base_seconds=_env_float("BACKOFF_BASE_SECONDS", 60.0),
            backoff_cap_seconds=_env_float("BACKOFF_CAP_SECONDS", 3600.0),
            lease_seconds=_env_float("LEASE_SECONDS", 300.0),
            monitor_interval_seconds=_env_float("MONITOR_INTERVAL_SECONDS", 300.0),
            monitor_window_minutes=_env_float("MONITOR_WINDOW_MINUTES", 30.0),
            max_workers=_env_int("MAX_WORKERS", 4),
            stage_timeout_seconds=_env_float("STAGE_TIMEOUT_SECONDS", 120.0),
            stage_retry_budget=_env_int("STAGE_RETRY_BUDGET", 2),
            confidence_saturation=_env_int("CONFIDENCE_SATURATION", 10),
            discovery_limit=_env_int("DISCOVERY_LIMIT", 30),
            dedup_window_hours=_env_float("DEDUP_WINDOW_HOURS", 24.0),
            dedup_similarity=_env_float("DEDUP_SIMILARITY", 0.85),
            gemini_api_key=_env("GEMINI_API_KEY"),
            synthesis_model=_env("SYNTHESIS_MODEL", "google-gla:gemini-3-flash-preview"),
            language=_env("LANGUAGE", "en"),
            webhook_url=_env("NOTIFICATION_WEBHOOK_URL"),
            alerts_file=_env("ALERTS_FILE"),
            log_level=_env("LOG_LEVEL", "INFO").upper(),
            log_backup_count=_env_int("LOG_BACKUP_COUNT", 30),
            log_max_bytes=_env_int("LOG_MAX_BYTES", 0),
            log_format=_env("LOG_FORMAT", "text").lower(),
            enable_logfire=_env_bool("ENABLE_LOGFIRE", False),
            logfire_token=_env("LOGFIRE_TOKEN"),
        )

    def validate(self) -> str | None:
        """Validate configuration values.

        Returns:
            Error message string if invalid, None if valid.
        """
        if not 0 < self.port < 65536:
            return f"Invalid PORT {self.port}"
        if self.language not in ("zh", "en"):
            return f"Invalid LANGUAGE '{self.language}' - must be 'zh' or 'en'"
        if self.tick_interval_seconds <= 0:
            return "TICK_INTERVAL_SECONDS must be positive"
        if self.max_workers <= 0:
            return "MAX_WORKERS must be positive"
        if self.stage_timeout_seconds <= 0:
            return "STAGE_TIMEOUT_SECONDS must be positive"
        if self.stage_retry_budget < 0:
            return "STAGE_RETRY_BUDGET must be non-negative"
        if self.scheduler_max_retries <= 0:
            return "SCHEDULER_MAX_RETRIES must be positive"
        if self.backoff_base_seconds <= 0 or self.backoff_cap_seconds < self.backoff_base_seconds:
            return "BACKOFF_BASE_SECONDS must be positive and not exceed BACKOFF_CAP_SECONDS"
        if self.lease_seconds <= 0:
            return "LEASE_SECONDS must be positive"
        if self.monitor_interval_seconds <= 0 or self.monitor_window_minutes <= 0:
            return "MONITOR_INTERVAL_SECONDS and MONITOR_WINDOW_MINUTES must be positive"
        if self.confidence_saturation <= 0:
            return "CONFIDENCE_SATURATION must be positive"
        if not 0 < self.dedup_similarity <= 1:
            return "DEDUP_SIMILARITY must be in (0, 1]"
        if self.dedup_window_hours <= 0:
            return "DEDUP_WINDOW_HOURS must be positive"
        if self.log_level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            return f"Invalid LOG_LEVEL '{self.log_level}' - must be DEBUG, INFO, WARNING, ERROR, or CRITICAL"
        if self.log_format not in ("text", "json"):
            return f"Invalid LOG_FORMAT '{self.log_format}' - must be 'text' or 'json'"
        if self.log_backup_count < 0:
            return "LOG_BACKUP_COUNT must be non-negative"
        if self.log_max_bytes < 0:
            return "LOG_MAX_BYTES must be non-negative"
        return None
