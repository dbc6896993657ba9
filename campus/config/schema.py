"""
Configuration schema using Pydantic for validation.

Single source of truth for all configuration parameters.
Validates on load, fails fast on invalid config.
"""

from __future__ import annotations

from pydantic import BaseModel, Field, field_validator, model_validator, ConfigDict
from typing import Optional, Dict, Any
from pathlib import Path
from enum import Enum


# ============================================================================
# ENUMS
# ============================================================================

class LogLevel(str, Enum):
    """Log levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


ORDER_TYPE_KEYS = ("MAIL", "SHOPPING", "PURCHASE_REQUEST")
PHASE_KEYS = ("PICKUP", "DELIVERY", "CONFIRMATION")


# ============================================================================
# TIMEOUT CONFIGURATION
# ============================================================================

class TimeoutPolicyConfig(BaseModel):
    """
    Timeout policy for one order type.

    RULES:
    - 0 < warning_threshold_ratio < 1
    - archive_threshold >= 1
    - phase overrides only for PICKUP / DELIVERY / CONFIRMATION
    """

    default_timeout_minutes: int = Field(
        ge=1,
        le=7 * 24 * 60,
        description="Minutes after the phase reference time before the order times out"
    )

    warning_threshold_ratio: float = Field(
        gt=0.0,
        lt=1.0,
        description="Fraction of the timeout after which a warning is raised"
    )

    archive_threshold: int = Field(
        ge=1,
        description="Timeout count at which the order escalates to intervention"
    )

    priority: int = Field(
        ge=0,
        default=0,
        description="Sweep ordering; higher priority types are evaluated first"
    )

    phase_timeout_minutes: Dict[str, int] = Field(
        default_factory=dict,
        description="Optional per-phase overrides of default_timeout_minutes"
    )

    @field_validator("phase_timeout_minutes")
    @classmethod
    def validate_phases(cls, v: Dict[str, int]) -> Dict[str, int]:
        normalized = {}
        for phase, minutes in v.items():
            key = phase.strip().upper()
            if key not in PHASE_KEYS:
                raise ValueError(f"Unknown timeout phase: {phase}")
            if minutes < 1:
                raise ValueError(f"Phase timeout for {key} must be >= 1 minute")
            normalized[key] = minutes
        return normalized


def _default_policies() -> Dict[str, TimeoutPolicyConfig]:
    return {
        "MAIL": TimeoutPolicyConfig(
            default_timeout_minutes=60, warning_threshold_ratio=0.8,
            archive_threshold=3, priority=3,
        ),
        "SHOPPING": TimeoutPolicyConfig(
            default_timeout_minutes=90, warning_threshold_ratio=0.7,
            archive_threshold=4, priority=2,
            phase_timeout_minutes={"PICKUP": 45, "CONFIRMATION": 24 * 60},
        ),
        "PURCHASE_REQUEST": TimeoutPolicyConfig(
            default_timeout_minutes=120, warning_threshold_ratio=0.75,
            archive_threshold=5, priority=1,
            phase_timeout_minutes={"PICKUP": 40, "CONFIRMATION": 24 * 60},
        ),
    }


class TimeoutConfig(BaseModel):
    """Detection engine configuration."""

    policies: Dict[str, TimeoutPolicyConfig] = Field(default_factory=_default_policies)

    max_cas_retries: int = Field(
        ge=0,
        le=10,
        default=3,
        description="Re-evaluations of a single order after a rejected write"
    )

    @field_validator("policies")
    @classmethod
    def validate_order_types(cls, v: Dict[str, TimeoutPolicyConfig]) -> Dict[str, TimeoutPolicyConfig]:
        normalized = {}
        for key, policy in v.items():
            order_type = key.strip().upper()
            if order_type not in ORDER_TYPE_KEYS:
                raise ValueError(f"Unknown order type: {key}")
            normalized[order_type] = policy
        # Unlisted types keep their defaults
        for key, policy in _default_policies().items():
            normalized.setdefault(key, policy)
        return normalized

    model_config = ConfigDict(validate_assignment=True)


# ============================================================================
# MESSAGING CONFIGURATION
# ============================================================================

class MessagingConfig(BaseModel):
    """Reliable channel retry and bookkeeping parameters."""

    max_retries: int = Field(
        ge=0,
        le=10,
        default=3,
        description="Redeliveries before a message is dead-lettered"
    )

    base_delay_ms: int = Field(
        ge=0,
        default=1000,
        description="Backoff delay of the first retry"
    )

    multiplier: float = Field(
        ge=1.0,
        default=2.0,
        description="Backoff growth factor per retry"
    )

    max_delay_ms: int = Field(
        ge=0,
        default=60_000,
        description="Upper bound on a single backoff delay"
    )

    fetch_timeout_seconds: float = Field(
        gt=0.0,
        default=0.5,
        description="How long a consumer worker blocks on the broker per poll"
    )

    retry_tracker_max_entries: int = Field(
        ge=1,
        default=10_000,
        description="Bound on in-memory retry bookkeeping"
    )

    retry_tracker_ttl_seconds: int = Field(
        ge=1,
        default=3600,
        description="Bookkeeping entries older than this are swept"
    )

    @model_validator(mode="after")
    def validate_delays(self):
        if self.max_delay_ms and self.max_delay_ms < self.base_delay_ms:
            raise ValueError(
                f"max_delay_ms ({self.max_delay_ms}) must be >= base_delay_ms ({self.base_delay_ms})"
            )
        return self


# ============================================================================
# SCHEDULER CONFIGURATION
# ============================================================================

class SchedulerConfig(BaseModel):
    """Periodic task cadence. Cadence is operational, not correctness-bearing."""

    sweep_interval_seconds: float = Field(gt=0.0, default=60.0)
    retry_cleanup_interval_seconds: float = Field(gt=0.0, default=3600.0)
    period_rollover_interval_seconds: float = Field(gt=0.0, default=300.0)
    dead_letter_reconcile_interval_seconds: Optional[float] = Field(
        gt=0.0,
        default=None,
        description="Automatic reconciliation cadence; None disables it"
    )

    max_workers: int = Field(ge=1, le=32, default=4)

    misfire_grace_seconds: int = Field(
        ge=1,
        default=60,
        description="How late a run may start before it is dropped as missed"
    )

    max_consecutive_failures: int = Field(
        ge=1,
        default=3,
        description="Consecutive task failures before an operator alert"
    )


# ============================================================================
# DEAD-LETTER / STATISTICS / BROADCAST / LOGGING
# ============================================================================

class DeadLetterConfig(BaseModel):
    """Dead-letter persistence and alerting."""

    log_path: Path = Field(default=Path("data/deadletter/deadletter.log"))

    alert_webhook_url: Optional[str] = Field(
        default=None,
        description="Operator webhook; alerts are only logged when unset"
    )

    alert_timeout_seconds: float = Field(gt=0.0, default=5.0)
    alert_max_attempts: int = Field(ge=1, le=10, default=3)


class StatisticsConfig(BaseModel):
    """Statistics period configuration."""

    timezone: str = Field(
        default="Asia/Shanghai",
        description="Timezone whose calendar day defines the current period"
    )

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        import pytz
        try:
            pytz.timezone(v)
        except pytz.UnknownTimeZoneError as e:
            raise ValueError(f"Unknown timezone: {v}") from e
        return v


class BroadcastConfig(BaseModel):
    """Live subscriber push server."""

    enabled: bool = Field(default=False)
    host: str = Field(default="127.0.0.1")
    port: int = Field(ge=1, le=65535, default=8765)


class LoggingConfig(BaseModel):
    """Logging configuration."""

    log_dir: Path = Field(default=Path("logs"))
    log_level: LogLevel = Field(default=LogLevel.INFO)
    console_level: LogLevel = Field(default=LogLevel.INFO)
    json_logs: bool = Field(default=True)

    max_bytes: int = Field(
        ge=1_000_000,
        le=100_000_000,
        default=10_000_000,
        description="Max bytes per log file"
    )

    backup_count: int = Field(ge=1, le=20, default=5)


# ============================================================================
# MASTER SCHEMA
# ============================================================================

class ConfigSchema(BaseModel):
    """
    Master configuration schema.

    Every block has defaults, so an empty document is a valid configuration.
    """

    timeout: TimeoutConfig = Field(default_factory=TimeoutConfig)
    messaging: MessagingConfig = Field(default_factory=MessagingConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    deadletter: DeadLetterConfig = Field(default_factory=DeadLetterConfig)
    statistics: StatisticsConfig = Field(default_factory=StatisticsConfig)
    broadcast: BroadcastConfig = Field(default_factory=BroadcastConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    order_db_path: Optional[Path] = Field(
        default=None,
        description="SQLite order store; None keeps orders in memory"
    )

    model_config = ConfigDict(validate_assignment=True)

    def ensure_directories_exist(self) -> None:
        """Create directories for file-backed components."""
        self.deadletter.log_path.parent.mkdir(parents=True, exist_ok=True)
        self.logging.log_dir.mkdir(parents=True, exist_ok=True)
        if self.order_db_path is not None:
            self.order_db_path.parent.mkdir(parents=True, exist_ok=True)

    @classmethod
    def from_yaml(cls, path: Path) -> "ConfigSchema":
        """Load config from YAML file."""
        import yaml
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        return cls(**data)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConfigSchema":
        return cls(**data)

    def to_yaml(self, path: Path) -> None:
        """Save config to YAML file."""
        import yaml
        data = self.model_dump(mode="json")
        with open(path, "w", encoding="utf-8") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)
