"""
Configuration system with Pydantic validation.

Single source of truth for all configuration parameters.
"""

from .schema import (
    ConfigSchema,
    TimeoutConfig,
    TimeoutPolicyConfig,
    MessagingConfig,
    SchedulerConfig,
    DeadLetterConfig,
    StatisticsConfig,
    BroadcastConfig,
    LoggingConfig,
    LogLevel,
)

from .loader import (
    ConfigLoader,
    load_config,
)

from .env import env_flag, env_float

__all__ = [
    "ConfigSchema",
    "TimeoutConfig",
    "TimeoutPolicyConfig",
    "MessagingConfig",
    "SchedulerConfig",
    "DeadLetterConfig",
    "StatisticsConfig",
    "BroadcastConfig",
    "LoggingConfig",
    "LogLevel",
    "ConfigLoader",
    "load_config",
    "env_float",
    "env_flag",
]
