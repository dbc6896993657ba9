"""
Logging infrastructure for the campus timeout engine.

Features:
- JSON structured logging
- Correlation ID tracking (one id per sweep or delivered message)
- One log stream per subsystem
- Execution timing
"""

from .logger import (
    get_logger,
    setup_logging,
    LogContext,
    set_correlation_id,
    get_correlation_id,
    LogStream,
)

from .formatters import (
    JSONFormatter,
    ConsoleFormatter,
)

from .metrics import (
    PerformanceLogger,
    get_performance_logger,
    log_execution_time,
)

__all__ = [
    "get_logger",
    "setup_logging",
    "LogContext",
    "set_correlation_id",
    "get_correlation_id",
    "LogStream",
    "JSONFormatter",
    "ConsoleFormatter",
    "PerformanceLogger",
    "get_performance_logger",
    "log_execution_time",
]
