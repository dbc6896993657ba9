"""
Core logging module with structured logging and correlation ID tracking.

Architecture:
- One log stream per subsystem (timeout engine, messaging, dead-letter, ...)
- JSON formatting for log shipping
- Human-readable console formatting for development
- Correlation ID propagation (one id per sweep / per delivered message)
- Automatic rotation
"""

import logging
import logging.handlers
from pathlib import Path
from typing import Optional
from contextvars import ContextVar
import uuid

_correlation_id: ContextVar[Optional[str]] = ContextVar('correlation_id', default=None)

ROOT_LOGGER_NAME = "campus"


# ============================================================================
# LOG STREAM DEFINITIONS
# ============================================================================

class LogStream:
    """Log stream identifiers."""
    SYSTEM = "system"           # Startup, shutdown, wiring
    TIMEOUT = "timeout"         # Sweeps and order timeout transitions
    MESSAGING = "messaging"     # Publish, delivery, retry
    DEADLETTER = "deadletter"   # Dead-lettered messages, alerts, reconciliation
    STATISTICS = "statistics"   # Counter updates, rebuilds, period rollover
    BROADCAST = "broadcast"     # Live subscriber connections
    SCHEDULER = "scheduler"     # Periodic task dispatch
    PERFORMANCE = "performance" # Timing

    @classmethod
    def all(cls) -> list:
        return [
            cls.SYSTEM, cls.TIMEOUT, cls.MESSAGING, cls.DEADLETTER,
            cls.STATISTICS, cls.BROADCAST, cls.SCHEDULER, cls.PERFORMANCE,
        ]


# ============================================================================
# CORRELATION ID MANAGEMENT
# ============================================================================

def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """
    Set correlation ID for current context.

    Args:
        correlation_id: Optional correlation ID. If None, generates new UUID.

    Returns:
        The correlation ID that was set
    """
    if correlation_id is None:
        correlation_id = str(uuid.uuid4())
    _correlation_id.set(correlation_id)
    return correlation_id


def get_correlation_id() -> Optional[str]:
    """Get correlation ID for current context."""
    return _correlation_id.get()


class LogContext:
    """
    Context manager for scoped correlation ID.

    Usage:
        with LogContext(message.message_id):
            logger.info("Handling message")  # Includes correlation_id
    """

    def __init__(self, correlation_id: Optional[str] = None):
        self.correlation_id = correlation_id
        self._token = None

    def __enter__(self):
        self._token = _correlation_id.set(self.correlation_id or str(uuid.uuid4()))
        return _correlation_id.get()

    def __exit__(self, exc_type, exc_val, exc_tb):
        _correlation_id.reset(self._token)


# ============================================================================
# CUSTOM LOG RECORD FACTORY
# ============================================================================

_original_factory = logging.getLogRecordFactory()


def _correlation_id_factory(*args, **kwargs):
    record = _original_factory(*args, **kwargs)
    record.correlation_id = get_correlation_id()
    return record


logging.setLogRecordFactory(_correlation_id_factory)


# ============================================================================
# LOGGER SETUP
# ============================================================================

_loggers_initialized = False


def setup_logging(
    log_dir: Path = Path("logs"),
    log_level: str = "INFO",
    console_level: str = "INFO",
    json_logs: bool = True,
    max_bytes: int = 10_000_000,  # 10MB
    backup_count: int = 5
) -> None:
    """
    Initialize logging infrastructure.

    Creates one rotating file per stream, e.g. logs/timeout/timeout.log,
    logs/deadletter/deadletter.log. Console output goes through the root
    logger.

    Args:
        log_dir: Base directory for logs
        log_level: File logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        console_level: Console logging level
        json_logs: If True, use JSON formatting
        max_bytes: Max bytes per log file before rotation
        backup_count: Number of backup files to keep
    """
    global _loggers_initialized

    if _loggers_initialized:
        return

    from .formatters import JSONFormatter, ConsoleFormatter

    log_dir = Path(log_dir)

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)  # Filter at handler level
    root.handlers = []

    console_handler = logging.StreamHandler()
    console_handler.setLevel(getattr(logging, console_level.upper()))
    console_handler.setFormatter(ConsoleFormatter())
    root.addHandler(console_handler)

    file_level = getattr(logging, log_level.upper())

    for stream in LogStream.all():
        stream_dir = log_dir / stream
        stream_dir.mkdir(parents=True, exist_ok=True)

        handler = logging.handlers.RotatingFileHandler(
            stream_dir / f"{stream}.log",
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding='utf-8'
        )
        handler.setLevel(file_level)

        if json_logs:
            handler.setFormatter(JSONFormatter())
        else:
            handler.setFormatter(logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(correlation_id)s - %(message)s'
            ))

        logger = get_logger(stream)
        logger.addHandler(handler)
        logger.setLevel(file_level)
        logger.propagate = True

    _loggers_initialized = True

    get_logger(LogStream.SYSTEM).info(
        "Logging system initialized",
        extra={
            "log_dir": str(log_dir),
            "log_level": log_level,
            "json_logs": json_logs
        }
    )


def get_logger(stream: str) -> logging.Logger:
    """
    Get logger for specific stream.

    Example:
        logger = get_logger(LogStream.TIMEOUT)
        logger.info("Order timed out", extra={"order_number": "M123"})
    """
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{stream}")
