"""
Performance metrics logging.

Provides:
- PerformanceLogger: collects durations per operation and logs them
- log_execution_time: context manager for timing code blocks (sweeps,
  handler invocations, broadcasts)
"""

import time
import logging
import threading
from contextlib import contextmanager
from typing import Optional, Dict, Any
from collections import defaultdict, deque

# Bounded history per operation; the process runs indefinitely
_MAX_SAMPLES = 1000


class PerformanceLogger:
    """Dedicated logger for performance metrics."""

    def __init__(self):
        from .logger import get_logger, LogStream
        self.logger = get_logger(LogStream.PERFORMANCE)
        self._lock = threading.Lock()
        self._stats = defaultdict(lambda: deque(maxlen=_MAX_SAMPLES))

    def log_metric(
        self,
        operation: str,
        duration_ms: float,
        success: bool = True,
        **metadata
    ):
        if success:
            with self._lock:
                self._stats[operation].append(duration_ms)

        self.logger.debug(
            f"{operation} performance",
            extra={
                "operation": operation,
                "duration_ms": round(duration_ms, 2),
                "success": success,
                **metadata
            }
        )

    def get_stats(self, operation: str) -> Optional[Dict[str, Any]]:
        """
        Get statistics for an operation.

        Returns:
            Dict with count, min, max, mean, p50, p95 or None
        """
        with self._lock:
            durations = sorted(self._stats.get(operation, ()))
        if not durations:
            return None

        n = len(durations)
        return {
            "count": n,
            "min_ms": round(durations[0], 2),
            "max_ms": round(durations[-1], 2),
            "mean_ms": round(sum(durations) / n, 2),
            "p50_ms": round(durations[n // 2], 2),
            "p95_ms": round(durations[min(n - 1, int(n * 0.95))], 2),
        }


_perf_logger = None
_perf_lock = threading.Lock()


def get_performance_logger() -> PerformanceLogger:
    """Get or create global performance logger instance."""
    global _perf_logger
    with _perf_lock:
        if _perf_logger is None:
            _perf_logger = PerformanceLogger()
        return _perf_logger


@contextmanager
def log_execution_time(
    operation: str,
    logger: Optional[logging.Logger] = None,
    **metadata
):
    """
    Context manager to log execution time.

    Usage:
        with log_execution_time("timeout_sweep", logger=self.logger):
            ...

    Args:
        operation: Operation name
        logger: Optional logger that also receives a debug/error line
        **metadata: Additional metadata to log
    """
    start = time.perf_counter()
    perf_logger = get_performance_logger()

    try:
        yield
    except Exception as e:
        elapsed = (time.perf_counter() - start) * 1000
        perf_logger.log_metric(
            operation,
            elapsed,
            success=False,
            error=str(e),
            error_type=type(e).__name__,
            **metadata
        )
        if logger:
            logger.error(
                f"{operation} failed after {elapsed:.2f}ms: {e}",
                extra={
                    "operation": operation,
                    "duration_ms": round(elapsed, 2),
                    "error_type": type(e).__name__,
                    **metadata
                },
                exc_info=True
            )
        raise

    elapsed = (time.perf_counter() - start) * 1000
    perf_logger.log_metric(operation, elapsed, success=True, **metadata)
    if logger:
        logger.debug(
            f"{operation} completed in {elapsed:.2f}ms",
            extra={"operation": operation, "duration_ms": round(elapsed, 2), **metadata}
        )
