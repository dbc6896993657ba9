"""Process runtime: scheduler, task breaker, application wiring."""

from .circuit_breaker import TaskFailureBreaker
from .scheduler import TaskScheduler, ScheduledTask
from .app import CampusApp, RunOptions, LoggingArchiver, run, run_app

__all__ = [
    "TaskFailureBreaker",
    "TaskScheduler",
    "ScheduledTask",
    "CampusApp",
    "RunOptions",
    "LoggingArchiver",
    "run",
    "run_app",
]
