"""
Periodic tasks on an APScheduler BackgroundScheduler.

ARCHITECTURE:
- One interval job per task, run on APScheduler's thread pool executor
- ``max_instances=1`` and ``coalesce=True``: a task still in flight when it
  comes due again is skipped, and missed runs collapse into one
- Task exceptions are logged and counted; they never stop the scheduler
- A job-event listener feeds EVENT_JOB_EXECUTED / EVENT_JOB_ERROR into a
  per-task breaker, which fires ``on_trip`` once after consecutive failures
- ``run_once`` runs a task on the calling thread through the same breaker
  and the same in-flight guard

USAGE:
    scheduler = TaskScheduler(max_workers=4)
    scheduler.add_task("timeout_sweep", engine.sweep, interval_seconds=60)
    scheduler.start()
    ...
    scheduler.stop()
"""

import os
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Any

import pytz
from apscheduler.events import (
    EVENT_JOB_ERROR,
    EVENT_JOB_EXECUTED,
    EVENT_JOB_MAX_INSTANCES,
    EVENT_JOB_MISSED,
    JobEvent,
)
from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from campus.logging import get_logger, LogStream, LogContext
from campus.runtime.circuit_breaker import TaskFailureBreaker

TripCallback = Callable[[str, int, Exception], None]

# Returned by a job that found its task already running via run_once
_SKIPPED = object()


@dataclass
class ScheduledTask:
    name: str
    func: Callable[[], Any]
    interval_seconds: float
    initial_delay: float = 0.0
    in_flight: bool = False
    runs: int = 0
    failures: int = 0
    skipped: int = 0
    last_error: Optional[str] = field(default=None, repr=False)


class TaskScheduler:

    def __init__(
        self,
        max_workers: int = 4,
        breaker: Optional[TaskFailureBreaker] = None,
        on_trip: Optional[TripCallback] = None,
        misfire_grace_seconds: int = 60,
        *,
        daemon: Optional[bool] = None,
    ):
        self.max_workers = max_workers
        self.breaker = breaker or TaskFailureBreaker()
        self.on_trip = on_trip
        self.logger = get_logger(LogStream.SCHEDULER)

        self._tasks: Dict[str, ScheduledTask] = {}
        self._lock = threading.Lock()

        # Under pytest, stray non-daemon threads can hang the test runner
        if daemon is None:
            daemon = bool(os.environ.get('PYTEST_CURRENT_TEST') or os.environ.get('PYTEST_RUNNING'))

        self._scheduler = BackgroundScheduler(
            jobstores={'default': MemoryJobStore()},
            executors={'default': ThreadPoolExecutor(max_workers)},
            job_defaults={
                'coalesce': True,
                'max_instances': 1,
                'misfire_grace_time': misfire_grace_seconds,
            },
            timezone=pytz.utc,
            daemon=bool(daemon),
        )
        self._scheduler.add_listener(
            self._on_job_event,
            EVENT_JOB_EXECUTED | EVENT_JOB_ERROR | EVENT_JOB_MAX_INSTANCES | EVENT_JOB_MISSED,
        )

    def add_task(
        self, name: str, func: Callable[[], Any], interval_seconds: float, initial_delay: float = 0.0
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        with self._lock:
            if name in self._tasks:
                raise ValueError(f"Task {name} already scheduled")
            task = ScheduledTask(
                name=name,
                func=func,
                interval_seconds=interval_seconds,
                initial_delay=initial_delay,
            )
            self._tasks[name] = task
        if self.is_running:
            self._add_job(task)

    def _add_job(self, task: ScheduledTask) -> None:
        self._scheduler.add_job(
            self._run_job,
            trigger=IntervalTrigger(seconds=task.interval_seconds, timezone=pytz.utc),
            args=(task.name,),
            id=task.name,
            name=task.name,
            next_run_time=datetime.now(pytz.utc) + timedelta(seconds=task.initial_delay),
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )

    # ------------------------
    # Lifecycle
    # ------------------------

    def start(self) -> None:
        if self.is_running:
            raise RuntimeError("Scheduler already running")
        with self._lock:
            tasks = list(self._tasks.values())
        # first run times count from start(), not from registration
        for task in tasks:
            self._add_job(task)
        self._scheduler.start()
        self.logger.info("TaskScheduler started", extra={"tasks": sorted(t.name for t in tasks)})

    def stop(self, wait: bool = True) -> None:
        if not self.is_running:
            return
        self._scheduler.shutdown(wait=wait)
        self.logger.info("TaskScheduler stopped", extra=self.get_stats())

    @property
    def is_running(self) -> bool:
        return self._scheduler.running

    # ------------------------
    # Dispatch
    # ------------------------

    def trigger(self, name: str) -> bool:
        """Make *name* due now on the executor. Returns False if it was skipped as in flight."""
        if not self.is_running:
            raise RuntimeError("Scheduler not running")
        task = self._get(name)
        with self._lock:
            if task.in_flight:
                task.skipped += 1
                self.logger.debug(f"Task {name} still running, trigger skipped", extra={"task": name})
                return False
        self._scheduler.modify_job(name, next_run_time=datetime.now(pytz.utc))
        return True

    def run_once(self, name: str) -> bool:
        """Run *name* on the calling thread. Returns True on success, False if skipped or failed."""
        task = self._get(name)
        if not self._claim(task):
            return False
        try:
            with LogContext():
                task.func()
        except Exception as e:
            self._record_failure(task, e)
            return False
        finally:
            self._release(task)
        self._record_success(task)
        return True

    def _run_job(self, name: str) -> Any:
        """Job body; exceptions propagate so APScheduler reports EVENT_JOB_ERROR."""
        task = self._get(name)
        if not self._claim(task):
            return _SKIPPED
        try:
            with LogContext():
                return task.func()
        finally:
            self._release(task)

    def _on_job_event(self, event: JobEvent) -> None:
        with self._lock:
            task = self._tasks.get(event.job_id)
        if task is None:
            return

        if event.code in (EVENT_JOB_MAX_INSTANCES, EVENT_JOB_MISSED):
            with self._lock:
                task.skipped += 1
            self.logger.debug(f"Task {task.name} run skipped", extra={"task": task.name, "event_code": event.code})
        elif event.code == EVENT_JOB_ERROR:
            self._record_failure(task, event.exception)
        elif event.retval is not _SKIPPED:
            self._record_success(task)

    def _get(self, name: str) -> ScheduledTask:
        with self._lock:
            try:
                return self._tasks[name]
            except KeyError:
                raise KeyError(f"Unknown task: {name}") from None

    def _claim(self, task: ScheduledTask) -> bool:
        with self._lock:
            if task.in_flight:
                task.skipped += 1
                self.logger.debug(f"Task {task.name} still running, skipped", extra={"task": task.name})
                return False
            task.in_flight = True
            return True

    def _release(self, task: ScheduledTask) -> None:
        with self._lock:
            task.in_flight = False

    # ------------------------
    # Outcomes
    # ------------------------

    def _record_success(self, task: ScheduledTask) -> None:
        with self._lock:
            task.runs += 1
        self.breaker.record_success(task.name)

    def _record_failure(self, task: ScheduledTask, error: BaseException) -> None:
        with self._lock:
            task.runs += 1
            task.failures += 1
            task.last_error = f"{type(error).__name__}: {error}"
        self.logger.error(
            f"Task {task.name} failed",
            extra={"task": task.name, "error": str(error)},
            exc_info=(type(error), error, error.__traceback__),
        )
        if self.breaker.record_failure(task.name):
            self._tripped(task, error)

    def _tripped(self, task: ScheduledTask, error: BaseException) -> None:
        count = self.breaker.failure_count(task.name)
        self.logger.critical(
            f"Task {task.name} failed {count} times in a row",
            extra={"task": task.name, "consecutive_failures": count},
        )
        if self.on_trip is not None:
            try:
                self.on_trip(task.name, count, error)
            except Exception as e:
                self.logger.error(f"on_trip callback failed for {task.name}", extra={"error": str(e)}, exc_info=True)

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            tasks = {
                t.name: {
                    "runs": t.runs,
                    "failures": t.failures,
                    "skipped": t.skipped,
                    "in_flight": t.in_flight,
                    "interval_seconds": t.interval_seconds,
                }
                for t in self._tasks.values()
            }
        return {"running": self.is_running, "tasks": tasks, "breaker": self.breaker.get_status()}
