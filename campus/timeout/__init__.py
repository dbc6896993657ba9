"""
Order-lifecycle timeout engine.

Policy table, status state machine, Timeoutable capability, version-checked
order store, and the scheduled detection sweep.
"""

from .status import TimeoutStatus, TimeoutPhase, Severity
from .policy import (
    OrderType,
    TimeoutPolicy,
    PolicyTable,
    DEFAULT_POLICIES,
    TimeoutEngineError,
    PolicyNotFoundError,
)
from .timeoutable import Timeoutable, TimeoutableOrder, OrderAdapter, ADAPTERS, adapter_for
from .store import (
    OrderStore,
    TimeoutUpdate,
    InMemoryOrderStore,
    SQLiteOrderStore,
    OrderStoreError,
    OrderNotFoundError,
)
from .events import TimeoutTransitionEvent
from .engine import TimeoutDetectionEngine, TimeoutDecision, SweepStats, Archiver, evaluate
from .outbox import TransitionOutbox, FlushResult
from .intervention import InterventionService, ConcurrencyConflictError, InterventionNotAllowedError

__all__ = [
    "TimeoutStatus",
    "TimeoutPhase",
    "Severity",
    "OrderType",
    "TimeoutPolicy",
    "PolicyTable",
    "DEFAULT_POLICIES",
    "TimeoutEngineError",
    "PolicyNotFoundError",
    "Timeoutable",
    "TimeoutableOrder",
    "OrderAdapter",
    "ADAPTERS",
    "adapter_for",
    "OrderStore",
    "TimeoutUpdate",
    "InMemoryOrderStore",
    "SQLiteOrderStore",
    "OrderStoreError",
    "OrderNotFoundError",
    "TimeoutTransitionEvent",
    "TimeoutDetectionEngine",
    "TimeoutDecision",
    "SweepStats",
    "Archiver",
    "evaluate",
    "TransitionOutbox",
    "FlushResult",
    "InterventionService",
    "ConcurrencyConflictError",
    "InterventionNotAllowedError",
]
