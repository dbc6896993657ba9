"""Live timeout statistics: aggregator, recommendations, channel listener."""

from .aggregator import (
    StatisticsAggregator,
    StatisticsSnapshot,
    StatisticsPeriod,
    TypeCounts,
    TransitionKind,
    UpdatedSnapshot,
)
from .recommendations import recommendations_for_user, recommendations_for_system
from .listener import TimeoutStatisticsListener

__all__ = [
    "StatisticsAggregator",
    "StatisticsSnapshot",
    "StatisticsPeriod",
    "TypeCounts",
    "TransitionKind",
    "UpdatedSnapshot",
    "recommendations_for_user",
    "recommendations_for_system",
    "TimeoutStatisticsListener",
]
