"""
Channel handler feeding timeout events into the aggregator and broadcasts.

Broadcast failures are contained by the broadcast service; an aggregator or
decode failure propagates so the channel retries the message.
"""

from typing import Optional

from campus.logging import get_logger, LogStream
from campus.messaging.message import Message, MessageType
from campus.messaging.notifications import UnexpectedMessageTypeError
from campus.statistics.aggregator import StatisticsAggregator, TransitionKind, UpdatedSnapshot
from campus.statistics.recommendations import recommendations_for_user
from campus.timeout.events import TimeoutTransitionEvent


class TimeoutStatisticsListener:

    def __init__(self, aggregator: StatisticsAggregator, broadcast=None, push_recommendations: bool = False):
        self.aggregator = aggregator
        self.broadcast = broadcast
        self.push_recommendations = push_recommendations
        self.logger = get_logger(LogStream.STATISTICS)

    def __call__(self, message: Message) -> None:
        if message.message_type is not MessageType.TIMEOUT_EVENT:
            raise UnexpectedMessageTypeError(
                f"Expected TIMEOUT_EVENT, got {message.message_type.value}"
            )
        self.on_event(TimeoutTransitionEvent.from_dict(message.payload))

    def on_event(self, event: TimeoutTransitionEvent) -> Optional[UpdatedSnapshot]:
        kinds = TransitionKind.kinds_for_event(event)
        if not kinds:
            return None

        user_id = event.responsible_user
        updated = None
        for kind in kinds:
            updated = self.aggregator.record_event(event.order_type, user_id, kind)

        self.logger.debug(
            f"Recorded {[k.value for k in kinds]} for {event.order_number}",
            extra={"order_number": event.order_number, "user_id": user_id},
        )

        if self.broadcast is not None:
            if updated.user is not None:
                self.broadcast.broadcast_user_update(user_id, updated.user)
                if self.push_recommendations:
                    self.broadcast.broadcast_recommendations(
                        recommendations_for_user(updated.user), updated.user.period, user_id=user_id
                    )
            self.broadcast.broadcast_system_update(updated.system)
        return updated
