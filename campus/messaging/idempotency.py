"""
Consumer-side idempotency guard.

Delivery is at-least-once, so consumers whose side effects must not repeat
(audit persistence, user notifications) wrap their handler in
``IdempotentHandler``. A message_id is remembered only after the wrapped
handler succeeded, so a failed attempt is still retried.
"""

from __future__ import annotations

import threading
from collections import OrderedDict
from typing import Callable

from campus.logging import get_logger, LogStream
from campus.messaging.message import Message


class IdempotentHandler:
    """
    Wraps a handler and skips messages whose message_id was already handled.

    Attributes:
        duplicates_skipped: count of deliveries skipped as duplicates.
    """

    def __init__(self, callback: Callable[[Message], None], max_remembered: int = 50_000) -> None:
        self._callback = callback
        self._max_remembered = max_remembered
        self._seen: "OrderedDict[str, None]" = OrderedDict()
        self._lock = threading.Lock()
        self.duplicates_skipped: int = 0
        self.__name__ = getattr(callback, "__name__", type(callback).__name__)
        self.logger = get_logger(LogStream.MESSAGING)

    def seen(self, message_id: str) -> bool:
        with self._lock:
            return message_id in self._seen

    def __call__(self, message: Message) -> None:
        with self._lock:
            if message.message_id in self._seen:
                self.duplicates_skipped += 1
                duplicate = True
            else:
                duplicate = False

        if duplicate:
            self.logger.info(
                f"Skipping duplicate delivery of {message.message_id}",
                extra={"message_id": message.message_id, "handler": self.__name__},
            )
            return

        self._callback(message)

        with self._lock:
            self._seen[message.message_id] = None
            while len(self._seen) > self._max_remembered:
                self._seen.popitem(last=False)
