"""
Operator alert transports.

The dead-letter service only needs ``send_alert(text)``. Transports may raise;
the service logs the failure and carries on.
"""

import time
from typing import Protocol, Callable, Optional

import requests

from campus.logging import get_logger, LogStream


class AlertTransport(Protocol):
    def send_alert(self, text: str) -> None:
        ...


class AlertDeliveryError(Exception):
    """Alert could not be delivered after all attempts."""
    pass


class LoggingAlertTransport:
    """Writes alerts to the dead-letter log stream at ERROR."""

    def __init__(self):
        self.logger = get_logger(LogStream.DEADLETTER)

    def send_alert(self, text: str) -> None:
        self.logger.error(f"ALERT: {text}", extra={"alert": True})


class WebhookAlertTransport:
    """
    Posts alerts to an HTTP webhook (Slack / Discord / generic JSON).

    Payload: {"text": ..., "content": ...}; any 2xx counts as delivered.
    429 honours Retry-After; other failures back off 2**attempt seconds.
    """

    def __init__(
        self,
        webhook_url: str,
        timeout: float = 5.0,
        max_attempts: int = 3,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if not webhook_url:
            raise ValueError("webhook_url is required")
        self.webhook_url = webhook_url
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.session = session or requests.Session()
        self._sleep = sleep
        self.logger = get_logger(LogStream.DEADLETTER)

    def send_alert(self, text: str) -> None:
        payload = {"text": text, "content": text[:2000]}
        last_error = None

        for attempt in range(self.max_attempts):
            try:
                response = self.session.post(self.webhook_url, json=payload, timeout=self.timeout)
            except requests.RequestException as e:
                last_error = str(e)
                self.logger.warning(
                    f"Alert webhook request failed (attempt {attempt + 1})",
                    extra={"error": last_error},
                )
            else:
                if 200 <= response.status_code < 300:
                    return
                last_error = f"HTTP {response.status_code}"
                if response.status_code == 429:
                    retry_after = _parse_retry_after(response.headers.get("Retry-After"))
                    self.logger.warning(f"Alert webhook rate limited, retry after {retry_after}s")
                    if attempt < self.max_attempts - 1:
                        self._sleep(retry_after)
                    continue
                self.logger.warning(
                    f"Alert webhook returned {response.status_code} (attempt {attempt + 1})"
                )

            if attempt < self.max_attempts - 1:
                self._sleep(2 ** attempt)

        raise AlertDeliveryError(f"Alert webhook failed after {self.max_attempts} attempts: {last_error}")


def _parse_retry_after(value: Optional[str], default: float = 5.0) -> float:
    if not value:
        return default
    try:
        return max(0.0, float(value))
    except ValueError:
        return default
