"""Critical-failure recording for the booking path.

Every booking-path failure becomes a FailureEvent handed to a FailureSink.
The in-process ring buffer keeps the most recent events for inspection;
the webhook sink pages an external alerting endpoint without blocking the
call.
"""

import httpx
import logging
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Protocol

from clinicdesk.webhooks import WebhookClient

logger = logging.getLogger(__name__)


@dataclass
class FailureEvent:
    operation: str
    error: str
    patient_id: str | None = None
    context: dict = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_payload(self) -> dict:
        payload = asdict(self)
        payload["timestamp"] = self.timestamp.isoformat()
        return payload


class FailureSink(Protocol):
    def record(self, event: FailureEvent) -> None: ...


class RingBufferFailureSink:
    """Keeps the last ``capacity`` failure events in memory."""

    def __init__(self, capacity: int = 100):
        self._events: deque[FailureEvent] = deque(maxlen=capacity)

    def record(self, event: FailureEvent) -> None:
        logger.error(
            "CRITICAL booking failure: %s (patient=%s): %s",
            event.operation, event.patient_id, event.error,
        )
        self._events.append(event)

    def recent(self, limit: int | None = None) -> list[FailureEvent]:
        events = list(self._events)
        return events[-limit:] if limit else events

    def __len__(self) -> int:
        return len(self._events)


class WebhookFailureSink:
    """POSTs each failure event to an alerting webhook.

    Delivery runs as a background task so the call path never waits on it.
    One retry, then the event is dropped with an error log.
    """

    def __init__(
        self,
        url: str,
        webhook_secret: str = "",
        timeout: float = 10.0,
        retry_delay: float = 2.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.webhook = WebhookClient(url, webhook_secret, timeout, retry_delay, client)

    def record(self, event: FailureEvent) -> None:
        self.webhook.post_in_background(event.to_payload(), f"Failure alert {event.operation}")

    async def send(self, event: FailureEvent) -> bool:
        return await self.webhook.post_with_retry(event.to_payload(), f"Failure alert {event.operation}")


class FanoutFailureSink:
    """Records each event in every wrapped sink."""

    def __init__(self, *sinks: FailureSink):
        self.sinks = list(sinks)

    def record(self, event: FailureEvent) -> None:
        for sink in self.sinks:
            sink.record(event)
