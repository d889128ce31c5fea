import httpx
import logging
from dataclasses import dataclass, field
from typing import Protocol

from clinicdesk.validation import mask_phone
from clinicdesk.webhooks import WebhookClient

logger = logging.getLogger(__name__)

APPOINTMENT_CONFIRMED = "appointment_confirmed"
APPOINTMENT_RESCHEDULED = "appointment_rescheduled"
APPOINTMENT_CANCELLED = "appointment_cancelled"
BOOKING_PENDING = "booking_pending"
INTAKE_FORM = "intake_form"

KINDS = frozenset({
    APPOINTMENT_CONFIRMED,
    APPOINTMENT_RESCHEDULED,
    APPOINTMENT_CANCELLED,
    BOOKING_PENDING,
    INTAKE_FORM,
})


@dataclass
class NotificationEvent:
    kind: str
    phone: str
    data: dict = field(default_factory=dict)

    def __post_init__(self):
        if self.kind not in KINDS:
            raise ValueError(f"Unknown notification kind: {self.kind}")

    def to_payload(self) -> dict:
        return {"kind": self.kind, "phone": self.phone, "data": self.data}


class Notifier(Protocol):
    async def notify(self, event: NotificationEvent) -> bool: ...


class LoggingNotifier:
    """Notifier that only logs. Used when no webhook is configured."""

    def __init__(self):
        self.sent: list[NotificationEvent] = []

    async def notify(self, event: NotificationEvent) -> bool:
        logger.info("Notification %s for %s: %s", event.kind, mask_phone(event.phone), event.data)
        self.sent.append(event)
        return True


class WebhookNotifier:
    """Delivers notification events (SMS/email fan-out lives downstream) to a webhook.

    Retries once with a 2-second backoff on failure. Never raises.
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

    async def notify(self, event: NotificationEvent) -> bool:
        return await self.webhook.post_with_retry(event.to_payload(), f"Notification {event.kind}")
