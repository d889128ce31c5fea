import logging
import time

from clinicdesk.date_parser import DEFAULT_TIMEZONE
from clinicdesk.session import CallContext
from clinicdesk.validation import mask_phone

logger = logging.getLogger(__name__)

INACTIVITY_TIMEOUT_SECONDS = 15 * 60


class CallRegistry:
    """In-memory call contexts keyed by call SID.

    A context lives until the telephony status callback ends it, or until it
    has been idle for ``timeout_seconds`` and a sweep removes it.
    """

    def __init__(
        self,
        tenant_id: str = "default",
        timezone: str = DEFAULT_TIMEZONE,
        timeout_seconds: float = INACTIVITY_TIMEOUT_SECONDS,
    ):
        self.tenant_id = tenant_id
        self.timezone = timezone
        self.timeout_seconds = timeout_seconds
        self._calls: dict[str, CallContext] = {}

    def get(self, call_sid: str) -> CallContext | None:
        return self._calls.get(call_sid)

    def get_or_create(self, call_sid: str, caller_phone: str = "") -> CallContext:
        ctx = self._calls.get(call_sid)
        if ctx is None:
            ctx = CallContext(
                call_sid=call_sid,
                caller_phone=caller_phone,
                tenant_id=self.tenant_id,
                timezone=self.timezone,
            )
            self._calls[call_sid] = ctx
            logger.info("Call %s started from %s", call_sid, mask_phone(caller_phone))
        return ctx

    def end(self, call_sid: str) -> CallContext | None:
        ctx = self._calls.pop(call_sid, None)
        if ctx is not None:
            ctx.ended = True
            logger.info("Call %s ended after %d turns", call_sid, ctx.turn_index)
        return ctx

    def sweep(self, now: float | None = None) -> list[CallContext]:
        """Drop contexts idle longer than the timeout. Returns the dropped ones."""
        now = now if now is not None else time.time()
        stale = [sid for sid, ctx in self._calls.items() if now - ctx.last_activity > self.timeout_seconds]
        dropped = []
        for sid in stale:
            logger.warning("Call %s idle for over %ds, dropping context", sid, self.timeout_seconds)
            dropped.append(self.end(sid))
        return dropped

    def __len__(self) -> int:
        return len(self._calls)

    def __contains__(self, call_sid: str) -> bool:
        return call_sid in self._calls
