"""Short-lived availability cache.

Entries expire lazily on read. The store trims itself (expired first, then
oldest) once it grows past ``max_entries`` so a long-running process cannot
grow it without bound.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol
from zoneinfo import ZoneInfo

from clinicdesk.date_parser import PART_OF_DAY_HOURS

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 20.0


class SlotCache(Protocol):
    def get(self, key: str) -> Any | None: ...

    def set(self, key: str, value: Any) -> None: ...

    def evict(self, key: str) -> None: ...


@dataclass
class TTLCache:
    ttl_seconds: float = DEFAULT_TTL_SECONDS
    max_entries: int = 500

    _entries: dict[str, tuple[float, Any]] = field(default_factory=dict, init=False, repr=False)

    def _clock(self) -> float:
        return time.monotonic()

    def get(self, key: str) -> Any | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            return None
        return value

    def set(self, key: str, value: Any) -> None:
        self._entries[key] = (self._clock() + self.ttl_seconds, value)
        if len(self._entries) > self.max_entries:
            self._trim()

    def evict(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def _trim(self) -> None:
        now = self._clock()
        for key in [k for k, (exp, _) in self._entries.items() if exp <= now]:
            del self._entries[key]
        overflow = len(self._entries) - self.max_entries
        if overflow > 0:
            oldest = sorted(self._entries, key=lambda k: self._entries[k][0])[:overflow]
            for key in oldest:
                del self._entries[key]
        logger.debug("Availability cache trimmed to %d entries", len(self._entries))


def range_label(start: datetime, end: datetime, timezone: str) -> str:
    """Fold a query range into a coarse, cache-friendly label.

    Same-day ranges map to "<date>:<part of day>" (or "<date>:full"),
    anything longer to "<start date>..<end date>".
    """
    tz = ZoneInfo(timezone)
    local_start = start.astimezone(tz)
    local_end = end.astimezone(tz)
    day = local_start.date().isoformat()
    if local_start.date() != local_end.date():
        return f"{day}..{local_end.date().isoformat()}"
    for name, (first, last) in PART_OF_DAY_HOURS.items():
        if first <= local_start.hour and (local_end.hour < last or (local_end.hour == last and local_end.minute == 0)):
            return f"{day}:{name}"
    return f"{day}:full"


def cache_key(tenant_id: str, practitioner_id: str, appointment_type_id: str, label: str) -> str:
    return f"{tenant_id}:{practitioner_id}:{appointment_type_id}:{label}"
