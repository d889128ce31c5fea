"""Appointment availability across one or many practitioners.

Raw scheduler results are cached per (tenant, practitioner, appointment
type, range label) for a few seconds so that repeated questions within a
conversation ("anything earlier?") do not hit the scheduler again. Filtering
(range bounds, lead time, part of day) is applied after the cache, so two
queries that share a label share the fetch.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

from clinicdesk.cache import SlotCache, TTLCache, cache_key, range_label
from clinicdesk.date_parser import DEFAULT_TIMEZONE, PART_OF_DAY_HOURS
from clinicdesk.errors import ConfigurationError
from clinicdesk.models import AppointmentType, AvailabilitySlot, Practitioner
from clinicdesk.retry import DEFAULT_POLICY, RetryPolicy, with_retry
from clinicdesk.scheduler import SchedulerClient

logger = logging.getLogger(__name__)

LEAD_TIME_MINUTES = 15
DEFAULT_MAX_SLOTS = 3
DEFAULT_CONCURRENCY = 3


class AvailabilityAggregator:
    def __init__(
        self,
        scheduler: SchedulerClient,
        tenant_id: str = "default",
        timezone: str = DEFAULT_TIMEZONE,
        cache: SlotCache | None = None,
        business_id: str | None = None,
        practitioner_id: str | None = None,
        appointment_type_id: str | None = None,
        retry_policy: RetryPolicy = DEFAULT_POLICY,
    ):
        self.scheduler = scheduler
        self.tenant_id = tenant_id
        self.timezone = timezone
        self.tz = ZoneInfo(timezone)
        self.cache = cache if cache is not None else TTLCache()
        self.business_id = business_id
        self.practitioner_id = practitioner_id
        self.appointment_type_id = appointment_type_id
        self.retry_policy = retry_policy
        self._locks: dict[str, asyncio.Lock] = {}
        self._types: dict[tuple[str, str], AppointmentType] = {}

    def _now(self) -> datetime:
        """Current clinic time. Extracted for test mocking."""
        return datetime.now(self.tz)

    # ── Auto-detection ──

    async def resolve_business_id(self) -> str:
        if self.business_id:
            return self.business_id
        businesses = await with_retry(self.scheduler.list_businesses, "list businesses", self.retry_policy)
        if not businesses:
            raise ConfigurationError("No businesses found in scheduler account")
        self.business_id = businesses[0].id
        logger.info("Auto-detected business %s (%s)", businesses[0].id, businesses[0].name)
        return self.business_id

    async def list_bookable_practitioners(self) -> list[Practitioner]:
        practitioners = await with_retry(
            self.scheduler.list_practitioners, "list practitioners", self.retry_policy
        )
        return [p for p in practitioners if p.bookable]

    async def resolve_practitioner_id(self) -> str:
        if self.practitioner_id:
            return self.practitioner_id
        bookable = await self.list_bookable_practitioners()
        if not bookable:
            raise ConfigurationError("No active practitioners available for online booking")
        self.practitioner_id = bookable[0].id
        logger.info("Auto-detected practitioner %s (%s)", bookable[0].id, bookable[0].display_name)
        return self.practitioner_id

    async def resolve_appointment_type(
        self, practitioner_id: str, appointment_type_id: str | None = None
    ) -> AppointmentType:
        """Return the requested (or first bookable) appointment type for a practitioner."""
        wanted = appointment_type_id or self.appointment_type_id
        cache_id = (practitioner_id, wanted or "")
        if cache_id in self._types:
            return self._types[cache_id]

        types = await with_retry(
            lambda: self.scheduler.list_appointment_types(practitioner_id),
            "list appointment types",
            self.retry_policy,
        )
        if wanted:
            chosen = next((t for t in types if t.id == wanted), None)
            if chosen is None:
                # Not listed for this practitioner; keep the id with the default duration.
                chosen = AppointmentType(id=wanted)
        else:
            bookable = [t for t in types if t.show_in_online_bookings]
            if not bookable:
                raise ConfigurationError(
                    f"No online-bookable appointment types for practitioner {practitioner_id}"
                )
            chosen = bookable[0]
            logger.info(
                "Auto-detected appointment type %s (%s, %d min)",
                chosen.id, chosen.name, chosen.duration_minutes,
            )
        self._types[cache_id] = chosen
        return chosen

    # ── Queries ──

    async def _fetch_times(
        self,
        business_id: str,
        practitioner_id: str,
        appointment_type_id: str,
        from_time: datetime,
        to_time: datetime,
    ) -> list[str]:
        key = cache_key(
            self.tenant_id, practitioner_id, appointment_type_id,
            range_label(from_time, to_time, self.timezone),
        )
        cached = self.cache.get(key)
        if cached is not None:
            logger.debug("Availability cache hit %s", key)
            return cached

        lock = self._locks.setdefault(key, asyncio.Lock())
        try:
            async with lock:
                cached = self.cache.get(key)
                if cached is not None:
                    return cached
                times = await with_retry(
                    lambda: self.scheduler.get_available_times(
                        business_id,
                        practitioner_id,
                        appointment_type_id,
                        from_time.astimezone(self.tz).date(),
                        to_time.astimezone(self.tz).date(),
                    ),
                    f"available times for practitioner {practitioner_id}",
                    self.retry_policy,
                )
                self.cache.set(key, times)
                return times
        finally:
            # the filled cache serves later callers
            if not lock.locked() and self._locks.get(key) is lock:
                del self._locks[key]

    def _keep(self, slot: AvailabilitySlot, earliest: datetime, to_time: datetime, part_of_day: str | None) -> bool:
        if slot.start_time < earliest or slot.start_time > to_time:
            return False
        if part_of_day in PART_OF_DAY_HOURS:
            first, last = PART_OF_DAY_HOURS[part_of_day]
            return first <= slot.start_time.astimezone(self.tz).hour < last
        return True

    def _order(self, slots: list[AvailabilitySlot], preferred_hour: float | None) -> list[AvailabilitySlot]:
        if preferred_hour is None:
            return sorted(slots, key=lambda s: s.start_time)

        def distance(slot: AvailabilitySlot) -> float:
            local = slot.start_time.astimezone(self.tz)
            return abs(local.hour + local.minute / 60 - preferred_hour)

        return sorted(slots, key=lambda s: (distance(s), s.start_time))

    async def get_availability(
        self,
        from_time: datetime,
        to_time: datetime,
        practitioner_id: str | None = None,
        appointment_type_id: str | None = None,
        part_of_day: str | None = None,
        preferred_hour: float | None = None,
        practitioner_name: str = "",
    ) -> list[AvailabilitySlot]:
        """Open slots for one practitioner between ``from_time`` and ``to_time``.

        Slots starting sooner than LEAD_TIME_MINUTES from now are dropped.
        Missing ids are auto-detected. Raises ConfigurationError when nothing
        bookable exists, and scheduler errors once retries run out.
        """
        business_id = await self.resolve_business_id()
        practitioner_id = practitioner_id or await self.resolve_practitioner_id()
        appt_type = await self.resolve_appointment_type(practitioner_id, appointment_type_id)

        times = await self._fetch_times(business_id, practitioner_id, appt_type.id, from_time, to_time)
        earliest = max(from_time, self._now() + timedelta(minutes=LEAD_TIME_MINUTES))
        slots = [
            AvailabilitySlot.from_api(
                {"appointment_start": t},
                practitioner_id=practitioner_id,
                appointment_type_id=appt_type.id,
                duration_minutes=appt_type.duration_minutes,
                practitioner_name=practitioner_name,
            )
            for t in times
        ]
        slots = [s for s in slots if self._keep(s, earliest, to_time, part_of_day)]
        return self._order(slots, preferred_hour)

    async def get_multi_practitioner_availability(
        self,
        practitioners: list[Practitioner],
        from_time: datetime,
        to_time: datetime,
        max_slots: int = DEFAULT_MAX_SLOTS,
        concurrency_limit: int = DEFAULT_CONCURRENCY,
        appointment_type_id: str | None = None,
        part_of_day: str | None = None,
        preferred_hour: float | None = None,
    ) -> list[AvailabilitySlot]:
        """Merge availability across practitioners, ``concurrency_limit`` at a time.

        A practitioner whose query fails contributes no slots; the failure is
        logged and the remaining practitioners are still returned.
        """
        merged: list[AvailabilitySlot] = []
        for i in range(0, len(practitioners), max(1, concurrency_limit)):
            batch = practitioners[i:i + concurrency_limit]
            results = await asyncio.gather(
                *(
                    self.get_availability(
                        from_time,
                        to_time,
                        practitioner_id=p.id,
                        appointment_type_id=appointment_type_id,
                        part_of_day=part_of_day,
                        practitioner_name=p.display_name,
                    )
                    for p in batch
                ),
                return_exceptions=True,
            )
            for practitioner, result in zip(batch, results):
                if isinstance(result, BaseException):
                    logger.error(
                        "Availability failed for practitioner %s (%s): %s",
                        practitioner.id, practitioner.display_name, result,
                    )
                    continue
                merged.extend(result)

        ordered = self._order(merged, preferred_hour)
        return ordered[:max_slots] if max_slots else ordered
