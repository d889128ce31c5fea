"""Create, cancel and reschedule appointments.

Every scheduler write goes through with_retry. When a booking-path
operation still fails, a FailureEvent is recorded in the failure sink and
the error is re-raised as BookingError. Callers turn that into the "reception
will confirm by text" fallback. Duplicate bookings are prevented upstream by
the conversation state (``appointment_created``), not here.
"""

import logging
from datetime import datetime, timedelta

from clinicdesk.alerts import FailureEvent, FailureSink, RingBufferFailureSink
from clinicdesk.availability import AvailabilityAggregator
from clinicdesk.errors import BookingError, SchedulerError
from clinicdesk.identity import IdentityResolver
from clinicdesk.models import Appointment
from clinicdesk.retry import DEFAULT_POLICY, RetryPolicy, with_retry
from clinicdesk.scheduler import SchedulerClient
from clinicdesk.validation import mask_phone

logger = logging.getLogger(__name__)

DEFAULT_DURATION_MINUTES = 30


class BookingOrchestrator:
    def __init__(
        self,
        scheduler: SchedulerClient,
        identity: IdentityResolver,
        availability: AvailabilityAggregator,
        failures: FailureSink | None = None,
        retry_policy: RetryPolicy = DEFAULT_POLICY,
    ):
        self.scheduler = scheduler
        self.identity = identity
        self.availability = availability
        self.failures = failures if failures is not None else RingBufferFailureSink()
        self.retry_policy = retry_policy

    def _fail(self, operation: str, error: Exception, patient_id: str | None = None, **context) -> BookingError:
        self.failures.record(FailureEvent(
            operation=operation,
            error=str(error),
            patient_id=patient_id,
            context=context,
        ))
        return BookingError(operation, error)

    async def _duration_for(self, practitioner_id: str, appointment_type_id: str) -> int:
        try:
            appt_type = await self.availability.resolve_appointment_type(practitioner_id, appointment_type_id)
            return appt_type.duration_minutes
        except Exception as e:
            logger.warning("Could not look up duration for type %s, using default: %s", appointment_type_id, e)
            return DEFAULT_DURATION_MINUTES

    async def create_appointment(
        self,
        phone: str | None,
        practitioner_id: str,
        appointment_type_id: str,
        start_time: datetime,
        notes: str | None = None,
        pre_resolved_patient_id: str | None = None,
        full_name: str | None = None,
        email: str | None = None,
        duration_minutes: int | None = None,
        business_id: str | None = None,
        excluded_patient_ids: tuple[str, ...] = (),
    ) -> Appointment:
        """Book one appointment.

        A ``pre_resolved_patient_id`` (from earlier disambiguation) is used
        as-is; otherwise identity is resolved from phone, name and email,
        skipping any ``excluded_patient_ids``.
        """
        patient_id = pre_resolved_patient_id
        context = {
            "phone": mask_phone(phone),
            "practitioner_id": practitioner_id,
            "appointment_type_id": appointment_type_id,
            "start_time": start_time.isoformat(),
        }
        try:
            business_id = business_id or await self.availability.resolve_business_id()
            if not patient_id:
                patient = await self.identity.resolve_or_create(
                    phone, full_name=full_name, email=email, exclude_ids=excluded_patient_ids,
                )
                patient_id = patient.id
            if duration_minutes is None:
                duration_minutes = await self._duration_for(practitioner_id, appointment_type_id)
            end_time = start_time + timedelta(minutes=duration_minutes)
            appointment = await with_retry(
                lambda: self.scheduler.create_appointment(
                    business_id,
                    patient_id,
                    practitioner_id,
                    appointment_type_id,
                    start_time,
                    end_time,
                    notes=notes,
                ),
                "create appointment",
                self.retry_policy,
            )
        except Exception as e:
            raise self._fail("create_appointment", e, patient_id, **context) from e

        logger.info(
            "Booked appointment %s for patient %s at %s",
            appointment.id, patient_id, start_time.isoformat(),
        )
        return appointment

    async def cancel(self, appointment_id: str, patient_id: str | None = None) -> None:
        try:
            await with_retry(
                lambda: self.scheduler.cancel_appointment(appointment_id),
                "cancel appointment",
                self.retry_policy,
            )
        except Exception as e:
            raise self._fail("cancel_appointment", e, patient_id, appointment_id=appointment_id) from e
        logger.info("Cancelled appointment %s", appointment_id)

    async def reschedule(
        self, appointment_id: str, new_start_time: datetime, patient_id: str | None = None
    ) -> Appointment:
        """Move an appointment, falling back to cancel + recreate.

        Some scheduler deployments reject PATCH on appointments (405/501). The
        fallback cancels the original, then books a new appointment with its
        patient, practitioner, type and notes.
        """
        try:
            original = await with_retry(
                lambda: self.scheduler.get_appointment(appointment_id),
                "get appointment",
                self.retry_policy,
            )
        except Exception as e:
            raise self._fail("reschedule_appointment", e, patient_id, appointment_id=appointment_id) from e

        patient_id = patient_id or original.patient_id
        if original.end_time and original.start_time:
            duration = original.end_time - original.start_time
        else:
            duration = timedelta(minutes=await self._duration_for(
                original.practitioner_id, original.appointment_type_id
            ))
        new_end_time = new_start_time + duration

        try:
            updated = await with_retry(
                lambda: self.scheduler.update_appointment(appointment_id, new_start_time, new_end_time),
                "reschedule appointment",
                self.retry_policy,
            )
            logger.info("Rescheduled appointment %s to %s", appointment_id, new_start_time.isoformat())
            return updated
        except SchedulerError as e:
            if not e.method_not_allowed:
                raise self._fail("reschedule_appointment", e, patient_id, appointment_id=appointment_id) from e
            logger.warning("Scheduler does not allow in-place reschedule, recreating appointment %s", appointment_id)
        except Exception as e:
            raise self._fail("reschedule_appointment", e, patient_id, appointment_id=appointment_id) from e

        await self.cancel(appointment_id, patient_id)
        return await self.create_appointment(
            None,
            original.practitioner_id,
            original.appointment_type_id,
            new_start_time,
            notes=original.notes,
            pre_resolved_patient_id=patient_id,
            duration_minutes=int(duration.total_seconds() // 60),
        )

    async def next_upcoming_appointment(self, patient_id: str) -> Appointment | None:
        """The patient's earliest future, non-cancelled appointment. Never raises."""
        now = datetime.now(self.availability.tz)
        try:
            appointments = await with_retry(
                lambda: self.scheduler.list_patient_appointments(patient_id, now),
                "list patient appointments",
                self.retry_policy,
            )
        except Exception as e:
            logger.error("Upcoming appointment lookup failed for %s: %s", patient_id, e)
            return None
        upcoming = [a for a in appointments if a.cancelled_at is None and a.start_time and a.start_time > now]
        return min(upcoming, key=lambda a: a.start_time, default=None)
