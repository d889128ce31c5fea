import asyncio
import logging

from clinicdesk.alerts import FailureEvent
from clinicdesk.availability import DEFAULT_MAX_SLOTS, AvailabilityAggregator
from clinicdesk.booking import BookingOrchestrator
from clinicdesk.date_parser import part_of_day, preferred_hour, speakable_time, time_preference_window
from clinicdesk.errors import BookingError, ConfigurationError
from clinicdesk.identity import IdentityResolver
from clinicdesk.interpreter import FALLBACK_REPLY, TurnInterpreter
from clinicdesk.notifications import (
    APPOINTMENT_CANCELLED,
    APPOINTMENT_CONFIRMED,
    APPOINTMENT_RESCHEDULED,
    BOOKING_PENDING,
    INTAKE_FORM,
    LoggingNotifier,
    NotificationEvent,
    Notifier,
)
from clinicdesk.session import CallContext, Participant
from clinicdesk.state_machine import Action, ConversationStateMachine
from clinicdesk.transcript import to_plain_text
from clinicdesk.validation import mask_phone

logger = logging.getLogger(__name__)

MAX_TOOL_HOPS = 4
GROUP_SLOTS_PER_PERSON = 3


def _slot_minutes(slot) -> int | None:
    if slot.end_time and slot.start_time:
        return int((slot.end_time - slot.start_time).total_seconds() // 60)
    return None


def participant_names(participants: tuple[Participant, ...]) -> list[str]:
    """Full names for booking. A bare first name borrows the family surname
    given for another participant ("Michael and Merrick Bishop")."""
    surname = next((p.name.split()[-1] for p in participants if len(p.name.split()) > 1), None)
    names = []
    for p in participants:
        if len(p.name.split()) == 1 and surname:
            names.append(f"{p.name} {surname}")
        else:
            names.append(p.name)
    return names


def _summarize(result: dict) -> dict:
    summary = {}
    for key, value in result.items():
        if isinstance(value, list):
            summary[key] = len(value)
        elif hasattr(value, "id"):
            summary[key] = value.id
        elif value is None or isinstance(value, (str, int, float, bool)):
            summary[key] = value
    return summary


class TurnProcessor:
    """Drives one caller turn through the state machine, the interpreter and tools.

    Per turn:
    1. Feed the utterance to ConversationStateMachine.process()
    2. Run any requested tool and fold its result back via handle_tool_result()
    3. If the machine needs the model: interpret, then apply_proposal()
    4. Run tools requested by the proposal
    5. Pass the final reply through the terminal-state guard

    Turns for the same call are serialised with a per-call lock.
    """

    def __init__(
        self,
        machine: ConversationStateMachine,
        interpreter: TurnInterpreter,
        identity: IdentityResolver,
        availability: AvailabilityAggregator,
        booking: BookingOrchestrator,
        notifier: Notifier | None = None,
        max_slots: int = DEFAULT_MAX_SLOTS,
        fan_out: bool | None = None,
    ):
        self.machine = machine
        self.interpreter = interpreter
        self.identity = identity
        self.availability = availability
        self.booking = booking
        self.notifier = notifier or LoggingNotifier()
        self.max_slots = max_slots
        # Fan out across practitioners unless one is pinned in configuration
        self.fan_out = availability.practitioner_id is None if fan_out is None else fan_out
        self._locks: dict[str, asyncio.Lock] = {}
        self._pending: set[asyncio.Task] = set()

    def _lock_for(self, call_sid: str) -> asyncio.Lock:
        return self._locks.setdefault(call_sid, asyncio.Lock())

    def release(self, call_sid: str) -> None:
        self._locks.pop(call_sid, None)

    async def greet(self, ctx: CallContext) -> Action:
        async with self._lock_for(ctx.call_sid):
            await self._run_tools(ctx, Action(call_tool="lookup_patient", needs_llm=False))
            text = self.machine.greeting(ctx)
            ctx.add_turn("agent", text)
            return Action(speak=text, needs_llm=False)

    async def handle_turn(self, ctx: CallContext, text: str | None) -> Action:
        async with self._lock_for(ctx.call_sid):
            if ctx.ended:
                return Action(end_call=True, needs_llm=False)

            ctx.turn_index += 1
            text = (text or "").strip()
            if text:
                ctx.add_turn("user", text)

            action = self.machine.process(ctx, text)
            action = await self._run_tools(ctx, action)

            if action.needs_llm:
                proposal = await self.interpreter.interpret(ctx, text)
                action = self.machine.apply_proposal(ctx, proposal)
                action = await self._run_tools(ctx, action)

            action.speak = self.machine.finalize_reply(ctx, action.speak)
            if not action.speak and not action.end_call:
                action.speak = FALLBACK_REPLY
            if action.speak:
                ctx.add_turn("agent", action.speak)
            if action.end_call:
                ctx.ended = True
                logger.info("Call %s ending on turn %d", ctx.call_sid, ctx.turn_index)
            return action

    async def _run_tools(self, ctx: CallContext, action: Action) -> Action:
        hops = 0
        while action.call_tool and hops < MAX_TOOL_HOPS:
            tool, lead = action.call_tool, action.speak
            result = await self._execute(ctx, tool, action.tool_args)
            ctx.add_turn("tool", tool, name=tool, result=_summarize(result))
            action = self.machine.handle_tool_result(ctx, tool, result)
            if lead:
                action.speak = f"{lead} {action.speak}".strip()
            hops += 1
        if action.call_tool:
            logger.warning("Tool chain limit reached on %s, dropping %s", ctx.call_sid, action.call_tool)
            action.call_tool = ""
        return action

    async def _execute(self, ctx: CallContext, tool: str, args: dict) -> dict:
        handler = getattr(self, f"_tool_{tool}", None)
        if handler is None:
            logger.error("Unknown tool %s", tool)
            return {"error": f"unknown tool {tool}"}
        try:
            return await handler(ctx, args)
        except Exception as e:
            logger.error("Tool %s failed on %s: %s", tool, ctx.call_sid, e)
            return {"error": str(e)}

    def _notify(self, ctx: CallContext, kind: str, data: dict) -> None:
        """Send a notification in the background; the turn never waits on delivery."""
        if kind == BOOKING_PENDING:
            # reception confirms these by hand
            data["transcript"] = to_plain_text(ctx.history)
        event = NotificationEvent(kind, ctx.caller_phone, data)
        task = asyncio.get_running_loop().create_task(self._deliver(event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(self, event: NotificationEvent) -> None:
        try:
            await self.notifier.notify(event)
        except Exception as e:
            logger.error("Notification %s for %s failed: %s", event.kind, mask_phone(event.phone), e)

    async def flush(self) -> None:
        """Wait for notifications still being delivered."""
        if self._pending:
            await asyncio.gather(*list(self._pending))

    # ── Tools ──

    async def _tool_lookup_patient(self, ctx: CallContext, args: dict) -> dict:
        return {"patient": await self.identity.lookup_possible_patient(ctx.caller_phone)}

    async def _find_slots(self, ctx: CallContext, max_slots: int) -> dict:
        preference = ctx.state.time_preference
        window = time_preference_window(preference, ctx.timezone)
        period, hour = part_of_day(preference), preferred_hour(preference)
        existing = ctx.upcoming_appointment if ctx.state.reschedule_requested else None
        try:
            if existing is not None or not self.fan_out:
                slots = await self.availability.get_availability(
                    window.start,
                    window.end,
                    practitioner_id=existing.practitioner_id if existing else None,
                    appointment_type_id=existing.appointment_type_id if existing else None,
                    part_of_day=period,
                    preferred_hour=hour,
                )
                slots = slots[:max_slots]
            else:
                practitioners = await self.availability.list_bookable_practitioners()
                if not practitioners:
                    raise ConfigurationError("No active practitioners available for online booking")
                slots = await self.availability.get_multi_practitioner_availability(
                    practitioners,
                    window.start,
                    window.end,
                    max_slots=max_slots,
                    part_of_day=period,
                    preferred_hour=hour,
                )
        except ConfigurationError as e:
            self.booking.failures.record(FailureEvent(
                operation="availability",
                error=str(e),
                context={"call_sid": ctx.call_sid},
            ))
            return {"error": str(e)}
        logger.info("Found %d slots for %s", len(slots), window.description)
        return {"slots": slots, "window": window.description}

    async def _tool_find_availability(self, ctx: CallContext, args: dict) -> dict:
        return await self._find_slots(ctx, self.max_slots)

    async def _tool_find_group_availability(self, ctx: CallContext, args: dict) -> dict:
        count = len(ctx.state.group_participants)
        return await self._find_slots(ctx, max(self.max_slots, count * GROUP_SLOTS_PER_PERSON))

    def _selected_slot(self, ctx: CallContext):
        index = ctx.state.selected_slot_index or 0
        if not 0 <= index < len(ctx.available_slots):
            return None
        return ctx.available_slots[index]

    def _slot_data(self, ctx: CallContext, slot, appointment_id: str = "") -> dict:
        return {
            "appointment_id": appointment_id,
            "start_time": slot.start_time.isoformat(),
            "when": speakable_time(slot.start_time, ctx.timezone),
            "practitioner": getattr(slot, "practitioner_name", ""),
            "patient_name": ctx.state.caller_name or "",
        }

    async def _tool_book_appointment(self, ctx: CallContext, args: dict) -> dict:
        state = ctx.state
        slot = self._selected_slot(ctx)
        if slot is None:
            return {"error": "selected slot is not on offer"}

        ctx.booking_in_flight = True
        try:
            appointment = await self.booking.create_appointment(
                ctx.caller_phone,
                slot.practitioner_id,
                slot.appointment_type_id,
                slot.start_time,
                notes=state.notes,
                pre_resolved_patient_id=state.confirmed_patient_id,
                full_name=state.caller_name,
                email=state.caller_email,
                duration_minutes=_slot_minutes(slot),
                excluded_patient_ids=state.excluded_patient_ids,
            )
        except BookingError as e:
            self._notify(ctx, BOOKING_PENDING, self._slot_data(ctx, slot))
            return {"error": str(e)}
        finally:
            ctx.booking_in_flight = False

        self._notify(ctx, APPOINTMENT_CONFIRMED, self._slot_data(ctx, slot, appointment.id))
        if state.is_new_patient:
            self._notify(ctx, INTAKE_FORM, {
                "appointment_id": appointment.id,
                "patient_id": appointment.patient_id,
                "patient_name": state.caller_name or "",
            })
        return {"appointment": appointment, "slot": slot}

    async def _tool_book_group(self, ctx: CallContext, args: dict) -> dict:
        state = ctx.state
        names = participant_names(state.group_participants)
        booked, errors = [], []

        ctx.booking_in_flight = True
        try:
            for name, slot in zip(names, ctx.available_slots):
                try:
                    appointment = await self.booking.create_appointment(
                        ctx.caller_phone,
                        slot.practitioner_id,
                        slot.appointment_type_id,
                        slot.start_time,
                        notes=state.notes,
                        full_name=name,
                        duration_minutes=_slot_minutes(slot),
                        excluded_patient_ids=state.excluded_patient_ids,
                    )
                except BookingError as e:
                    errors.append(str(e))
                    data = self._slot_data(ctx, slot)
                    data["patient_name"] = name
                    self._notify(ctx, BOOKING_PENDING, data)
                    continue
                booked.append((name, appointment))
                data = self._slot_data(ctx, slot, appointment.id)
                data["patient_name"] = name
                self._notify(ctx, APPOINTMENT_CONFIRMED, data)
        finally:
            ctx.booking_in_flight = False

        logger.info("Group booking on %s: %d booked, %d failed", ctx.call_sid, len(booked), len(errors))
        return {"appointments": [a for _, a in booked], "booked": booked, "errors": errors}

    async def _tool_find_appointment(self, ctx: CallContext, args: dict) -> dict:
        state = ctx.state
        patient_id = state.confirmed_patient_id or state.possible_patient_id
        if not patient_id:
            patient = await self.identity.lookup_possible_patient(ctx.caller_phone)
            patient_id = patient.id if patient else None
        if not patient_id:
            return {"appointment": None}
        return {"appointment": await self.booking.next_upcoming_appointment(patient_id)}

    async def _tool_reschedule_appointment(self, ctx: CallContext, args: dict) -> dict:
        existing = ctx.upcoming_appointment
        slot = self._selected_slot(ctx)
        if existing is None or slot is None:
            return {"error": "nothing to reschedule"}

        ctx.booking_in_flight = True
        try:
            updated = await self.booking.reschedule(existing.id, slot.start_time, existing.patient_id)
        except BookingError as e:
            data = self._slot_data(ctx, slot, existing.id)
            data["action"] = "reschedule"
            self._notify(ctx, BOOKING_PENDING, data)
            return {"error": str(e)}
        finally:
            ctx.booking_in_flight = False

        self._notify(ctx, APPOINTMENT_RESCHEDULED, self._slot_data(ctx, slot, updated.id))
        return {"appointment": updated}

    async def _tool_cancel_appointment(self, ctx: CallContext, args: dict) -> dict:
        existing = ctx.upcoming_appointment
        if existing is None:
            return {"error": "nothing to cancel"}
        try:
            await self.booking.cancel(existing.id, existing.patient_id)
        except BookingError as e:
            return {"error": str(e)}
        self._notify(ctx, APPOINTMENT_CANCELLED, {
            "appointment_id": existing.id,
            "start_time": existing.start_time.isoformat() if existing.start_time else "",
        })
        return {"cancelled": True}
