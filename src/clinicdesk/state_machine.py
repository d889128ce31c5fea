import logging
from dataclasses import dataclass, field, replace

from clinicdesk.classification import (
    IntentClassifier,
    IntentTag,
    PatternIntentClassifier,
    classify_booking_for,
    detect_group_booking,
    extract_two_names,
)
from clinicdesk.date_parser import speakable_time
from clinicdesk.guards import (
    apply_booking_confirmation,
    apply_shared_phone_answer,
    clear_slots_offered,
    evaluate_group_booking,
    guard_terminal_reply,
    stamp_slots_offered,
)
from clinicdesk.interpreter import TurnProposal
from clinicdesk.name_matching import DEFAULT_THRESHOLD, DEFAULT_TYPO_DISTANCE
from clinicdesk.prompts import speakable_slot
from clinicdesk.session import CallContext, ConversationState, SharedPhoneDisambiguation
from clinicdesk.validation import is_valid_person_name, sanitize_email, validate_name

logger = logging.getLogger(__name__)

MAX_TURNS_PER_CALL = 40
MAX_EMPTY_SPEECH = 2

GREETING = "Thanks for calling {clinic_name}, this is the virtual receptionist. How can I help you today?"

# Canned responses that bypass the language model entirely
NO_SPEECH_PROMPT = "Sorry, I didn't catch that. Are you still there?"
NO_SPEECH_CLOSING = "I haven't heard anything, so I'll end the call now. Please call back any time. Goodbye."
TURN_LIMIT_CLOSING = "I'm sorry, I'm having trouble helping with this over the phone. Reception will give you a call back shortly. Goodbye."
HANGUP_REPLY = "No problem. Thanks for calling, goodbye."
HANGUP_QUESTION_REPLY = "I'll stay on the line until you're finished. Is there anything else I can help with?"
GOODBYE_REPLY = "Thanks for calling {clinic_name}. Have a lovely day, goodbye."
ASK_WHO_FOR = "I can see this number is linked to {name}. Is this appointment for them, or for someone else?"
ASK_FULL_NAME = "Can I get your full name to confirm?"
ASK_NEW_PATIENT = "Have you been to the clinic before?"
ASK_TIME = "When would you like to come in?"
GROUP_DECLINE_REPLY = "No problem. What time would work better for you?"
NO_SLOTS_REPLY = "Sorry, I don't have anything available then. Is there another day or time that would suit?"
NO_GROUP_SLOTS_REPLY = (
    "Sorry, I couldn't find {count} appointments close together then. Is there another day or time that would suit?"
)
AVAILABILITY_ERROR_REPLY = (
    "I'm having trouble checking the calendar right now. "
    "I'll have reception text you to arrange a time. Is there anything else I can help with?"
)
BOOKING_FAILED_REPLY = (
    "I couldn't complete the booking just now. I'll have reception confirm your appointment "
    "by text in a moment. Is there anything else I can help with?"
)
RESCHEDULE_FAILED_REPLY = (
    "I couldn't move that appointment just now. I'll have reception text you to confirm the change. "
    "Is there anything else I can help with?"
)
CANCEL_FAILED_REPLY = (
    "I couldn't cancel that appointment just now. I'll have reception take care of it and text you. "
    "Is there anything else I can help with?"
)
NO_APPOINTMENT_REPLY = (
    "I couldn't find an upcoming appointment under this number. Is there anything else I can help with?"
)


@dataclass
class Action:
    speak: str = ""
    call_tool: str = ""
    tool_args: dict = field(default_factory=dict)
    end_call: bool = False
    needs_llm: bool = True


def _first_name(name: str) -> str:
    return name.split()[0] if name else name


def _clock(value, timezone: str) -> str:
    return speakable_time(value, timezone).split(" at ", 1)[1]


def _offer_text(slots, timezone: str) -> str:
    spoken = [speakable_slot(s, timezone) for s in slots]
    if len(spoken) == 1:
        return f"I have {spoken[0]}. Would that suit?"
    listed = ", ".join(spoken[:-1]) + f" or {spoken[-1]}"
    return f"I have {listed}. Which would suit you best?"


class ConversationStateMachine:
    """Deterministic layer around the language model.

    ``process`` runs before the model and handles everything that must not
    depend on it: silence, hangups, goodbyes, shared-phone answers and group
    booking decisions. ``apply_proposal`` filters the model's proposal
    through the guards. ``handle_tool_result`` folds tool results back into
    the conversation state.
    """

    def __init__(
        self,
        classifier: IntentClassifier | None = None,
        clinic_name: str = "the clinic",
        name_threshold: float = DEFAULT_THRESHOLD,
        typo_distance: int = DEFAULT_TYPO_DISTANCE,
    ):
        self.classifier = classifier or PatternIntentClassifier()
        self.clinic_name = clinic_name
        self.name_threshold = name_threshold
        self.typo_distance = typo_distance

    def greeting(self, ctx: CallContext) -> str:
        return GREETING.format(clinic_name=self.clinic_name)

    def goodbye_allowed(self, ctx: CallContext) -> bool:
        state = ctx.state
        if ctx.booking_in_flight:
            return False
        if state.is_group_booking and not state.group_booking_complete and not state.booking_failed:
            return False
        return (
            state.appointment_created
            or state.faq_answered
            or state.reschedule_done
            or state.cancel_done
            or state.booking_failed
        )

    def process(self, ctx: CallContext, text: str) -> Action:
        text = (text or "").strip()
        state = ctx.state

        if not text:
            count = state.empty_speech_count + 1
            ctx.state = replace(state, empty_speech_count=count)
            if count >= MAX_EMPTY_SPEECH:
                logger.info("No speech for %d turns, closing call %s", count, ctx.call_sid)
                return Action(speak=NO_SPEECH_CLOSING, end_call=True, needs_llm=False)
            return Action(speak=NO_SPEECH_PROMPT, needs_llm=False)
        if state.empty_speech_count:
            ctx.state = state = replace(state, empty_speech_count=0)

        if ctx.turn_index > MAX_TURNS_PER_CALL:
            logger.warning("Per-call turn limit exceeded on %s", ctx.call_sid)
            return Action(speak=TURN_LIMIT_CLOSING, end_call=True, needs_llm=False)

        intent = self.classifier.classify(text)
        ctx.last_intent = intent.value

        if intent == IntentTag.HANGUP:
            return Action(speak=HANGUP_REPLY, end_call=True, needs_llm=False)
        if intent == IntentTag.HANGUP_QUESTION:
            return Action(speak=HANGUP_QUESTION_REPLY, needs_llm=False)

        answer = None
        if state.disambiguation_pending and state.shared_phone_disambiguation.asked:
            answer = classify_booking_for(text)
            if answer:
                ctx.state, resolved = apply_shared_phone_answer(
                    state, answer, None, self.name_threshold, self.typo_distance,
                )
                if resolved and ctx.state.possible_patient_id is None:
                    ctx.possible_patient = None
                state = ctx.state

        # "No, it's for my daughter" answers the question; it is not a goodbye
        if intent == IntentTag.GOODBYE and answer is None and self.goodbye_allowed(ctx):
            return Action(speak=GOODBYE_REPLY.format(clinic_name=self.clinic_name), end_call=True, needs_llm=False)

        group = self._process_group(ctx, text)
        if group is not None:
            return group

        if intent == IntentTag.FAQ:
            ctx.state = replace(ctx.state, faq_answered=True)
        return Action(needs_llm=True)

    def _process_group(self, ctx: CallContext, text: str) -> Action | None:
        state = ctx.state
        if not state.is_group_booking and detect_group_booking(text):
            logger.info("Group booking detected on %s", ctx.call_sid)
            state = replace(state, is_group_booking=True)
        if not state.is_group_booking:
            return None

        named = [p for p in state.group_participants if is_valid_person_name(p.name)]
        if len(named) < 2:
            names = extract_two_names(text)
            if names:
                state = replace(state, group_participants=tuple(names))

        state, outcome = evaluate_group_booking(state, text)
        ctx.state = state
        if outcome == "propose":
            return Action(call_tool="find_group_availability", needs_llm=False)
        if outcome == "confirm":
            return Action(call_tool="book_group", needs_llm=False)
        if outcome == "decline":
            ctx.group_proposal = ""
            ctx.available_slots = []
            ctx.state = clear_slots_offered(ctx.state)
            return Action(speak=GROUP_DECLINE_REPLY, needs_llm=False)
        if outcome == "repeat" and ctx.group_proposal:
            return Action(speak=ctx.group_proposal, needs_llm=False)
        return None

    def _merge_proposal(self, state: ConversationState, proposal: TurnProposal) -> tuple[ConversationState, bool]:
        updates = {}
        name = validate_name(proposal.caller_name)
        if name and is_valid_person_name(name):
            updates["caller_name"] = name
        email = sanitize_email(proposal.caller_email)
        if email:
            updates["caller_email"] = email
        if proposal.is_new_patient is not None and state.confirmed_patient_id is None:
            updates["is_new_patient"] = proposal.is_new_patient
        if proposal.notes:
            updates["notes"] = proposal.notes
        time_changed = bool(proposal.time_preference) and proposal.time_preference != state.time_preference
        if time_changed:
            updates["time_preference"] = proposal.time_preference
        if proposal.is_group_booking:
            updates["is_group_booking"] = True
        participants = tuple(p for p in proposal.group_participants if is_valid_person_name(p.name))
        if len(participants) >= max(2, len(state.group_participants)):
            updates["group_participants"] = participants
        if proposal.intent == "reschedule" and not state.reschedule_done:
            updates["reschedule_requested"] = True
        elif proposal.intent == "cancel" and not state.cancel_done:
            updates["cancel_requested"] = True
        return replace(state, **updates), time_changed

    def apply_proposal(self, ctx: CallContext, proposal: TurnProposal) -> Action:
        """Fold an interpreter proposal into the state through the guards."""
        state, time_changed = self._merge_proposal(ctx.state, proposal)
        if time_changed:
            state = clear_slots_offered(state)
            if not state.is_group_booking:
                ctx.available_slots = []
        if proposal.intent == "faq":
            state = replace(state, faq_answered=True)

        if state.disambiguation_pending:
            state, resolved = apply_shared_phone_answer(
                state, None, proposal.caller_name, self.name_threshold, self.typo_distance,
            )
            if resolved and state.possible_patient_id is None:
                ctx.possible_patient = None
        ctx.state = state
        reply = proposal.reply

        if state.is_group_booking and not state.group_booking_complete:
            ctx.state, outcome = evaluate_group_booking(state, "")
            if outcome == "propose":
                return Action(call_tool="find_group_availability", needs_llm=False)
            return Action(speak=reply, needs_llm=False)

        wants_booking = proposal.request_slots or proposal.booking_confirmed or time_changed
        managing = state.reschedule_requested or state.cancel_requested
        if state.disambiguation_pending and not managing:
            disambiguation = state.shared_phone_disambiguation
            if wants_booking:
                ctx.slots_deferred = True
            if wants_booking and not disambiguation.asked:
                ctx.state = replace(state, shared_phone_disambiguation=SharedPhoneDisambiguation(asked=True))
                return Action(speak=ASK_WHO_FOR.format(name=state.possible_patient_name), needs_llm=False)
            if disambiguation.answer == "myself" and not state.caller_name:
                return Action(speak=ASK_FULL_NAME, needs_llm=False)
            return Action(speak=reply, needs_llm=False)

        managing = self._manage_existing(ctx, proposal, reply)
        if managing is not None:
            return managing

        if proposal.booking_confirmed and not state.appointment_created and not ctx.booking_in_flight:
            ctx.state, applied = apply_booking_confirmation(
                state, proposal.selected_slot_index, ctx.turn_index, len(ctx.available_slots),
            )
            if applied:
                return Action(call_tool="book_appointment", needs_llm=False)
            state = ctx.state

        if (proposal.request_slots or time_changed or ctx.slots_deferred) and not state.appointment_created:
            slots = self._slot_request(ctx)
            if slots is not None:
                return slots

        end_call = proposal.end_call and not ctx.booking_in_flight and not (
            state.is_group_booking and not state.group_booking_complete
        )
        return Action(speak=reply, end_call=end_call, needs_llm=False)

    def _slot_request(self, ctx: CallContext) -> Action | None:
        state = ctx.state
        if ctx.available_slots and state.slots_offered_at_turn is not None and not ctx.slots_deferred:
            return None
        ctx.slots_deferred = True
        if state.is_new_patient is None and not state.reschedule_requested:
            return Action(speak=ASK_NEW_PATIENT, needs_llm=False)
        if not state.time_preference:
            return Action(speak=ASK_TIME, needs_llm=False)
        ctx.slots_deferred = False
        return Action(call_tool="find_availability", needs_llm=False)

    def _manage_existing(self, ctx: CallContext, proposal: TurnProposal, reply: str) -> Action | None:
        state = ctx.state
        if not (state.reschedule_requested or state.cancel_requested):
            return None
        if state.reschedule_done or state.cancel_done:
            return None
        if ctx.upcoming_appointment is None:
            if ctx.appointment_lookup_done:
                return None
            return Action(call_tool="find_appointment", needs_llm=False)

        if state.cancel_requested and proposal.cancel_confirmed:
            return Action(call_tool="cancel_appointment", needs_llm=False)

        if state.reschedule_requested and (proposal.reschedule_confirmed or proposal.booking_confirmed):
            ctx.state, applied = apply_booking_confirmation(
                state, proposal.selected_slot_index, ctx.turn_index, len(ctx.available_slots),
            )
            if applied:
                return Action(call_tool="reschedule_appointment", needs_llm=False)

        if state.reschedule_requested and (proposal.request_slots or proposal.time_preference):
            return self._slot_request(ctx)
        return Action(speak=reply, needs_llm=False)

    def handle_tool_result(self, ctx: CallContext, tool: str, result: dict) -> Action:
        handler = getattr(self, f"_tool_result_{tool}", None)
        if handler:
            return handler(ctx, result)
        logger.warning("No handler for tool result %s", tool)
        return Action(needs_llm=False)

    def _tool_result_lookup_patient(self, ctx: CallContext, result: dict) -> Action:
        patient = result.get("patient")
        if patient is not None:
            ctx.possible_patient = patient
            ctx.state = replace(
                ctx.state,
                possible_patient_id=patient.id,
                possible_patient_name=patient.full_name,
            )
        return Action(needs_llm=False)

    def _tool_result_find_availability(self, ctx: CallContext, result: dict) -> Action:
        if result.get("error"):
            ctx.available_slots = []
            return Action(speak=AVAILABILITY_ERROR_REPLY, needs_llm=False)
        slots = result.get("slots") or []
        state = clear_slots_offered(ctx.state)
        if not slots:
            ctx.available_slots = []
            ctx.state = replace(state, time_preference=None)
            return Action(speak=NO_SLOTS_REPLY, needs_llm=False)
        ctx.available_slots = list(slots)
        ctx.state = stamp_slots_offered(state, ctx.turn_index)
        return Action(speak=_offer_text(slots, ctx.timezone), needs_llm=False)

    def _tool_result_find_group_availability(self, ctx: CallContext, result: dict) -> Action:
        participants = ctx.state.group_participants
        if result.get("error"):
            return Action(speak=AVAILABILITY_ERROR_REPLY, needs_llm=False)

        chosen = []
        seen = set()
        for slot in result.get("slots") or []:
            if slot.start_time in seen:
                continue
            seen.add(slot.start_time)
            chosen.append(slot)
            if len(chosen) == len(participants):
                break

        if len(chosen) < len(participants):
            ctx.available_slots = []
            ctx.state = replace(ctx.state, time_preference=None, group_booking_proposed=False)
            return Action(speak=NO_GROUP_SLOTS_REPLY.format(count=len(participants)), needs_llm=False)

        chosen.sort(key=lambda s: s.start_time)
        ctx.available_slots = chosen
        parts = [
            f"{_first_name(p.name)} at {_clock(s.start_time, ctx.timezone)}"
            for p, s in zip(participants, chosen)
        ]
        day = speakable_time(chosen[0].start_time, ctx.timezone).split(" at ", 1)[0]
        ctx.group_proposal = f"I can book {' and '.join(parts)} on {day}. Does that work?"
        ctx.state = stamp_slots_offered(
            replace(ctx.state, group_booking_proposed=True), ctx.turn_index,
        )
        return Action(speak=ctx.group_proposal, needs_llm=False)

    def _tool_result_book_appointment(self, ctx: CallContext, result: dict) -> Action:
        appointment = result.get("appointment")
        if appointment is None:
            ctx.state = replace(ctx.state, booking_failed=True, booking_confirmed=False)
            return Action(speak=BOOKING_FAILED_REPLY, needs_llm=False)
        ctx.appointments.append(appointment)
        ctx.state = replace(ctx.state, appointment_created=True, booking_confirmed=True)
        slot = result.get("slot")
        when = speakable_slot(slot, ctx.timezone) if slot else speakable_time(appointment.start_time, ctx.timezone)
        return Action(
            speak=f"You're booked in for {when}. We'll send you a text to confirm. Is there anything else I can help with?",
            needs_llm=False,
        )

    def _tool_result_book_group(self, ctx: CallContext, result: dict) -> Action:
        appointments = result.get("appointments") or []
        ctx.appointments.extend(appointments)
        updates = {"group_booking_complete": True, "group_booking_proposed": False}
        if appointments:
            updates["appointment_created"] = True
        if result.get("errors") or not appointments:
            updates["booking_failed"] = True
            ctx.state = replace(ctx.state, **updates)
            return Action(speak=BOOKING_FAILED_REPLY, needs_llm=False)
        ctx.state = replace(ctx.state, **updates)
        ctx.group_proposal = ""
        booked = result.get("booked") or []
        parts = [f"{_first_name(name)} at {_clock(appt.start_time, ctx.timezone)}" for name, appt in booked]
        summary = " and ".join(parts) if parts else "everyone"
        return Action(
            speak=f"All done. I've booked {summary}. We'll text you the details. Is there anything else I can help with?",
            needs_llm=False,
        )

    def _tool_result_find_appointment(self, ctx: CallContext, result: dict) -> Action:
        ctx.appointment_lookup_done = True
        appointment = result.get("appointment")
        if appointment is None:
            ctx.state = replace(ctx.state, reschedule_requested=False, cancel_requested=False)
            return Action(speak=NO_APPOINTMENT_REPLY, needs_llm=False)
        ctx.upcoming_appointment = appointment
        when = speakable_time(appointment.start_time, ctx.timezone)
        if ctx.state.cancel_requested:
            return Action(speak=f"I can see your appointment on {when}. Would you like me to cancel it?", needs_llm=False)
        return Action(
            speak=f"I can see your appointment on {when}. What day and time would suit you better?",
            needs_llm=False,
        )

    def _tool_result_reschedule_appointment(self, ctx: CallContext, result: dict) -> Action:
        appointment = result.get("appointment")
        if appointment is None:
            ctx.state = replace(ctx.state, booking_failed=True, booking_confirmed=False)
            return Action(speak=RESCHEDULE_FAILED_REPLY, needs_llm=False)
        ctx.upcoming_appointment = appointment
        ctx.available_slots = []
        ctx.state = replace(
            clear_slots_offered(ctx.state), reschedule_done=True, reschedule_requested=False,
        )
        when = speakable_time(appointment.start_time, ctx.timezone)
        return Action(
            speak=f"Done. Your appointment is now {when}. Is there anything else I can help with?",
            needs_llm=False,
        )

    def _tool_result_cancel_appointment(self, ctx: CallContext, result: dict) -> Action:
        if not result.get("cancelled"):
            ctx.state = replace(ctx.state, booking_failed=True)
            return Action(speak=CANCEL_FAILED_REPLY, needs_llm=False)
        ctx.upcoming_appointment = None
        ctx.state = replace(ctx.state, cancel_done=True, cancel_requested=False)
        return Action(speak="That's cancelled for you. Is there anything else I can help with?", needs_llm=False)

    def finalize_reply(self, ctx: CallContext, reply: str) -> str:
        reply, _ = guard_terminal_reply(ctx.state, reply)
        return reply
