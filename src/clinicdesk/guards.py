"""Guards over proposed conversation-state changes.

Each guard is a pure function: it takes the current ConversationState and a
proposed change and returns ``(new_state, applied)``. The input state is
never mutated. A rejected change is a silent correction, never an error.
"""

import logging
from dataclasses import replace

from clinicdesk.classification import classify_group_answer, matches_booking_invitation
from clinicdesk.name_matching import DEFAULT_THRESHOLD, DEFAULT_TYPO_DISTANCE, name_similarity
from clinicdesk.session import ConversationState, SharedPhoneDisambiguation
from clinicdesk.validation import is_valid_person_name, validate_name

logger = logging.getLogger(__name__)

TERMINAL_CLOSING_REPLY = "You're all booked in. Is there anything else I can help you with today?"


def stamp_slots_offered(state: ConversationState, turn: int) -> ConversationState:
    """Record the turn a slot list was first presented. Later calls are no-ops."""
    if state.slots_offered_at_turn is not None:
        return state
    return replace(state, slots_offered_at_turn=turn)


def clear_slots_offered(state: ConversationState) -> ConversationState:
    """Forget the offered slots (new time preference, or nothing was available)."""
    if state.slots_offered_at_turn is None and state.selected_slot_index is None:
        return state
    return replace(state, slots_offered_at_turn=None, selected_slot_index=None, booking_confirmed=False)


def apply_booking_confirmation(
    state: ConversationState,
    selected_slot_index: int | None,
    turn: int,
    slot_count: int | None = None,
) -> tuple[ConversationState, bool]:
    """Accept ``booking_confirmed=True`` only on a turn after the slots were offered.

    Rejection resets ``booking_confirmed`` and ``selected_slot_index``.
    """
    index = selected_slot_index if selected_slot_index is not None else state.selected_slot_index
    offered = state.slots_offered_at_turn
    rejected = offered is None or offered == turn or turn < offered
    if not rejected and slot_count is not None:
        rejected = index is None or not 0 <= index < slot_count
    if rejected:
        logger.info(
            "Rejected booking confirmation on turn %d (slots offered at %s, index %s)",
            turn, offered, index,
        )
        return replace(state, booking_confirmed=False, selected_slot_index=None), False
    return replace(state, booking_confirmed=True, selected_slot_index=index or 0), True


def guard_terminal_reply(state: ConversationState, reply: str) -> tuple[str, bool]:
    """After an appointment exists, swap booking invitations for a closing line."""
    if state.appointment_created and reply and matches_booking_invitation(reply):
        logger.info("Suppressed post-booking invitation: %s", reply)
        return TERMINAL_CLOSING_REPLY, True
    return reply, False


def apply_shared_phone_answer(
    state: ConversationState,
    answer: str | None,
    caller_name: str | None = None,
    threshold: float = DEFAULT_THRESHOLD,
    typo_distance: int = DEFAULT_TYPO_DISTANCE,
) -> tuple[ConversationState, bool]:
    """Resolve "is this booking for yourself or someone else?".

    ``applied`` is True once the possible match has been either confirmed or
    cleared. A "myself" answer without a name is remembered and stays pending
    until a name arrives on a later turn.
    """
    if not state.disambiguation_pending:
        return state, False

    answer = answer or state.shared_phone_disambiguation.answer
    name = validate_name(caller_name) or state.caller_name
    if answer is None:
        return state, False

    cleared = replace(
        state,
        possible_patient_id=None,
        possible_patient_name=None,
        confirmed_patient_id=None,
        excluded_patient_ids=(*state.excluded_patient_ids, state.possible_patient_id),
        shared_phone_disambiguation=SharedPhoneDisambiguation(asked=True, answer=answer),
    )

    if answer == "someone_else":
        logger.info("Caller is booking for someone else, clearing possible patient %s", state.possible_patient_id)
        return replace(cleared, caller_name=validate_name(caller_name) or None), True

    if not name:
        return replace(
            state, shared_phone_disambiguation=SharedPhoneDisambiguation(asked=True, answer="myself")
        ), False

    score = name_similarity(name, state.possible_patient_name, typo_distance)
    if score >= threshold:
        logger.info("Confirmed possible patient %s (similarity %.2f)", state.possible_patient_id, score)
        return replace(
            state,
            caller_name=name,
            confirmed_patient_id=state.possible_patient_id,
            is_new_patient=False,
            shared_phone_disambiguation=SharedPhoneDisambiguation(asked=True, answer="myself"),
        ), True

    logger.info(
        "Name %r does not match possible patient %r (similarity %.2f), clearing",
        name, state.possible_patient_name, score,
    )
    return replace(cleared, caller_name=name), True


def group_booking_ready(state: ConversationState) -> bool:
    named = [p for p in state.group_participants if is_valid_person_name(p.name)]
    return state.is_group_booking and len(named) >= 2 and bool(state.time_preference)


def evaluate_group_booking(state: ConversationState, utterance: str) -> tuple[ConversationState, str]:
    """Classify where a group booking stands after the caller's utterance.

    Outcomes: "not_ready", "propose" (fetch slots and propose), "confirm",
    "decline" (proposal and time preference cleared), "repeat" (unclear
    answer, say the proposal again), "complete".
    """
    if state.group_booking_complete:
        return state, "complete"
    if not group_booking_ready(state):
        return state, "not_ready"
    if not state.group_booking_proposed:
        return state, "propose"
    answer = classify_group_answer(utterance)
    if answer == "decline":
        return replace(state, group_booking_proposed=False, time_preference=None), "decline"
    if answer == "confirm":
        return state, "confirm"
    return state, "repeat"
