from dataclasses import replace

import pytest

from clinicdesk.guards import (
    TERMINAL_CLOSING_REPLY,
    apply_booking_confirmation,
    apply_shared_phone_answer,
    clear_slots_offered,
    evaluate_group_booking,
    guard_terminal_reply,
    group_booking_ready,
    stamp_slots_offered,
)
from clinicdesk.session import ConversationState, Participant, SharedPhoneDisambiguation


class TestBookingConfirmation:
    def test_rejected_on_the_turn_slots_were_offered(self):
        """Slots offered and "confirmed" in the same turn is a model hallucination."""
        state = ConversationState(slots_offered_at_turn=3)
        new_state, applied = apply_booking_confirmation(state, 0, turn=3)
        assert not applied
        assert not new_state.booking_confirmed
        assert new_state.selected_slot_index is None

    def test_rejected_before_any_slots_offered(self):
        new_state, applied = apply_booking_confirmation(ConversationState(), 0, turn=2)
        assert not applied
        assert not new_state.booking_confirmed

    def test_accepted_on_a_later_turn(self):
        state = ConversationState(slots_offered_at_turn=3)
        new_state, applied = apply_booking_confirmation(state, 1, turn=4)
        assert applied
        assert new_state.booking_confirmed
        assert new_state.selected_slot_index == 1

    def test_index_must_be_within_offered_slots(self):
        state = ConversationState(slots_offered_at_turn=3)
        _, applied = apply_booking_confirmation(state, 5, turn=4, slot_count=3)
        assert not applied

    def test_missing_index_defaults_to_first_slot(self):
        state = ConversationState(slots_offered_at_turn=3)
        new_state, applied = apply_booking_confirmation(state, None, turn=5)
        assert applied
        assert new_state.selected_slot_index == 0

    def test_input_state_is_not_mutated(self):
        state = ConversationState(slots_offered_at_turn=3)
        apply_booking_confirmation(state, 0, turn=4)
        assert not state.booking_confirmed


class TestSlotsOffered:
    def test_stamp_only_once(self):
        state = stamp_slots_offered(ConversationState(), 2)
        assert stamp_slots_offered(state, 5).slots_offered_at_turn == 2

    def test_clear_resets_selection(self):
        state = ConversationState(slots_offered_at_turn=2, selected_slot_index=1, booking_confirmed=True)
        cleared = clear_slots_offered(state)
        assert cleared.slots_offered_at_turn is None
        assert cleared.selected_slot_index is None
        assert not cleared.booking_confirmed


class TestTerminalReply:
    def test_invitation_swapped_after_booking(self):
        state = ConversationState(appointment_created=True)
        reply, swapped = guard_terminal_reply(state, "Would you like me to book another appointment?")
        assert swapped
        assert reply == TERMINAL_CLOSING_REPLY

    def test_unchanged_before_booking(self):
        reply, swapped = guard_terminal_reply(ConversationState(), "When would you like to come in?")
        assert not swapped
        assert reply == "When would you like to come in?"

    def test_ordinary_reply_passes_after_booking(self):
        state = ConversationState(appointment_created=True)
        reply, swapped = guard_terminal_reply(state, "Parking is available behind the clinic.")
        assert not swapped
        assert reply == "Parking is available behind the clinic."


PENDING = ConversationState(
    possible_patient_id="42",
    possible_patient_name="Jane Smith",
    shared_phone_disambiguation=SharedPhoneDisambiguation(asked=True),
)


class TestSharedPhone:
    def test_not_pending_is_a_no_op(self):
        state = ConversationState()
        assert apply_shared_phone_answer(state, "myself", "Jane Smith") == (state, False)

    def test_unclear_answer_stays_pending(self):
        new_state, applied = apply_shared_phone_answer(PENDING, None, "Jane Smith")
        assert not applied
        assert new_state.disambiguation_pending

    def test_someone_else_clears_possible_patient(self):
        new_state, applied = apply_shared_phone_answer(PENDING, "someone_else", "Emma Smith")
        assert applied
        assert new_state.possible_patient_id is None
        assert new_state.confirmed_patient_id is None
        assert new_state.caller_name == "Emma Smith"
        assert new_state.shared_phone_disambiguation.answer == "someone_else"
        assert new_state.excluded_patient_ids == ("42",)

    def test_myself_with_matching_name_confirms(self):
        new_state, applied = apply_shared_phone_answer(PENDING, "myself", "jane smyth")
        assert applied
        assert new_state.confirmed_patient_id == "42"
        assert new_state.is_new_patient is False
        assert not new_state.disambiguation_pending
        assert new_state.excluded_patient_ids == ()

    def test_myself_with_different_name_clears(self):
        """Emma says "myself" on Jane's phone: Emma must not be booked as Jane."""
        new_state, applied = apply_shared_phone_answer(PENDING, "myself", "Emma Smith")
        assert applied
        assert new_state.possible_patient_id is None
        assert new_state.confirmed_patient_id is None
        assert new_state.caller_name == "Emma Smith"
        assert new_state.excluded_patient_ids == ("42",)

    def test_myself_without_name_waits_for_name(self):
        new_state, applied = apply_shared_phone_answer(PENDING, "myself", None)
        assert not applied
        assert new_state.shared_phone_disambiguation.answer == "myself"
        assert new_state.disambiguation_pending

        confirmed, applied = apply_shared_phone_answer(new_state, None, "Jane Smith")
        assert applied
        assert confirmed.confirmed_patient_id == "42"

    def test_rejects_placeholder_names(self):
        new_state, applied = apply_shared_phone_answer(PENDING, "myself", "unknown")
        assert not applied
        assert new_state.confirmed_patient_id is None


GROUP = ConversationState(
    is_group_booking=True,
    group_participants=(Participant("Michael Bishop"), Participant("Merrick Bishop")),
    time_preference="tomorrow afternoon",
)


class TestGroupBooking:
    def test_not_ready_without_two_names(self):
        state = ConversationState(
            is_group_booking=True,
            group_participants=(Participant("Michael"), Participant("my son")),
            time_preference="tomorrow",
        )
        assert not group_booking_ready(state)
        assert evaluate_group_booking(state, "tomorrow")[1] == "not_ready"

    def test_not_ready_without_time(self):
        state = ConversationState(is_group_booking=True, group_participants=GROUP.group_participants)
        assert evaluate_group_booking(state, "")[1] == "not_ready"

    def test_propose(self):
        assert evaluate_group_booking(GROUP, "tomorrow afternoon")[1] == "propose"

    def test_confirm(self):
        proposed = replace(GROUP, group_booking_proposed=True)
        assert evaluate_group_booking(proposed, "yes that works")[1] == "confirm"

    @pytest.mark.parametrize(
        "text",
        ["No worries, that works", "Yes that's perfect, no problem", "no problem at all"],
    )
    def test_agreeing_idiom_confirms(self, text):
        proposed = replace(GROUP, group_booking_proposed=True)
        new_state, outcome = evaluate_group_booking(proposed, text)
        assert outcome == "confirm"
        assert new_state.group_booking_proposed

    def test_idiom_does_not_mask_real_decline(self):
        proposed = replace(GROUP, group_booking_proposed=True)
        assert evaluate_group_booking(proposed, "no worries, but that doesn't work for us")[1] == "decline"

    def test_decline_clears_proposal_and_time(self):
        proposed = replace(GROUP, group_booking_proposed=True)
        new_state, outcome = evaluate_group_booking(proposed, "no, different time please")
        assert outcome == "decline"
        assert not new_state.group_booking_proposed
        assert new_state.time_preference is None

    def test_unclear_answer_repeats(self):
        proposed = replace(GROUP, group_booking_proposed=True)
        assert evaluate_group_booking(proposed, "hmm")[1] == "repeat"

    def test_complete(self):
        done = replace(GROUP, group_booking_complete=True)
        assert evaluate_group_booking(done, "yes")[1] == "complete"
