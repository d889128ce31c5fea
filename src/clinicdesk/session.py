import time
from dataclasses import dataclass, field

from clinicdesk.date_parser import DEFAULT_TIMEZONE
from clinicdesk.models import Appointment, AvailabilitySlot, PatientIdentity


@dataclass(frozen=True)
class Participant:
    name: str
    relation: str = ""


@dataclass(frozen=True)
class SharedPhoneDisambiguation:
    asked: bool = False
    answer: str | None = None  # "myself" | "someone_else"


@dataclass(frozen=True)
class ConversationState:
    """Per-call dialogue facts. Replaced, never mutated, by guards.py reducers."""

    is_new_patient: bool | None = None
    booking_confirmed: bool = False
    selected_slot_index: int | None = None
    caller_name: str | None = None
    caller_email: str | None = None
    notes: str | None = None

    # Group booking
    is_group_booking: bool = False
    group_participants: tuple[Participant, ...] = ()
    time_preference: str | None = None
    group_booking_proposed: bool = False
    group_booking_complete: bool = False

    # Identity
    possible_patient_id: str | None = None
    possible_patient_name: str | None = None
    confirmed_patient_id: str | None = None
    shared_phone_disambiguation: SharedPhoneDisambiguation = SharedPhoneDisambiguation()
    # records the caller said are not them; never booked into on this call
    excluded_patient_ids: tuple[str, ...] = ()

    # Progress markers
    slots_offered_at_turn: int | None = None
    appointment_created: bool = False
    booking_failed: bool = False
    reschedule_requested: bool = False
    reschedule_done: bool = False
    cancel_requested: bool = False
    cancel_done: bool = False
    empty_speech_count: int = 0
    faq_answered: bool = False

    @property
    def disambiguation_pending(self) -> bool:
        return bool(self.possible_patient_id) and self.confirmed_patient_id is None


@dataclass
class CallContext:
    call_sid: str
    caller_phone: str
    tenant_id: str = "default"
    timezone: str = DEFAULT_TIMEZONE
    state: ConversationState = field(default_factory=ConversationState)

    turn_index: int = 0
    history: list = field(default_factory=list)

    # Tool results
    available_slots: list[AvailabilitySlot] = field(default_factory=list)
    possible_patient: PatientIdentity | None = None
    upcoming_appointment: Appointment | None = None
    appointments: list[Appointment] = field(default_factory=list)
    appointment_lookup_done: bool = False
    booking_in_flight: bool = False
    slots_deferred: bool = False
    group_proposal: str = ""
    last_intent: str = ""

    # Metadata
    started_at: float = field(default_factory=time.time)
    last_activity: float = field(default_factory=time.time)
    ended: bool = False

    def add_turn(self, role: str, content: str, **extra) -> None:
        self.history.append({
            "role": role,
            "content": content,
            "timestamp": time.time(),
            "turn": self.turn_index,
            **extra,
        })
        self.last_activity = time.time()

    @property
    def assistant_turns(self) -> int:
        return sum(1 for entry in self.history if entry.get("role") == "agent")
