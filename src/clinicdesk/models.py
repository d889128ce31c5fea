"""Records returned by the external scheduler.

Each record has a ``from_api`` constructor that tolerates the loose shapes the
scheduler returns (string ids, missing optional fields).
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta


def _parse_time(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


@dataclass
class Business:
    id: str
    name: str = ""

    @classmethod
    def from_api(cls, data: dict) -> "Business":
        return cls(id=str(data["id"]), name=data.get("business_name") or data.get("name") or "")


@dataclass
class Practitioner:
    id: str
    first_name: str = ""
    last_name: str = ""
    active: bool = True
    show_in_online_bookings: bool = True

    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    @property
    def bookable(self) -> bool:
        return self.active and self.show_in_online_bookings

    @classmethod
    def from_api(cls, data: dict) -> "Practitioner":
        return cls(
            id=str(data["id"]),
            first_name=data.get("first_name") or "",
            last_name=data.get("last_name") or "",
            active=data.get("active", True),
            show_in_online_bookings=data.get("show_in_online_bookings", True),
        )


@dataclass
class AppointmentType:
    id: str
    name: str = ""
    duration_minutes: int = 30
    show_in_online_bookings: bool = True

    @classmethod
    def from_api(cls, data: dict) -> "AppointmentType":
        return cls(
            id=str(data["id"]),
            name=data.get("name") or "",
            duration_minutes=int(data.get("duration_in_minutes") or 30),
            show_in_online_bookings=data.get("show_in_online_bookings", True),
        )


@dataclass
class PatientIdentity:
    id: str
    first_name: str = ""
    last_name: str = ""
    email: str | None = None
    phone_numbers: list[str] = field(default_factory=list)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    @classmethod
    def from_api(cls, data: dict) -> "PatientIdentity":
        phones = [p.get("number", "") for p in data.get("phone_numbers") or [] if p.get("number")]
        return cls(
            id=str(data["id"]),
            first_name=data.get("first_name") or "",
            last_name=data.get("last_name") or "",
            email=data.get("email") or None,
            phone_numbers=phones,
        )


@dataclass
class AvailabilitySlot:
    start_time: datetime
    end_time: datetime
    practitioner_id: str
    practitioner_name: str = ""
    appointment_type_id: str = ""

    @classmethod
    def from_api(
        cls,
        data: dict,
        practitioner_id: str,
        appointment_type_id: str,
        duration_minutes: int,
        practitioner_name: str = "",
    ) -> "AvailabilitySlot":
        start = _parse_time(data["appointment_start"])
        return cls(
            start_time=start,
            end_time=start + timedelta(minutes=duration_minutes),
            practitioner_id=practitioner_id,
            practitioner_name=practitioner_name,
            appointment_type_id=appointment_type_id,
        )


@dataclass
class Appointment:
    id: str
    patient_id: str
    practitioner_id: str
    appointment_type_id: str
    start_time: datetime
    end_time: datetime | None = None
    notes: str | None = None
    cancelled_at: datetime | None = None

    @staticmethod
    def _link_id(data: dict, key: str) -> str:
        # Either a flat "<key>_id" field or a {"links": {"self": ".../<id>"}} reference.
        if data.get(f"{key}_id") is not None:
            return str(data[f"{key}_id"])
        ref = data.get(key) or {}
        href = (ref.get("links") or {}).get("self", "")
        return href.rstrip("/").rsplit("/", 1)[-1] if href else ""

    @classmethod
    def from_api(cls, data: dict) -> "Appointment":
        return cls(
            id=str(data["id"]),
            patient_id=cls._link_id(data, "patient"),
            practitioner_id=cls._link_id(data, "practitioner"),
            appointment_type_id=cls._link_id(data, "appointment_type"),
            start_time=_parse_time(data.get("starts_at")),
            end_time=_parse_time(data.get("ends_at")),
            notes=data.get("notes") or None,
            cancelled_at=_parse_time(data.get("cancelled_at")),
        )
