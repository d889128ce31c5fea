import httpx
import logging
from datetime import date, datetime

from clinicdesk.errors import SchedulerError
from clinicdesk.models import (
    Appointment,
    AppointmentType,
    Business,
    PatientIdentity,
    Practitioner,
)

logger = logging.getLogger(__name__)

USER_AGENT = "clinicdesk (voice receptionist)"


def _iso(value: datetime) -> str:
    return value.isoformat(timespec="seconds")


class SchedulerClient:
    """HTTP client for the practice-management (scheduler) REST API.

    Authenticates with HTTP Basic auth, the tenant's API key as username and
    an empty password. Every non-2xx response raises SchedulerError carrying
    the status code so callers can decide whether to retry. This client does
    not retry on its own; wrap calls with retry.with_retry.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        if client is not None:
            self._client = client
        else:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                auth=(api_key, ""),
                headers={
                    "Accept": "application/json",
                    "Content-Type": "application/json",
                    "User-Agent": USER_AGENT,
                },
                timeout=self.timeout,
            )

    async def close(self):
        """Close the shared HTTP client."""
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> dict:
        resp = await self._client.request(method, path, **kwargs)
        if resp.status_code >= 400:
            logger.warning("Scheduler %s %s -> %d", method, path, resp.status_code)
            raise SchedulerError(resp.status_code, method, path, resp.text)
        if not resp.content:
            return {}
        return resp.json()

    # ── Listings ──

    async def list_businesses(self) -> list[Business]:
        data = await self._request("GET", "/businesses")
        return [Business.from_api(b) for b in data.get("businesses", [])]

    async def list_practitioners(self) -> list[Practitioner]:
        data = await self._request("GET", "/practitioners", params={"per_page": 50})
        return [Practitioner.from_api(p) for p in data.get("practitioners", [])]

    async def list_appointment_types(self, practitioner_id: str) -> list[AppointmentType]:
        data = await self._request(
            "GET", f"/practitioners/{practitioner_id}/appointment_types", params={"per_page": 50}
        )
        return [AppointmentType.from_api(t) for t in data.get("appointment_types", [])]

    async def get_available_times(
        self,
        business_id: str,
        practitioner_id: str,
        appointment_type_id: str,
        from_date: date,
        to_date: date,
        per_page: int = 100,
    ) -> list[str]:
        """Return raw ISO start times; ``from_date``/``to_date`` are calendar dates."""
        path = (
            f"/businesses/{business_id}/practitioners/{practitioner_id}"
            f"/appointment_types/{appointment_type_id}/available_times"
        )
        data = await self._request(
            "GET",
            path,
            params={
                "from": from_date.isoformat(),
                "to": to_date.isoformat(),
                "per_page": per_page,
            },
        )
        return [t["appointment_start"] for t in data.get("available_times", []) if t.get("appointment_start")]

    # ── Patients ──

    async def search_patients(self, query: str) -> list[PatientIdentity]:
        data = await self._request("GET", "/patients", params={"q": query})
        return [PatientIdentity.from_api(p) for p in data.get("patients", [])]

    async def create_patient(
        self,
        first_name: str,
        last_name: str,
        phone: str | None = None,
        email: str | None = None,
    ) -> PatientIdentity:
        payload: dict = {"first_name": first_name, "last_name": last_name}
        if email:
            payload["email"] = email
        if phone:
            payload["phone_numbers"] = [{"phone_type": "Mobile", "number": phone}]
        data = await self._request("POST", "/patients", json=payload)
        return PatientIdentity.from_api(data)

    async def update_patient(self, patient_id: str, fields: dict) -> PatientIdentity:
        data = await self._request("PATCH", f"/patients/{patient_id}", json=fields)
        return PatientIdentity.from_api(data)

    # ── Appointments ──

    async def create_appointment(
        self,
        business_id: str,
        patient_id: str,
        practitioner_id: str,
        appointment_type_id: str,
        starts_at: datetime,
        ends_at: datetime,
        notes: str | None = None,
    ) -> Appointment:
        payload = {
            "business_id": business_id,
            "patient_id": patient_id,
            "practitioner_id": practitioner_id,
            "appointment_type_id": appointment_type_id,
            "starts_at": _iso(starts_at),
            "ends_at": _iso(ends_at),
        }
        if notes:
            payload["notes"] = notes
        data = await self._request("POST", "/individual_appointments", json=payload)
        return Appointment.from_api(data)

    async def get_appointment(self, appointment_id: str) -> Appointment:
        data = await self._request("GET", f"/individual_appointments/{appointment_id}")
        return Appointment.from_api(data)

    async def update_appointment(
        self, appointment_id: str, starts_at: datetime, ends_at: datetime | None = None
    ) -> Appointment:
        payload = {"starts_at": _iso(starts_at)}
        if ends_at is not None:
            payload["ends_at"] = _iso(ends_at)
        data = await self._request("PATCH", f"/individual_appointments/{appointment_id}", json=payload)
        return Appointment.from_api(data)

    async def cancel_appointment(self, appointment_id: str, reason: str = "Cancelled by phone") -> None:
        await self._request(
            "PATCH",
            f"/individual_appointments/{appointment_id}/cancel",
            json={"cancellation_note": reason, "cancellation_reason": 50},
        )

    async def list_patient_appointments(self, patient_id: str, from_time: datetime) -> list[Appointment]:
        data = await self._request(
            "GET",
            "/individual_appointments",
            params={
                "q[]": [f"patient_id:={patient_id}", f"starts_at:>{_iso(from_time)}"],
                "sort": "starts_at",
                "per_page": 50,
            },
        )
        return [Appointment.from_api(a) for a in data.get("individual_appointments", [])]
