import base64
import json
from datetime import date

import httpx
import pytest
import respx

from clinicdesk.errors import SchedulerError
from conftest import BASE_URL, local


class TestSchedulerAuth:
    @pytest.mark.asyncio
    async def test_sends_basic_auth_with_api_key_as_username(self, scheduler):
        """The API key is the Basic auth username with an empty password."""
        with respx.mock:
            route = respx.get(f"{BASE_URL}/businesses").mock(
                return_value=httpx.Response(200, json={"businesses": []})
            )
            await scheduler.list_businesses()
            req = route.calls[0].request
            expected = "Basic " + base64.b64encode(b"secret-key:").decode()
            assert req.headers["authorization"] == expected
            assert req.headers["accept"] == "application/json"
            assert "clinicdesk" in req.headers["user-agent"]


class TestListings:
    @pytest.mark.asyncio
    async def test_practitioners_parsed(self, scheduler):
        with respx.mock:
            respx.get(f"{BASE_URL}/practitioners").mock(
                return_value=httpx.Response(200, json={"practitioners": [
                    {"id": 1, "first_name": "Amy", "last_name": "Lee", "active": True},
                    {"id": 2, "first_name": "Bo", "last_name": "Chen", "show_in_online_bookings": False},
                ]})
            )
            practitioners = await scheduler.list_practitioners()
        assert [p.id for p in practitioners] == ["1", "2"]
        assert practitioners[0].display_name == "Amy Lee"
        assert practitioners[0].bookable
        assert not practitioners[1].bookable

    @pytest.mark.asyncio
    async def test_appointment_type_duration(self, scheduler):
        with respx.mock:
            respx.get(f"{BASE_URL}/practitioners/1/appointment_types").mock(
                return_value=httpx.Response(200, json={"appointment_types": [
                    {"id": 7, "name": "Standard consult", "duration_in_minutes": 15},
                    {"id": 8, "name": "Long consult"},
                ]})
            )
            types = await scheduler.list_appointment_types("1")
        assert types[0].duration_minutes == 15
        assert types[1].duration_minutes == 30

    @pytest.mark.asyncio
    async def test_available_times_sends_calendar_dates(self, scheduler):
        with respx.mock:
            route = respx.get(
                f"{BASE_URL}/businesses/b1/practitioners/p1/appointment_types/t1/available_times"
            ).mock(return_value=httpx.Response(200, json={"available_times": [
                {"appointment_start": "2030-05-14T09:00:00+10:00"},
                {"appointment_start": "2030-05-14T09:30:00+10:00"},
            ]}))
            times = await scheduler.get_available_times("b1", "p1", "t1", date(2030, 5, 14), date(2030, 5, 15))
            params = route.calls[0].request.url.params
        assert times == ["2030-05-14T09:00:00+10:00", "2030-05-14T09:30:00+10:00"]
        assert params["from"] == "2030-05-14"
        assert params["to"] == "2030-05-15"


class TestPatients:
    @pytest.mark.asyncio
    async def test_search_by_query(self, scheduler):
        with respx.mock:
            route = respx.get(f"{BASE_URL}/patients", params={"q": "+61412345678"}).mock(
                return_value=httpx.Response(200, json={"patients": [
                    {"id": 42, "first_name": "Jane", "last_name": "Smith",
                     "phone_numbers": [{"phone_type": "Mobile", "number": "0412345678"}]},
                ]})
            )
            patients = await scheduler.search_patients("+61412345678")
            assert route.called
        assert patients[0].id == "42"
        assert patients[0].full_name == "Jane Smith"
        assert patients[0].phone_numbers == ["0412345678"]

    @pytest.mark.asyncio
    async def test_create_patient_payload(self, scheduler):
        with respx.mock:
            route = respx.post(f"{BASE_URL}/patients").mock(
                return_value=httpx.Response(201, json={"id": 99, "first_name": "Emma", "last_name": "Smith"})
            )
            patient = await scheduler.create_patient("Emma", "Smith", phone="+61412345678", email="e@x.com")
            body = json.loads(route.calls[0].request.content)
        assert patient.id == "99"
        assert body == {
            "first_name": "Emma",
            "last_name": "Smith",
            "email": "e@x.com",
            "phone_numbers": [{"phone_type": "Mobile", "number": "+61412345678"}],
        }

    @pytest.mark.asyncio
    async def test_error_status_raises_scheduler_error(self, scheduler):
        with respx.mock:
            respx.post(f"{BASE_URL}/patients").mock(
                return_value=httpx.Response(422, json={"errors": {"email": ["is invalid"]}})
            )
            with pytest.raises(SchedulerError) as exc:
                await scheduler.create_patient("Emma", "Smith", email="bad@x")
        assert exc.value.status_code == 422
        assert not exc.value.retryable
        assert "invalid" in exc.value.body


class TestAppointments:
    @pytest.mark.asyncio
    async def test_create_sends_flat_fields_with_offsets(self, scheduler):
        with respx.mock:
            route = respx.post(f"{BASE_URL}/individual_appointments").mock(
                return_value=httpx.Response(201, json={
                    "id": 500, "patient_id": 42, "practitioner_id": "p1", "appointment_type_id": "t1",
                    "starts_at": "2030-05-14T09:00:00+10:00", "ends_at": "2030-05-14T09:30:00+10:00",
                })
            )
            appt = await scheduler.create_appointment(
                "b1", "42", "p1", "t1", local(2030, 5, 14, 9), local(2030, 5, 14, 9, 30), notes="Sore knee",
            )
            body = json.loads(route.calls[0].request.content)
        assert appt.id == "500"
        assert appt.patient_id == "42"
        assert body["starts_at"] == "2030-05-14T09:00:00+10:00"
        assert body["ends_at"] == "2030-05-14T09:30:00+10:00"
        assert body["notes"] == "Sore knee"

    @pytest.mark.asyncio
    async def test_linked_ids_are_parsed(self, scheduler):
        with respx.mock:
            respx.get(f"{BASE_URL}/individual_appointments/500").mock(
                return_value=httpx.Response(200, json={
                    "id": 500,
                    "patient": {"links": {"self": f"{BASE_URL}/patients/42"}},
                    "practitioner": {"links": {"self": f"{BASE_URL}/practitioners/p1"}},
                    "appointment_type": {"links": {"self": f"{BASE_URL}/appointment_types/t1"}},
                    "starts_at": "2030-05-14T09:00:00+10:00",
                    "notes": "Bring referral",
                })
            )
            appt = await scheduler.get_appointment("500")
        assert (appt.patient_id, appt.practitioner_id, appt.appointment_type_id) == ("42", "p1", "t1")
        assert appt.notes == "Bring referral"
        assert appt.end_time is None

    @pytest.mark.asyncio
    async def test_cancel_with_empty_response(self, scheduler):
        with respx.mock:
            route = respx.patch(f"{BASE_URL}/individual_appointments/500/cancel").mock(
                return_value=httpx.Response(204)
            )
            assert await scheduler.cancel_appointment("500") is None
            body = json.loads(route.calls[0].request.content)
        assert body["cancellation_reason"] == 50

    @pytest.mark.asyncio
    async def test_reschedule_not_allowed(self, scheduler):
        with respx.mock:
            respx.patch(f"{BASE_URL}/individual_appointments/500").mock(
                return_value=httpx.Response(405)
            )
            with pytest.raises(SchedulerError) as exc:
                await scheduler.update_appointment("500", local(2030, 5, 15, 10))
        assert exc.value.method_not_allowed
