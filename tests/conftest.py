from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

import pytest

from clinicdesk.models import AvailabilitySlot
from clinicdesk.retry import RetryPolicy
from clinicdesk.scheduler import SchedulerClient
from clinicdesk.session import CallContext
from clinicdesk.state_machine import ConversationStateMachine

BASE_URL = "https://scheduler.example.com/v1"
TZ = "Australia/Brisbane"
BRISBANE = ZoneInfo(TZ)


def local(year, month, day, hour=0, minute=0) -> datetime:
    return datetime(year, month, day, hour, minute, tzinfo=BRISBANE)


def make_slot(hour: int, minute: int = 0, practitioner_id: str = "p1", name: str = "Dr Lee", day: int = 14) -> AvailabilitySlot:
    start = local(2030, 5, day, hour, minute)
    return AvailabilitySlot(
        start_time=start,
        end_time=start + timedelta(minutes=30),
        practitioner_id=practitioner_id,
        practitioner_name=name,
        appointment_type_id="t1",
    )


@pytest.fixture
def fast_policy():
    return RetryPolicy(max_attempts=3, base_delay=0, max_delay=0)


@pytest.fixture
def scheduler():
    return SchedulerClient(BASE_URL, api_key="secret-key")


@pytest.fixture
def ctx():
    return CallContext(call_sid="CA123", caller_phone="+61412345678", timezone=TZ)


@pytest.fixture
def machine():
    return ConversationStateMachine(clinic_name="Harbour Medical")
