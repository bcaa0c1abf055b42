import json
from datetime import date, datetime, time
from zoneinfo import ZoneInfo

import pytest

from onboarding.core.errors import LarkApiError
from onboarding.models.booking import BusyInterval, CalendarEventDraft
from onboarding.services.assignment_service import TrainerAssignmentEngine
from onboarding.services.availability_service import CalendarAvailabilityProvider
from onboarding.services.booking_service import BookingOrchestrator
from onboarding.services.crm_service import CrmUpdateResult
from onboarding.services.location_matcher import JOHOR_BAHRU, PENANG, WITHIN_KLANG_VALLEY
from onboarding.services.slot_aggregator import SlotAvailabilityAggregator
from onboarding.services.trainer_directory import TrainerDirectory

TZ = ZoneInfo("Asia/Singapore")
SLOT_WINDOWS = [(time(9), time(11)), (time(11), time(13)), (time(14), time(16))]
# A Monday
BOOKING_DAY = date(2026, 11, 2)

TRAINERS_CONFIG = {
    "defaultCalendarId": "cal-default",
    "trainers": [
        {
            "name": "Alice Tan",
            "email": "alice@example.com",
            "calendarId": "cal-alice",
            "languages": ["English", "Bahasa Malaysia"],
            "location": [WITHIN_KLANG_VALLEY],
        },
        {
            "name": "Bob Lim",
            "email": "bob@example.com",
            "calendarId": "cal-bob",
            "languages": ["Mandarin", "English"],
            "location": [WITHIN_KLANG_VALLEY, PENANG],
        },
        {
            "name": "Chandra Devi",
            "email": "chandra@example.com",
            "calendarId": "cal-chandra",
            "languages": ["Tamil"],
            "location": [JOHOR_BAHRU],
        },
        # Merchant placeholder without an email; never bookable
        {"name": "Merchant Placeholder", "languages": ["English"]},
    ],
    "installers": [
        {
            "name": "Faizal Rahman",
            "email": "faizal@example.com",
            "calendarId": "cal-faizal",
            "languages": ["Bahasa Malaysia", "English"],
            "location": [WITHIN_KLANG_VALLEY, PENANG],
        },
        {
            "name": "Ho Wei Ming",
            "email": "weiming@example.com",
            "calendarId": "cal-weiming",
            "languages": ["Mandarin"],
            "location": [JOHOR_BAHRU],
        },
        {
            "name": "Retired Installer",
            "email": "retired@example.com",
            "calendarId": "cal-retired",
            "isActive": False,
        },
    ],
}


def at(hour: int, minute: int = 0, day: date = BOOKING_DAY) -> datetime:
    return datetime.combine(day, time(hour, minute), tzinfo=TZ)


class FakeCalendar:
    """In-memory calendar provider: busy intervals per calendar id, recorded mutations."""

    def __init__(self) -> None:
        self.busy: dict[str, list[BusyInterval]] = {}
        self.failing_calendars: set[str] = set()
        self.created: list[tuple[str, CalendarEventDraft, str]] = []
        self.deleted: list[tuple[str, str, str]] = []
        self.create_error: Exception | None = None
        self.delete_error: Exception | None = None

    def block(self, calendar_id: str, start: datetime, end: datetime) -> None:
        self.busy.setdefault(calendar_id, []).append(BusyInterval(start=start, end=end))

    async def query_free_busy(self, calendar_id, start, end, *, user_email):
        if calendar_id in self.failing_calendars:
            raise LarkApiError("calendar unavailable", code=191002)
        return [b for b in self.busy.get(calendar_id, []) if b.overlaps(start, end)]

    async def create_event(self, calendar_id, draft, *, user_email):
        if self.create_error is not None:
            raise self.create_error
        self.created.append((calendar_id, draft, user_email))
        return f"evt-{len(self.created)}"

    async def delete_event(self, calendar_id, event_id, *, user_email):
        if self.delete_error is not None:
            raise self.delete_error
        self.deleted.append((calendar_id, event_id, user_email))


class FakeAuthorizer:
    def __init__(self, emails=()) -> None:
        self.emails = {e.lower() for e in emails}

    async def is_authorized(self, email: str) -> bool:
        return email.lower() in self.emails


class FakeCrm:
    def __init__(self) -> None:
        self.updates: list[tuple[str, str, dict]] = []
        self.created: list[tuple[str, dict]] = []
        self.records: dict[tuple[str, str], dict] = {}
        self.order_id: str | None = "801ORDER"
        self.result: CrmUpdateResult | None = None
        self.create_result: CrmUpdateResult | None = None
        self.error: Exception | None = None
        self.create_error: Exception | None = None
        self.unknown_users: set[str] = set()

    async def update_record(self, sobject, record_id, fields):
        if self.error is not None:
            raise self.error
        self.updates.append((sobject, record_id, fields))
        return self.result or CrmUpdateResult(success=True, record_id=record_id)

    async def create_record(self, sobject, fields):
        if self.create_error is not None:
            raise self.create_error
        self.created.append((sobject, fields))
        return self.create_result or CrmUpdateResult(success=True, record_id=f"00{sobject[0]}{len(self.created)}")

    async def get_record(self, sobject, record_id, fields):
        return self.records.get((sobject, record_id))

    async def find_user_id(self, email):
        if email.lower() in self.unknown_users:
            return None
        return "005" + email.split("@")[0].upper()

    async def find_order_id(self, onboarding_record_id):
        return self.order_id


class FakeNotifier:
    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []
        self.error: Exception | None = None

    async def notify(self, recipient_email, message):
        if self.error is not None:
            raise self.error
        self.sent.append((recipient_email, message))


@pytest.fixture
def trainers_path(tmp_path):
    path = tmp_path / "trainers.json"
    path.write_text(json.dumps(TRAINERS_CONFIG), encoding="utf-8")
    return path


@pytest.fixture
def directory(trainers_path) -> TrainerDirectory:
    return TrainerDirectory(trainers_path)


@pytest.fixture
def calendar() -> FakeCalendar:
    return FakeCalendar()


@pytest.fixture
def provider(calendar) -> CalendarAvailabilityProvider:
    return CalendarAvailabilityProvider(calendar, timezone="Asia/Singapore", slot_windows=SLOT_WINDOWS)


@pytest.fixture
def authorizer() -> FakeAuthorizer:
    return FakeAuthorizer(
        ["alice@example.com", "bob@example.com", "chandra@example.com", "faizal@example.com", "weiming@example.com"]
    )


@pytest.fixture
def aggregator(directory, provider) -> SlotAvailabilityAggregator:
    return SlotAvailabilityAggregator(directory, provider)


@pytest.fixture
def crm() -> FakeCrm:
    return FakeCrm()


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def orchestrator(directory, aggregator, calendar, authorizer, crm, notifier) -> BookingOrchestrator:
    return BookingOrchestrator(
        directory=directory,
        aggregator=aggregator,
        assignment_engine=TrainerAssignmentEngine(),
        calendar=calendar,
        authorizer=authorizer,
        crm=crm,
        notifier=notifier,
    )
