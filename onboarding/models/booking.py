import datetime as dt
from dataclasses import dataclass, field
from enum import Enum

from pydantic import BaseModel, Field

from onboarding.core.errors import CrmSyncWarning
from onboarding.models.trainer import Trainer


class BookingCategory(str, Enum):
    INSTALLATION = "installation"
    TRAINING = "training"
    HARDWARE_FULFILLMENT = "hardware-fulfillment"
    GO_LIVE = "go-live"

    @property
    def label(self) -> str:
        return " ".join(part.capitalize() for part in self.value.split("-"))

    @property
    def on_site(self) -> bool:
        """On-site bookings need a trainer covering the merchant's region."""
        return self in (BookingCategory.INSTALLATION, BookingCategory.TRAINING)

    @property
    def uses_language(self) -> bool:
        # Hardware fulfillment is back-office work with no merchant-facing session
        return self is not BookingCategory.HARDWARE_FULFILLMENT


class BusyInterval(BaseModel):
    """Half-open busy period [start, end) returned by a free/busy query."""

    start: dt.datetime
    end: dt.datetime

    def overlaps(self, start: dt.datetime, end: dt.datetime) -> bool:
        return start < self.end and end > self.start


class TimeSlot(BaseModel):
    start: dt.datetime
    end: dt.datetime
    available: bool
    available_trainers: list[str] = Field(default_factory=list)
    available_languages: list[str] = Field(default_factory=list)
    available_regions: list[str] = Field(default_factory=list)

    def covers(self, start: dt.datetime, end: dt.datetime) -> bool:
        return self.start <= start and self.end >= end


class DayAvailability(BaseModel):
    date: dt.date
    slots: list[TimeSlot]


class SlotAvailability(BaseModel):
    available: bool
    available_trainers: list[Trainer] = Field(default_factory=list)


class BookingRequest(BaseModel):
    """A booking or reschedule request as received from the request layer.

    Required fields are optional here so that the orchestrator can reject
    incomplete requests with a ValidationError instead of a parsing error.
    """

    merchant_id: str | None = None
    merchant_name: str | None = None
    date: dt.date | None = None
    start_time: dt.time | None = None
    end_time: dt.time | None = None
    category: BookingCategory = BookingCategory.TRAINING
    required_languages: list[str] = Field(default_factory=list)
    location: str | None = None
    existing_event_id: str | None = None
    # Owner of the event being replaced, when it is not the newly assigned trainer
    existing_trainer_email: str | None = None
    merchant_email: str | None = None
    merchant_address: str | None = None
    contact_person: str | None = None
    contact_phone: str | None = None
    # Merchant success manager; receives a follow-up Task in the CRM
    manager_email: str | None = None

    @property
    def is_reschedule(self) -> bool:
        return bool(self.existing_event_id)


@dataclass
class CalendarEventDraft:
    title: str
    description: str
    start: dt.datetime
    end: dt.datetime
    attendees: list[str] = field(default_factory=list)
    location: str | None = None


@dataclass
class AssignmentResult:
    assigned: Trainer
    reason: str
    candidates: list[Trainer]


@dataclass
class BookingResult:
    trainer: Trainer
    reason: str
    event_id: str
    crm_updated: bool
    rescheduled: bool = False
    crm_warning: CrmSyncWarning | None = None
    candidates: list[Trainer] = field(default_factory=list)
