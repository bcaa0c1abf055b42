from onboarding.models.booking import (
    AssignmentResult,
    BookingCategory,
    BookingRequest,
    BookingResult,
    BusyInterval,
    CalendarEventDraft,
    DayAvailability,
    SlotAvailability,
    TimeSlot,
)
from onboarding.models.lark_token import LarkUserToken, LarkUserTokenPublic
from onboarding.models.trainer import Trainer, TrainerPublic

__all__ = [
    "AssignmentResult",
    "BookingCategory",
    "BookingRequest",
    "BookingResult",
    "BusyInterval",
    "CalendarEventDraft",
    "DayAvailability",
    "SlotAvailability",
    "TimeSlot",
    "LarkUserToken",
    "LarkUserTokenPublic",
    "Trainer",
    "TrainerPublic",
]
