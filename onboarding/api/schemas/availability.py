from datetime import datetime

from pydantic import BaseModel

from onboarding.models.trainer import TrainerPublic


class SlotInfo(BaseModel):
    start: str  # HH:MM, business timezone
    end: str
    start_at: datetime
    end_at: datetime
    available: bool
    available_trainers: list[str] = []
    available_languages: list[str] = []
    available_regions: list[str] = []


class DayInfo(BaseModel):
    date: str  # YYYY-MM-DD
    slots: list[SlotInfo]


class AvailabilityResponse(BaseModel):
    timezone: str
    trainers: list[TrainerPublic]
    availability: list[DayInfo]


class SlotAvailabilityResponse(BaseModel):
    available: bool
    available_trainers: list[str]
