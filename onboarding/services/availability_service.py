import logging
from collections.abc import Iterator, Sequence
from datetime import date, datetime, time, timedelta
from typing import Protocol
from zoneinfo import ZoneInfo

import httpx

from onboarding.core.errors import LarkApiError
from onboarding.models.booking import BusyInterval, DayAvailability, TimeSlot
from onboarding.models.trainer import Trainer

logger = logging.getLogger(__name__)

SlotWindow = tuple[time, time]


class FreeBusySource(Protocol):
    async def query_free_busy(
        self, calendar_id: str, start: datetime, end: datetime, *, user_email: str
    ) -> list[BusyInterval]:
        ...


def business_days(start: date, end: date) -> Iterator[date]:
    """Monday to Friday between start and end, inclusive."""
    current = start
    while current <= end:
        if current.weekday() < 5:
            yield current
        current += timedelta(days=1)


def is_slot_available(start: datetime, end: datetime, busy: Sequence[BusyInterval]) -> bool:
    return not any(b.overlaps(start, end) for b in busy)


class CalendarAvailabilityProvider:
    """Per-trainer slot availability on a fixed daily grid.

    If the free/busy query fails the trainer is treated as fully available, so
    a trainer with an unreadable calendar is still offered.
    """

    def __init__(
        self,
        calendar: FreeBusySource,
        *,
        timezone: str,
        slot_windows: Sequence[SlotWindow],
        default_calendar_id: str | None = None,
    ) -> None:
        self.calendar = calendar
        self.tz = ZoneInfo(timezone)
        self.slot_windows = list(slot_windows)
        self.default_calendar_id = default_calendar_id

    def localize(self, d: date, t: time) -> datetime:
        return datetime.combine(d, t, tzinfo=self.tz)

    async def fetch_busy_intervals(self, trainer: Trainer, start: datetime, end: datetime) -> list[BusyInterval]:
        calendar_id = trainer.calendar_id or self.default_calendar_id
        if not calendar_id:
            logger.warning("%s has no calendar configured; assuming fully available", trainer.name)
            return []
        try:
            return await self.calendar.query_free_busy(calendar_id, start, end, user_email=trainer.email)
        except (LarkApiError, httpx.HTTPError) as e:
            logger.warning("Free/busy query failed for %s, assuming fully available: %s", trainer.name, e)
            return []

    async def get_availability(
        self,
        trainer: Trainer,
        range_start: date,
        range_end: date,
        slot_windows: Sequence[SlotWindow] | None = None,
    ) -> list[DayAvailability]:
        """Slots for each business day in [range_start, range_end].

        `slot_windows` replaces the daily grid, e.g. to check one requested window.
        """
        windows = list(slot_windows) if slot_windows is not None else self.slot_windows
        days = list(business_days(range_start, range_end))
        if not days:
            return []
        busy = await self.fetch_busy_intervals(
            trainer,
            self.localize(days[0], time.min),
            self.localize(days[-1] + timedelta(days=1), time.min),
        )
        availability: list[DayAvailability] = []
        for d in days:
            slots: list[TimeSlot] = []
            for window_start, window_end in windows:
                start = self.localize(d, window_start)
                end = self.localize(d, window_end)
                free = is_slot_available(start, end, busy)
                slots.append(
                    TimeSlot(
                        start=start,
                        end=end,
                        available=free,
                        available_trainers=[trainer.name] if free else [],
                        available_languages=list(trainer.languages) if free else [],
                        available_regions=list(trainer.regions) if free else [],
                    )
                )
            availability.append(DayAvailability(date=d, slots=slots))
        return availability
