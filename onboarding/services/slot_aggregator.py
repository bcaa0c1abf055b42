import asyncio
import logging
from datetime import date, time
from typing import Protocol

from onboarding.models.booking import BookingCategory, DayAvailability, SlotAvailability, TimeSlot
from onboarding.models.trainer import Trainer
from onboarding.services.availability_service import CalendarAvailabilityProvider, business_days
from onboarding.services.location_matcher import filter_trainers_by_location
from onboarding.services.trainer_directory import TrainerDirectory, find_by_name

logger = logging.getLogger(__name__)


class AuthorizationChecker(Protocol):
    async def is_authorized(self, email: str) -> bool:
        ...


async def filter_authorized(trainers: list[Trainer], authorizer: AuthorizationChecker) -> list[Trainer]:
    """Keep trainers with calendar write access. Checks run concurrently."""
    results = await asyncio.gather(*(authorizer.is_authorized(t.email) for t in trainers))
    return [t for t, ok in zip(trainers, results) if ok]


class SlotAvailabilityAggregator:
    def __init__(
        self,
        directory: TrainerDirectory,
        provider: CalendarAvailabilityProvider,
        authorizer: AuthorizationChecker | None = None,
    ) -> None:
        self.directory = directory
        self.provider = provider
        self.authorizer = authorizer

    def trainer_pool(
        self, location: str | None = None, category: BookingCategory | None = None
    ) -> list[Trainer]:
        """Bookable people for a category: installers for installations, trainers otherwise."""
        return filter_trainers_by_location(self.directory.pool_for(category), location)

    async def get_slot_availability(
        self,
        day: date,
        start_time: time,
        end_time: time,
        location: str | None = None,
        category: BookingCategory | None = None,
    ) -> SlotAvailability:
        """Which trainers in the (optionally location-filtered) pool are free for one window."""
        trainers = self.trainer_pool(location, category)
        if not trainers:
            logger.info("No trainer covers location %r", location)
            return SlotAvailability(available=False, available_trainers=[])

        requested_start = self.provider.localize(day, start_time)
        requested_end = self.provider.localize(day, end_time)
        free: list[Trainer] = []
        for trainer in trainers:
            days = await self.provider.get_availability(
                trainer, day, day, slot_windows=[(start_time, end_time)]
            )
            if any(
                slot.available and slot.covers(requested_start, requested_end)
                for d in days
                for slot in d.slots
            ):
                free.append(trainer)

        logger.debug(
            "Slot %s %s-%s: %d of %d trainers free (%s)",
            day,
            start_time,
            end_time,
            len(free),
            len(trainers),
            ", ".join(t.name for t in free) or "none",
        )
        return SlotAvailability(available=bool(free), available_trainers=free)

    async def get_combined_availability(
        self,
        range_start: date,
        range_end: date,
        location: str | None = None,
        trainer_name: str | None = None,
        category: BookingCategory | None = None,
    ) -> list[DayAvailability]:
        """Grid availability across the bookable pool: a slot is open if any trainer is free."""
        if trainer_name:
            trainer = find_by_name(self.directory.pool_for(category), trainer_name)
            trainers = filter_trainers_by_location([trainer], location) if trainer else []
        else:
            trainers = self.trainer_pool(location, category)
        if self.authorizer is not None:
            trainers = await filter_authorized(trainers, self.authorizer)

        per_trainer = [
            await self.provider.get_availability(trainer, range_start, range_end) for trainer in trainers
        ]
        if not per_trainer:
            return [
                DayAvailability(
                    date=d,
                    slots=[
                        TimeSlot(start=self.provider.localize(d, ws), end=self.provider.localize(d, we), available=False)
                        for ws, we in self.provider.slot_windows
                    ],
                )
                for d in business_days(range_start, range_end)
            ]

        combined: list[DayAvailability] = []
        for day_index, template in enumerate(per_trainer[0]):
            slots: list[TimeSlot] = []
            for slot_index, template_slot in enumerate(template.slots):
                names: list[str] = []
                languages: set[str] = set()
                regions: set[str] = set()
                for trainer, days in zip(trainers, per_trainer):
                    slot = days[day_index].slots[slot_index]
                    if slot.available:
                        names.append(trainer.name)
                        languages.update(trainer.languages)
                        regions.update(trainer.regions)
                slots.append(
                    TimeSlot(
                        start=template_slot.start,
                        end=template_slot.end,
                        available=bool(names),
                        available_trainers=sorted(names),
                        available_languages=sorted(languages),
                        available_regions=sorted(regions),
                    )
                )
            combined.append(DayAvailability(date=template.date, slots=slots))
        return combined
