from datetime import date, time, timedelta

from fastapi import APIRouter, Depends, HTTPException, Query, status

from onboarding.api.deps import get_aggregator, get_oauth_service
from onboarding.api.schemas.availability import (
    AvailabilityResponse,
    DayInfo,
    SlotAvailabilityResponse,
    SlotInfo,
)
from onboarding.core.config import settings
from onboarding.models.booking import BookingCategory
from onboarding.models.trainer import TrainerPublic
from onboarding.services.lark_oauth_service import LarkOAuthService
from onboarding.services.slot_aggregator import SlotAvailabilityAggregator

router = APIRouter(prefix="/availability", tags=["availability"])


@router.get("", response_model=AvailabilityResponse)
async def combined_availability(
    start_date: date | None = Query(None),
    end_date: date | None = Query(None),
    location: str | None = Query(None, description="Region tag or merchant address"),
    trainer: str | None = Query(None, description="Restrict to one trainer by name"),
    booking_type: BookingCategory | None = Query(None, description="Installations use the installer pool"),
    aggregator: SlotAvailabilityAggregator = Depends(get_aggregator),
    oauth: LarkOAuthService = Depends(get_oauth_service),
) -> AvailabilityResponse:
    """Slots for each business day; a slot is available if any authorized trainer is free."""
    start = start_date or date.today()
    end = end_date or start + timedelta(days=settings.availability_horizon_days)
    if end < start:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="end_date is before start_date")
    days = await aggregator.get_combined_availability(
        start, end, location=location, trainer_name=trainer, category=booking_type
    )
    pool = aggregator.trainer_pool(location, booking_type)
    authorized = await oauth.authorization_status(pool)
    return AvailabilityResponse(
        timezone=settings.business_timezone,
        trainers=[
            TrainerPublic(
                name=t.name,
                email=t.email,
                languages=list(t.languages),
                regions=list(t.regions),
                authorized=authorized.get(t.email, False),
            )
            for t in pool
        ],
        availability=[
            DayInfo(
                date=d.date.isoformat(),
                slots=[
                    SlotInfo(
                        start=s.start.strftime("%H:%M"),
                        end=s.end.strftime("%H:%M"),
                        start_at=s.start,
                        end_at=s.end,
                        available=s.available,
                        available_trainers=s.available_trainers,
                        available_languages=s.available_languages,
                        available_regions=s.available_regions,
                    )
                    for s in d.slots
                ],
            )
            for d in days
        ],
    )


@router.get("/slot", response_model=SlotAvailabilityResponse)
async def slot_availability(
    date_param: date = Query(..., alias="date"),
    start_time: time = Query(...),
    end_time: time = Query(...),
    location: str | None = Query(None),
    booking_type: BookingCategory | None = Query(None),
    aggregator: SlotAvailabilityAggregator = Depends(get_aggregator),
) -> SlotAvailabilityResponse:
    if start_time >= end_time:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="start_time must be before end_time")
    result = await aggregator.get_slot_availability(date_param, start_time, end_time, location, booking_type)
    return SlotAvailabilityResponse(
        available=result.available,
        available_trainers=[t.name for t in result.available_trainers],
    )
