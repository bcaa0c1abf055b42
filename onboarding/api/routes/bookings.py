import logging

from fastapi import APIRouter, Depends, status

from onboarding.api.deps import get_orchestrator
from onboarding.api.schemas.booking import BookRequest, BookResponse, CancelRequest
from onboarding.services.booking_service import BookingOrchestrator

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/bookings", tags=["bookings"])


@router.post("", response_model=BookResponse, status_code=status.HTTP_201_CREATED)
async def book(
    body: BookRequest,
    orchestrator: BookingOrchestrator = Depends(get_orchestrator),
) -> BookResponse:
    """Book (or reschedule, when existing_event_id is set) an appointment.

    Booking errors are turned into category-specific responses by the
    handlers registered in main.
    """
    result = await orchestrator.book(body.to_domain())
    return BookResponse.from_result(result, body)


@router.delete("/{event_id}", status_code=status.HTTP_204_NO_CONTENT)
async def cancel(
    event_id: str,
    body: CancelRequest,
    orchestrator: BookingOrchestrator = Depends(get_orchestrator),
) -> None:
    await orchestrator.cancel_booking(
        trainer_email=body.trainer_email,
        event_id=event_id,
        merchant_name=body.merchant_name,
        booking_date=body.date,
        category=body.booking_type,
    )
    logger.info("Cancelled %s event %s for %s", body.booking_type.value, event_id, body.merchant_name)
