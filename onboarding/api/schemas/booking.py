import datetime as dt

from pydantic import BaseModel

from onboarding.models.booking import BookingCategory, BookingRequest, BookingResult


class BookRequest(BaseModel):
    merchant_id: str | None = None
    merchant_name: str | None = None
    merchant_email: str | None = None
    merchant_address: str | None = None
    contact_person: str | None = None
    contact_phone: str | None = None
    date: dt.date | None = None
    start_time: dt.time | None = None
    end_time: dt.time | None = None
    booking_type: BookingCategory = BookingCategory.TRAINING
    trainer_languages: list[str] = []
    location: str | None = None  # region tag or address; defaults to merchant_address
    existing_event_id: str | None = None
    existing_trainer_email: str | None = None
    manager_email: str | None = None

    def to_domain(self) -> BookingRequest:
        return BookingRequest(
            merchant_id=self.merchant_id,
            merchant_name=self.merchant_name,
            merchant_email=self.merchant_email,
            merchant_address=self.merchant_address,
            contact_person=self.contact_person,
            contact_phone=self.contact_phone,
            date=self.date,
            start_time=self.start_time,
            end_time=self.end_time,
            category=self.booking_type,
            required_languages=self.trainer_languages,
            location=self.location or self.merchant_address,
            existing_event_id=self.existing_event_id,
            existing_trainer_email=self.existing_trainer_email,
            manager_email=self.manager_email,
        )


class BookResponse(BaseModel):
    success: bool = True
    event_id: str
    assigned_trainer: str
    assigned_trainer_email: str
    assignment_reason: str
    crm_updated: bool
    crm_warning: str | None = None
    rescheduled: bool
    message: str

    @classmethod
    def from_result(cls, result: BookingResult, request: BookRequest) -> "BookResponse":
        message = (
            f"{request.booking_type.value.replace('-', ' ').capitalize()} booked with {result.trainer.name} "
            f"for {request.date} from {request.start_time:%H:%M} to {request.end_time:%H:%M}"
        )
        if not result.crm_updated:
            message += " (booking confirmed, sync pending)"
        return cls(
            event_id=result.event_id,
            assigned_trainer=result.trainer.name,
            assigned_trainer_email=result.trainer.email,
            assignment_reason=result.reason,
            crm_updated=result.crm_updated,
            crm_warning=result.crm_warning.detail if result.crm_warning else None,
            rescheduled=result.rescheduled,
            message=message,
        )


class CancelRequest(BaseModel):
    trainer_email: str
    merchant_name: str
    date: dt.date
    booking_type: BookingCategory = BookingCategory.TRAINING
