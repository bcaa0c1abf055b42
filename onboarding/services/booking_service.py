"""Booking workflow: availability -> assignment -> calendar -> CRM -> notification.

Each attempt runs as one sequential pipeline. The calendar event is the
durable artifact: once it exists the booking succeeds even if the CRM update
or the notification fails. There is no compensating delete if a later step
fails, and no lock against two requests racing for the same trainer; the
calendar provider is the only conflict check.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any, Protocol

from onboarding.core.errors import (
    BookingError,
    CalendarMutationError,
    CrmSyncWarning,
    NoAuthorizedTrainerError,
    NoAvailabilityError,
    ValidationError,
)
from onboarding.models.booking import (
    BookingCategory,
    BookingRequest,
    BookingResult,
    CalendarEventDraft,
)
from onboarding.models.trainer import Trainer
from onboarding.services.assignment_service import TrainerAssignmentEngine
from onboarding.services.crm_service import CrmUpdateResult, event_fields, task_fields
from onboarding.services.notification_service import (
    Notifier,
    build_booking_message,
    build_cancellation_message,
)
from onboarding.services.slot_aggregator import (
    AuthorizationChecker,
    SlotAvailabilityAggregator,
    filter_authorized,
)
from onboarding.services.trainer_directory import TrainerDirectory

logger = logging.getLogger(__name__)


class BookingState(str, Enum):
    VALIDATING = "validating"
    CHECKING_AVAILABILITY = "checking_availability"
    FILTERING_AUTHORIZED = "filtering_authorized"
    ASSIGNING = "assigning"
    MUTATING_CALENDAR = "mutating_calendar"
    UPDATING_RECORD = "updating_record"
    NOTIFYING = "notifying"
    DONE = "done"
    ERROR = "error"


@dataclass(frozen=True)
class CrmFieldMapping:
    sobject: str
    date_field: str
    event_id_field: str | None = None
    # Holds the id of the Salesforce Event logged for the assignee
    activity_field: str | None = None


CRM_FIELD_MAPPINGS: dict[BookingCategory, CrmFieldMapping] = {
    BookingCategory.INSTALLATION: CrmFieldMapping(
        "Onboarding_Trainer__c",
        "Installation_Date__c",
        "Installation_Event_ID__c",
        "Installation_Salesforce_Event_ID__c",
    ),
    BookingCategory.TRAINING: CrmFieldMapping(
        "Onboarding_Trainer__c", "Training_Date__c", "Training_Event_ID__c", "Training_Salesforce_Event_ID__c"
    ),
    BookingCategory.HARDWARE_FULFILLMENT: CrmFieldMapping("Order", "Hardware_Fulfillment_Date__c"),
    BookingCategory.GO_LIVE: CrmFieldMapping("Onboarding_Trainer__c", "First_Revised_EGLD__c"),
}


def validate_field_mappings(mappings: dict[BookingCategory, CrmFieldMapping]) -> None:
    missing = [c.value for c in BookingCategory if c not in mappings]
    if missing:
        raise RuntimeError(f"No CRM field mapping for booking categories: {', '.join(missing)}")


validate_field_mappings(CRM_FIELD_MAPPINGS)


def crm_fields_for(category: BookingCategory, booking_date: date, event_id: str) -> tuple[str, dict[str, Any]]:
    """Record type and field values a booking writes to the CRM."""
    mapping = CRM_FIELD_MAPPINGS[category]
    fields: dict[str, Any] = {mapping.date_field: booking_date.isoformat()}
    if mapping.event_id_field:
        fields[mapping.event_id_field] = event_id
    return mapping.sobject, fields


class CalendarProvider(Protocol):
    async def create_event(self, calendar_id: str, draft: CalendarEventDraft, *, user_email: str) -> str:
        ...

    async def delete_event(self, calendar_id: str, event_id: str, *, user_email: str) -> None:
        ...


class CrmRecordStore(Protocol):
    async def update_record(self, sobject: str, record_id: str, fields: dict[str, Any]) -> CrmUpdateResult:
        ...

    async def create_record(self, sobject: str, fields: dict[str, Any]) -> CrmUpdateResult:
        ...

    async def get_record(self, sobject: str, record_id: str, fields: list[str]) -> dict[str, Any] | None:
        ...

    async def find_user_id(self, email: str) -> str | None:
        ...

    async def find_order_id(self, onboarding_record_id: str) -> str | None:
        ...


class BookingOrchestrator:
    def __init__(
        self,
        *,
        directory: TrainerDirectory,
        aggregator: SlotAvailabilityAggregator,
        assignment_engine: TrainerAssignmentEngine,
        calendar: CalendarProvider,
        authorizer: AuthorizationChecker,
        crm: CrmRecordStore | None = None,
        notifier: Notifier | None = None,
    ) -> None:
        self.directory = directory
        self.aggregator = aggregator
        self.assignment_engine = assignment_engine
        self.calendar = calendar
        self.authorizer = authorizer
        self.crm = crm
        self.notifier = notifier

    async def book(self, request: BookingRequest) -> BookingResult:
        try:
            return await self._run(request)
        except BookingError as e:
            logger.warning(
                "Booking %s -> %s (failed in %s): %s",
                request.merchant_id,
                BookingState.ERROR.value,
                e.state,
                e.detail,
            )
            raise

    async def _run(self, request: BookingRequest) -> BookingResult:
        state = self._enter(BookingState.VALIDATING, request)
        self._validate(request)
        merchant_name = request.merchant_name or request.merchant_id

        state = self._enter(BookingState.CHECKING_AVAILABILITY, request)
        location = request.location if request.category.on_site else None
        slot = await self.aggregator.get_slot_availability(
            request.date, request.start_time, request.end_time, location, request.category
        )
        if not slot.available or not slot.available_trainers:
            raise NoAvailabilityError(state=state.value)

        state = self._enter(BookingState.FILTERING_AUTHORIZED, request)
        authorized = await filter_authorized(slot.available_trainers, self.authorizer)
        if not authorized:
            logger.warning(
                "Free trainers without calendar authorization: %s",
                ", ".join(t.name for t in slot.available_trainers),
            )
            raise NoAuthorizedTrainerError(state=state.value)

        state = self._enter(BookingState.ASSIGNING, request)
        languages = request.required_languages if request.category.uses_language else []
        assignment = self.assignment_engine.assign_trainer(authorized, languages)
        trainer = assignment.assigned

        state = self._enter(BookingState.MUTATING_CALENDAR, request)
        if request.is_reschedule:
            await self._delete_stale_event(request, trainer)
        event_id = await self._create_event(request, trainer, merchant_name, state)

        self._enter(BookingState.UPDATING_RECORD, request)
        crm_warning = await self._sync_crm(request, trainer, merchant_name, event_id)

        self._enter(BookingState.NOTIFYING, request)
        await self._notify(
            trainer.email,
            build_booking_message(
                category=request.category,
                merchant_name=merchant_name,
                booking_date=request.date,
                start_time=request.start_time,
                end_time=request.end_time,
                rescheduled=request.is_reschedule,
                location=request.merchant_address,
                contact_person=request.contact_person,
                contact_phone=request.contact_phone,
            ),
        )

        self._enter(BookingState.DONE, request)
        logger.info(
            "%s booked for %s with %s on %s %s-%s (event %s, crm %s)",
            request.category.label,
            merchant_name,
            trainer.name,
            request.date,
            request.start_time,
            request.end_time,
            event_id,
            "synced" if crm_warning is None else "pending",
        )
        return BookingResult(
            trainer=trainer,
            reason=assignment.reason,
            event_id=event_id,
            crm_updated=crm_warning is None,
            rescheduled=request.is_reschedule,
            crm_warning=crm_warning,
            candidates=assignment.candidates,
        )

    @staticmethod
    def _enter(state: BookingState, request: BookingRequest) -> BookingState:
        logger.debug("Booking %s -> %s", request.merchant_id, state.value)
        return state

    @staticmethod
    def _validate(request: BookingRequest) -> None:
        if isinstance(request.merchant_id, str):
            request.merchant_id = request.merchant_id.strip()
        missing = [
            name
            for name, value in (
                ("merchant_id", request.merchant_id),
                ("date", request.date),
                ("start_time", request.start_time),
                ("end_time", request.end_time),
            )
            if value is None or value == ""
        ]
        if missing:
            raise ValidationError(
                f"Missing required fields: {', '.join(missing)}", state=BookingState.VALIDATING.value
            )
        if request.start_time >= request.end_time:
            raise ValidationError("start_time must be before end_time", state=BookingState.VALIDATING.value)

    def _calendar_id(self, trainer: Trainer) -> str | None:
        return self.directory.calendar_id_for(trainer)

    async def _delete_stale_event(self, request: BookingRequest, assigned: Trainer) -> None:
        owner = assigned
        if request.existing_trainer_email:
            owner = self.directory.get_by_email(request.existing_trainer_email) or assigned
        calendar_id = self._calendar_id(owner)
        try:
            if not calendar_id:
                raise LookupError(f"{owner.name} has no calendar configured")
            await self.calendar.delete_event(calendar_id, request.existing_event_id, user_email=owner.email)
            logger.info("Cancelled previous event %s for reschedule", request.existing_event_id)
        except Exception as e:
            # The old event may already be gone; the new booking goes ahead
            logger.warning("Could not delete previous event %s: %s", request.existing_event_id, e)

    async def _create_event(
        self, request: BookingRequest, trainer: Trainer, merchant_name: str, state: BookingState
    ) -> str:
        calendar_id = self._calendar_id(trainer)
        if not calendar_id:
            raise CalendarMutationError(f"{trainer.name} has no calendar configured", state=state.value)
        provider = self.aggregator.provider
        draft = CalendarEventDraft(
            title=f"{request.category.label}: {merchant_name}",
            description=self._event_description(request, merchant_name),
            start=provider.localize(request.date, request.start_time),
            end=provider.localize(request.date, request.end_time),
            attendees=[request.merchant_email] if request.merchant_email else [],
            location=request.merchant_address if request.category.on_site else None,
        )
        try:
            return await self.calendar.create_event(calendar_id, draft, user_email=trainer.email)
        except Exception as e:
            logger.exception("Calendar event creation failed for %s: %s", trainer.name, e)
            raise CalendarMutationError(
                f"Failed to create the calendar event with {trainer.name}: {e}", state=state.value
            ) from e

    @staticmethod
    def _event_description(request: BookingRequest, merchant_name: str) -> str:
        lines = [f"Merchant: {merchant_name}", f"Salesforce ID: {request.merchant_id}"]
        if request.merchant_address:
            lines.append(f"Address: {request.merchant_address}")
        if request.contact_person:
            lines.append(f"Contact: {request.contact_person}")
        if request.contact_phone:
            lines.append(f"Phone: {request.contact_phone}")
        if request.required_languages:
            lines.append(f"Language: {', '.join(request.required_languages)}")
        return "\n".join(lines)

    async def _sync_crm(
        self, request: BookingRequest, trainer: Trainer, merchant_name: str, event_id: str
    ) -> CrmSyncWarning | None:
        """Write the booking to the CRM. Failures come back as a warning, never raised.

        Besides the date and event id on the booking record, installations and
        trainings log a Salesforce Event owned by the assignee, and a follow-up
        Task goes to the merchant's manager when one is given. Those side
        writes are best-effort too, but any failure still reports the booking
        as not fully synced.
        """
        if self.crm is None:
            logger.warning("CRM not configured; booking %s not synced", event_id)
            return CrmSyncWarning("CRM not configured", record_id=request.merchant_id)
        mapping = CRM_FIELD_MAPPINGS[request.category]
        sobject, fields = crm_fields_for(request.category, request.date, event_id)
        problems: list[str] = []
        try:
            record_id = request.merchant_id
            if sobject == "Order":
                record_id = await self.crm.find_order_id(request.merchant_id)
                if not record_id:
                    return CrmSyncWarning(
                        f"No Order found for onboarding record {request.merchant_id}",
                        record_id=request.merchant_id,
                    )
            if mapping.activity_field:
                activity_id, problem = await self._write_activity_event(request, trainer, merchant_name, mapping)
                if activity_id:
                    fields[mapping.activity_field] = activity_id
                if problem:
                    problems.append(problem)
            result = await self.crm.update_record(sobject, record_id, fields)
        except Exception as e:
            logger.exception("CRM update for %s failed: %s", request.merchant_id, e)
            return CrmSyncWarning(f"CRM update failed: {e}", record_id=request.merchant_id)
        if not result.success:
            return CrmSyncWarning(
                "CRM rejected the update", record_id=result.record_id, errors=result.errors
            )
        logger.info("CRM %s %s updated: %s", sobject, record_id, fields)

        if request.manager_email:
            problem = await self._create_follow_up_task(request, merchant_name)
            if problem:
                problems.append(problem)
        if problems:
            return CrmSyncWarning("; ".join(problems), record_id=record_id)
        return None

    async def _write_activity_event(
        self, request: BookingRequest, trainer: Trainer, merchant_name: str, mapping: CrmFieldMapping
    ) -> tuple[str | None, str | None]:
        """Create, or on reschedule update, the Salesforce Event. Returns (event id, problem)."""
        try:
            owner_id = await self.crm.find_user_id(trainer.email)
            if not owner_id:
                return None, f"No Salesforce user for {trainer.email}; Salesforce Event not logged"
            existing_id = None
            if request.is_reschedule:
                record = await self.crm.get_record(mapping.sobject, request.merchant_id, [mapping.activity_field])
                existing_id = (record or {}).get(mapping.activity_field)
            provider = self.aggregator.provider
            fields = event_fields(
                subject=f"{request.category.label} - {merchant_name}",
                start=provider.localize(request.date, request.start_time),
                end=provider.localize(request.date, request.end_time),
                owner_id=owner_id,
                what_id=request.merchant_id,
                event_type="Face to face" if request.category.on_site else "Online",
                description=self._event_description(request, merchant_name),
                location=request.merchant_address or "",
                new=not existing_id,
            )
            if existing_id:
                result = await self.crm.update_record("Event", existing_id, fields)
            else:
                result = await self.crm.create_record("Event", fields)
        except Exception as e:
            logger.exception("Salesforce Event for %s failed: %s", request.merchant_id, e)
            return None, f"Salesforce Event not logged: {e}"
        if not result.success:
            return None, f"Salesforce Event rejected: {'; '.join(result.errors)}"
        logger.info(
            "Salesforce Event %s %s for %s", result.record_id, "updated" if existing_id else "created", trainer.name
        )
        return result.record_id, None

    async def _create_follow_up_task(self, request: BookingRequest, merchant_name: str) -> str | None:
        try:
            owner_id = await self.crm.find_user_id(request.manager_email)
            if not owner_id:
                return f"No Salesforce user for {request.manager_email}; follow-up Task not created"
            action = "Check rescheduled" if request.is_reschedule else "Check"
            result = await self.crm.create_record(
                "Task",
                task_fields(
                    subject=f"[Portal] {action} {request.category.label.lower()} booking for {merchant_name}",
                    description="\n".join(
                        [
                            f"Merchant: {merchant_name}",
                            f"Date: {request.date:%d %b %Y}",
                            f"Time: {request.start_time:%H:%M} - {request.end_time:%H:%M}",
                        ]
                    ),
                    owner_id=owner_id,
                    what_id=request.merchant_id,
                    due=datetime.now(self.aggregator.provider.tz).date(),
                ),
            )
        except Exception as e:
            logger.exception("Follow-up Task for %s failed: %s", request.merchant_id, e)
            return f"Follow-up Task not created: {e}"
        if not result.success:
            return f"Follow-up Task rejected: {'; '.join(result.errors)}"
        logger.info("Follow-up Task %s created for %s", result.record_id, request.manager_email)
        return None

    async def _notify(self, recipient_email: str, message: str) -> None:
        if self.notifier is None:
            return
        try:
            await self.notifier.notify(recipient_email, message)
        except Exception as e:
            logger.exception("Failed to send notification to %s: %s", recipient_email, e)

    async def cancel_booking(
        self,
        *,
        trainer_email: str,
        event_id: str,
        merchant_name: str,
        booking_date: date,
        category: BookingCategory,
    ) -> None:
        """Delete a booked event and tell the trainer. Deletion failure is fatal."""
        trainer = self.directory.get_by_email(trainer_email)
        if trainer is None:
            raise ValidationError(f"Unknown trainer {trainer_email}", state=BookingState.VALIDATING.value)
        calendar_id = self._calendar_id(trainer)
        if not calendar_id:
            raise CalendarMutationError(
                f"{trainer.name} has no calendar configured", state=BookingState.MUTATING_CALENDAR.value
            )
        try:
            await self.calendar.delete_event(calendar_id, event_id, user_email=trainer.email)
        except Exception as e:
            raise CalendarMutationError(
                f"Failed to cancel event {event_id}: {e}", state=BookingState.MUTATING_CALENDAR.value
            ) from e
        await self._notify(
            trainer.email,
            build_cancellation_message(category=category, merchant_name=merchant_name, booking_date=booking_date),
        )
