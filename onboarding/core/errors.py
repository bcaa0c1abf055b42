"""Error taxonomy for the booking pipeline and its external collaborators.

Pipeline errors carry the stage they were raised in so that the API layer and
operators can tell a scheduling conflict apart from an onboarding gap.
"""


class BookingError(Exception):
    """Base for errors that abort a booking attempt."""

    default_detail = "Booking failed"

    def __init__(self, detail: str | None = None, *, state: str | None = None) -> None:
        self.detail = detail or self.default_detail
        self.state = state
        super().__init__(self.detail)


class ValidationError(BookingError):
    """Request is missing or has malformed fields. Never retry."""

    default_detail = "Invalid booking request"


class NoAvailabilityError(BookingError):
    """No trainer is free for the requested window."""

    default_detail = "No trainers available for this time slot"


class NoAuthorizedTrainerError(BookingError):
    """Free trainers exist but none has granted calendar write access."""

    default_detail = (
        "Available trainers have not yet connected their calendars. Please contact support."
    )


class CalendarMutationError(BookingError):
    """Creating (or cancelling) the calendar event failed; nothing was written to the CRM."""

    default_detail = "Failed to create the calendar event"


class CrmSyncWarning(UserWarning):
    """CRM update failed after the calendar event was created.

    Attached to a successful booking result rather than raised.
    """

    def __init__(self, detail: str, *, record_id: str | None = None, errors: list[str] | None = None) -> None:
        self.detail = detail
        self.record_id = record_id
        self.errors = errors or []
        super().__init__(detail)


class LarkApiError(Exception):
    """Lark returned a non-zero code or a non-JSON / non-2xx response."""

    def __init__(self, message: str, *, code: int | None = None, status_code: int | None = None) -> None:
        self.code = code
        self.status_code = status_code
        super().__init__(message)


class LarkAuthorizationError(LarkApiError):
    """No usable per-trainer credential for a calendar call."""


class SalesforceError(Exception):
    """Salesforce authentication or API call failed."""
