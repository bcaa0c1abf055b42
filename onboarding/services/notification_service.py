import logging
from datetime import date, time
from typing import Protocol

from onboarding.models.booking import BookingCategory
from onboarding.services.lark_client import LarkClient

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    async def notify(self, recipient_email: str, message: str) -> None:
        ...


class LarkNotifier:
    """Sends trainer notifications as Lark app messages."""

    def __init__(self, client: LarkClient, *, enabled: bool = True) -> None:
        self.client = client
        self.enabled = enabled

    async def notify(self, recipient_email: str, message: str) -> None:
        if not self.enabled:
            logger.debug("Notifications disabled, skipping message to %s", recipient_email)
            return
        await self.client.send_message(recipient_email, message)
        logger.info("Notification sent to %s", recipient_email)


def format_date(d: date) -> str:
    """04 Nov 2025"""
    return d.strftime("%d %b %Y")


def build_booking_message(
    *,
    category: BookingCategory,
    merchant_name: str,
    booking_date: date,
    start_time: time,
    end_time: time,
    rescheduled: bool,
    location: str | None = None,
    contact_person: str | None = None,
    contact_phone: str | None = None,
) -> str:
    action = "Rescheduled" if rescheduled else "New"
    lines = [
        f"{action} {category.label} Booking",
        "",
        f"Merchant: {merchant_name}",
        f"Date: {format_date(booking_date)}",
        f"Time: {start_time:%H:%M} - {end_time:%H:%M}",
    ]
    if location:
        lines.append(f"Location: {location}")
    if contact_person:
        lines.append(f"Contact: {contact_person}" + (f" ({contact_phone})" if contact_phone else ""))
    elif contact_phone:
        lines.append(f"Contact: {contact_phone}")
    return "\n".join(lines)


def build_cancellation_message(*, category: BookingCategory, merchant_name: str, booking_date: date) -> str:
    return (
        f"{category.label} Cancelled\n\n"
        f"Merchant: {merchant_name}\n"
        f"Date: {format_date(booking_date)}\n\n"
        f"This {category.label.lower()} session has been cancelled."
    )
