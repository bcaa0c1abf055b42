from datetime import date, time
from unittest.mock import AsyncMock

import pytest

from onboarding.models.booking import BookingCategory
from onboarding.services.notification_service import (
    LarkNotifier,
    build_booking_message,
    build_cancellation_message,
)


def test_booking_message() -> None:
    message = build_booking_message(
        category=BookingCategory.HARDWARE_FULFILLMENT,
        merchant_name="Kopi Corner",
        booking_date=date(2026, 11, 4),
        start_time=time(14),
        end_time=time(16),
        rescheduled=False,
        location="Petaling Jaya",
        contact_person="Mei Ling",
        contact_phone="+60123456789",
    )
    assert message.splitlines() == [
        "New Hardware Fulfillment Booking",
        "",
        "Merchant: Kopi Corner",
        "Date: 04 Nov 2026",
        "Time: 14:00 - 16:00",
        "Location: Petaling Jaya",
        "Contact: Mei Ling (+60123456789)",
    ]


def test_rescheduled_message_without_optional_details() -> None:
    message = build_booking_message(
        category=BookingCategory.GO_LIVE,
        merchant_name="Kopi Corner",
        booking_date=date(2026, 11, 4),
        start_time=time(9),
        end_time=time(11),
        rescheduled=True,
        contact_phone="+60123456789",
    )
    assert message.startswith("Rescheduled Go Live Booking")
    assert "Location" not in message
    assert message.endswith("Contact: +60123456789")


def test_cancellation_message() -> None:
    message = build_cancellation_message(
        category=BookingCategory.TRAINING, merchant_name="Kopi Corner", booking_date=date(2026, 11, 4)
    )
    assert message.startswith("Training Cancelled")
    assert message.endswith("This training session has been cancelled.")


@pytest.mark.asyncio
async def test_lark_notifier_sends_message() -> None:
    client = AsyncMock()
    await LarkNotifier(client).notify("alice@example.com", "hello")
    client.send_message.assert_awaited_once_with("alice@example.com", "hello")


@pytest.mark.asyncio
async def test_disabled_notifier_sends_nothing() -> None:
    client = AsyncMock()
    await LarkNotifier(client, enabled=False).notify("alice@example.com", "hello")
    client.send_message.assert_not_awaited()
