import json
from datetime import timedelta

import httpx
import pytest

from conftest import BOOKING_DAY, at
from onboarding.core.errors import LarkApiError, LarkAuthorizationError
from onboarding.models.booking import CalendarEventDraft
from onboarding.services.lark_client import LarkClient

BASE_URL = "https://lark.test"


class StaticTokens:
    def __init__(self, tokens: dict[str, str], open_ids: dict[str, str] | None = None) -> None:
        self.tokens = tokens
        self.open_ids = open_ids or {}

    async def get_valid_access_token(self, email: str) -> str | None:
        return self.tokens.get(email)

    async def get_open_id(self, email: str) -> str | None:
        return self.open_ids.get(email)


def make_client(handler, tokens=None, open_ids=None) -> LarkClient:
    return LarkClient(
        app_id="cli_test",
        app_secret="secret",
        base_url=BASE_URL,
        token_provider=StaticTokens(tokens or {"alice@example.com": "u-alice"}, open_ids),
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


def ok(data=None) -> httpx.Response:
    return httpx.Response(200, json={"code": 0, "msg": "success", "data": data or {}})


def ts(value) -> str:
    return str(int(value.timestamp()))


def timed_event(event_id: str, start, end, **fields) -> dict:
    return {"event_id": event_id, "start_time": {"timestamp": ts(start)}, "end_time": {"timestamp": ts(end)}, **fields}


@pytest.mark.asyncio
async def test_query_free_busy_parses_and_paginates() -> None:
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        assert request.headers["Authorization"] == "Bearer u-alice"
        if "page_token" not in request.url.params:
            return ok(
                {
                    "items": [
                        {
                            "event_id": "e1",
                            "start_time": {"timestamp": ts(at(10))},
                            "end_time": {"timestamp": ts(at(11))},
                        },
                        {
                            "event_id": "e2",
                            "status": "cancelled",
                            "start_time": {"timestamp": ts(at(13))},
                            "end_time": {"timestamp": ts(at(14))},
                        },
                        {
                            "event_id": "e3",
                            "free_busy_status": "free",
                            "start_time": {"timestamp": ts(at(15))},
                            "end_time": {"timestamp": ts(at(16))},
                        },
                    ],
                    "has_more": True,
                    "page_token": "p2",
                }
            )
        assert request.url.params["page_token"] == "p2"
        return ok(
            {
                "items": [
                    {
                        "event_id": "e4",
                        "start_time": {"date": "2026-11-03"},
                        "end_time": {"date": "2026-11-03"},
                    }
                ],
                "has_more": False,
            }
        )

    client = make_client(handler)
    busy = await client.query_free_busy("cal-alice", at(0), at(0).replace(day=4), user_email="alice@example.com")

    assert len(seen) == 2
    assert seen[0].url.path == "/open-apis/calendar/v4/calendars/cal-alice/events"
    assert [(b.start, b.end) for b in busy] == [
        (at(10), at(11)),
        (at(0).replace(day=3), at(0).replace(day=4)),
    ]


@pytest.mark.asyncio
async def test_query_free_busy_merges_free_busy_api_and_recurring_instances() -> None:
    first_occurrence = BOOKING_DAY - timedelta(days=28)
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(f"{request.method} {request.url.path}")
        if request.url.path == "/open-apis/calendar/v4/freebusy/list":
            body = json.loads(request.content)
            assert request.url.params["user_id_type"] == "open_id"
            assert body["user_id"] == "ou_alice"
            assert body["time_min"] == at(0).isoformat()
            return ok(
                {
                    "freebusy_list": [
                        {"start_time": at(14).isoformat(), "end_time": at(15).isoformat()},
                        # Also reported by the recurring instance below
                        {"start_time": at(10).isoformat(), "end_time": at(11).isoformat()},
                    ]
                }
            )
        if request.url.path.endswith("/events/e-weekly/instances"):
            assert request.url.params["start_time"] == ts(at(0))
            return ok(
                {
                    "items": [
                        {
                            "event_id": "e-weekly_0",
                            "status": "confirmed",
                            "start_time": {"timestamp": ts(at(10))},
                            "end_time": {"timestamp": ts(at(11))},
                        }
                    ]
                }
            )
        return ok(
            {
                "items": [
                    {
                        "event_id": "e-weekly",
                        "summary": "Team sync",
                        "recurrence": "FREQ=WEEKLY;INTERVAL=1;BYDAY=MO",
                        "start_time": {"timestamp": ts(at(10, day=first_occurrence))},
                        "end_time": {"timestamp": ts(at(11, day=first_occurrence))},
                    }
                ]
            }
        )

    client = make_client(handler, open_ids={"alice@example.com": "ou_alice"})
    busy = await client.query_free_busy("cal-alice", at(0), at(23), user_email="alice@example.com")

    assert seen == [
        "POST /open-apis/calendar/v4/freebusy/list",
        "GET /open-apis/calendar/v4/calendars/cal-alice/events",
        "GET /open-apis/calendar/v4/calendars/cal-alice/events/e-weekly/instances",
    ]
    assert [(b.start, b.end) for b in busy] == [(at(10), at(11)), (at(14), at(15))]


@pytest.mark.asyncio
async def test_weekly_event_blocks_later_occurrences() -> None:
    first_occurrence = BOOKING_DAY - timedelta(days=28)

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/instances"):
            return ok(
                {
                    "items": [
                        {
                            "event_id": f"e-weekly_{week}",
                            "start_time": {"timestamp": ts(at(10, day=first_occurrence + timedelta(weeks=week)))},
                            "end_time": {"timestamp": ts(at(11, day=first_occurrence + timedelta(weeks=week)))},
                        }
                        for week in range(5)
                    ]
                }
            )
        return ok(
            {
                "items": [
                    {
                        "event_id": "e-weekly",
                        "recurrence": "FREQ=WEEKLY;INTERVAL=1;BYDAY=MO",
                        "start_time": {"timestamp": ts(at(10, day=first_occurrence))},
                        "end_time": {"timestamp": ts(at(11, day=first_occurrence))},
                    }
                ]
            }
        )

    client = make_client(handler)
    busy = await client.query_free_busy("cal-alice", at(0), at(23), user_email="alice@example.com")

    # Only the occurrence inside the queried day is kept
    assert [(b.start, b.end) for b in busy] == [(at(10), at(11))]
    assert any(b.overlaps(at(10), at(11)) for b in busy)


@pytest.mark.asyncio
async def test_recurring_instance_inherits_free_status() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/instances"):
            return ok({"items": [timed_event("e-focus_0", at(9), at(10))]})
        return ok({"items": [{"event_id": "e-focus", "recurrence": "FREQ=DAILY", "free_busy_status": "free"}]})

    client = make_client(handler)
    assert await client.query_free_busy("cal-alice", at(0), at(23), user_email="alice@example.com") == []


@pytest.mark.asyncio
async def test_failed_instance_expansion_keeps_other_events() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/instances"):
            return httpx.Response(200, json={"code": 193001, "msg": "event not found"})
        return ok(
            {
                "items": [
                    {"event_id": "e-gone", "recurrence": "FREQ=WEEKLY"},
                    timed_event("e1", at(9), at(10)),
                ]
            }
        )

    client = make_client(handler)
    busy = await client.query_free_busy("cal-alice", at(0), at(23), user_email="alice@example.com")
    assert [(b.start, b.end) for b in busy] == [(at(9), at(10))]


@pytest.mark.asyncio
async def test_free_busy_api_failure_falls_back_to_calendar_events() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/open-apis/calendar/v4/freebusy/list":
            return httpx.Response(200, json={"code": 190002, "msg": "invalid user_id"})
        return ok({"items": [timed_event("e1", at(9), at(10))]})

    client = make_client(handler, open_ids={"alice@example.com": "ou_alice"})
    busy = await client.query_free_busy("cal-alice", at(0), at(23), user_email="alice@example.com")
    assert [(b.start, b.end) for b in busy] == [(at(9), at(10))]


@pytest.mark.asyncio
async def test_free_busy_api_nested_and_malformed_periods() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/open-apis/calendar/v4/freebusy/list":
            return ok(
                {
                    "freebusy_list": [
                        {
                            "user_id": "ou_alice",
                            "busy_time": [
                                {"start_time": at(9).isoformat(), "end_time": at(10).isoformat()},
                                {"start_time": "not a time", "end_time": at(12).isoformat()},
                                # No offset; cannot be placed on the timeline
                                {"start_time": "2026-11-02T15:00:00", "end_time": "2026-11-02T16:00:00"},
                            ],
                        }
                    ]
                }
            )
        return ok({"items": []})

    client = make_client(handler, open_ids={"alice@example.com": "ou_alice"})
    busy = await client.query_free_busy("cal-alice", at(0), at(23), user_email="alice@example.com")
    assert [(b.start, b.end) for b in busy] == [(at(9), at(10))]


@pytest.mark.asyncio
async def test_malformed_event_items_are_skipped() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return ok(
            {
                "items": [
                    {"summary": "no id"},
                    {"event_id": "e-bad-time", "start_time": {"timestamp": "soon"}, "end_time": {"timestamp": "later"}},
                    timed_event("e1", at(9), at(10)),
                ]
            }
        )

    client = make_client(handler)
    busy = await client.query_free_busy("cal-alice", at(0), at(23), user_email="alice@example.com")
    assert [(b.start, b.end) for b in busy] == [(at(9), at(10))]


@pytest.mark.asyncio
async def test_json_content_type_with_unparseable_body_raises_lark_api_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(502, text="<html>bad gateway", headers={"content-type": "application/json"})

    client = make_client(handler)
    with pytest.raises(LarkApiError) as exc_info:
        await client.query_free_busy("cal-alice", at(0), at(23), user_email="alice@example.com")
    assert exc_info.value.status_code == 502


@pytest.mark.asyncio
async def test_json_body_that_is_not_an_envelope_raises_lark_api_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=["unexpected"])

    client = make_client(handler)
    with pytest.raises(LarkApiError):
        await client.delete_event("cal-alice", "e1", user_email="alice@example.com")


@pytest.mark.asyncio
async def test_query_without_user_token_raises_authorization_error() -> None:
    client = make_client(lambda request: ok(), tokens={})
    with pytest.raises(LarkAuthorizationError):
        await client.query_free_busy("cal-bob", at(0), at(23), user_email="bob@example.com")


@pytest.mark.asyncio
async def test_non_zero_code_raises_lark_api_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"code": 191002, "msg": "no calendar access"})

    client = make_client(handler)
    with pytest.raises(LarkApiError) as exc_info:
        await client.query_free_busy("cal-alice", at(0), at(23), user_email="alice@example.com")
    assert exc_info.value.code == 191002


@pytest.mark.asyncio
async def test_non_json_response_raises_lark_api_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(502, text="<html>Bad Gateway</html>", headers={"content-type": "text/html"})

    client = make_client(handler)
    with pytest.raises(LarkApiError) as exc_info:
        await client.delete_event("cal-alice", "e1", user_email="alice@example.com")
    assert exc_info.value.status_code == 502


@pytest.mark.asyncio
async def test_create_event_sends_times_and_attendees() -> None:
    bodies: dict[str, dict] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        bodies[request.url.path] = json.loads(request.content)
        if request.url.path.endswith("/attendees"):
            return ok({"attendees": []})
        return ok({"event": {"event_id": "evt-123"}})

    client = make_client(handler)
    draft = CalendarEventDraft(
        title="Training: Kopi Corner",
        description="Merchant: Kopi Corner",
        start=at(9),
        end=at(11),
        attendees=["owner@kopicorner.my"],
        location="Petaling Jaya",
    )

    event_id = await client.create_event("cal-alice", draft, user_email="alice@example.com")

    assert event_id == "evt-123"
    event_body = bodies["/open-apis/calendar/v4/calendars/cal-alice/events"]
    assert event_body["summary"] == "Training: Kopi Corner"
    assert event_body["start_time"] == {"timestamp": ts(at(9)), "timezone": "Asia/Singapore"}
    assert event_body["location"] == {"name": "Petaling Jaya"}
    attendees = bodies["/open-apis/calendar/v4/calendars/cal-alice/events/evt-123/attendees"]
    assert attendees["attendees"] == [{"type": "third_party", "third_party_email": "owner@kopicorner.my"}]


@pytest.mark.asyncio
async def test_attendee_failure_does_not_fail_event_creation() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/attendees"):
            return httpx.Response(200, json={"code": 193002, "msg": "invalid attendee"})
        return ok({"event": {"event_id": "evt-7"}})

    client = make_client(handler)
    draft = CalendarEventDraft(
        title="t", description="d", start=at(9), end=at(11), attendees=["bad-address"]
    )
    assert await client.create_event("cal-alice", draft, user_email="alice@example.com") == "evt-7"


@pytest.mark.asyncio
async def test_delete_event_requires_id() -> None:
    client = make_client(lambda request: ok())
    with pytest.raises(LarkApiError):
        await client.delete_event("cal-alice", "", user_email="alice@example.com")


@pytest.mark.asyncio
async def test_send_message_caches_tenant_token() -> None:
    token_calls = []
    messages = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/open-apis/auth/v3/tenant_access_token/internal":
            token_calls.append(json.loads(request.content))
            return httpx.Response(200, json={"code": 0, "tenant_access_token": "t-1", "expire": 7200})
        assert request.headers["Authorization"] == "Bearer t-1"
        assert request.url.params["receive_id_type"] == "email"
        messages.append(json.loads(request.content))
        return ok({"message_id": "om_1"})

    client = make_client(handler)
    await client.send_message("alice@example.com", "hello")
    await client.send_message("bob@example.com", f"booked {BOOKING_DAY}")

    assert token_calls == [{"app_id": "cli_test", "app_secret": "secret"}]
    assert [m["receive_id"] for m in messages] == ["alice@example.com", "bob@example.com"]
    assert json.loads(messages[0]["content"]) == {"text": "hello"}


@pytest.mark.asyncio
async def test_tenant_token_failure_raises() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"code": 10003, "msg": "invalid app_secret"})

    client = make_client(handler)
    with pytest.raises(LarkApiError, match="invalid app_secret"):
        await client.get_tenant_access_token()


@pytest.mark.asyncio
async def test_tenant_token_unparseable_response_raises() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(502, text="<html>bad gateway", headers={"content-type": "application/json"})

    client = make_client(handler)
    with pytest.raises(LarkApiError) as exc_info:
        await client.get_tenant_access_token()
    assert exc_info.value.status_code == 502
