"""Lark Open API client for calendars, OAuth and messaging.

One instance is constructed at startup and passed to the services that need
it. App/tenant tokens are cached on the instance; per-trainer user tokens come
from the token provider (the OAuth credential store).
"""

import json
import logging
import time
from datetime import date, datetime, timedelta
from typing import Any, Protocol
from zoneinfo import ZoneInfo

import httpx
from pydantic import AwareDatetime, BaseModel, ValidationError

from onboarding.core.errors import LarkApiError, LarkAuthorizationError
from onboarding.models.booking import BusyInterval, CalendarEventDraft

logger = logging.getLogger(__name__)

TOKEN_REFRESH_MARGIN_SECONDS = 60
EVENTS_PAGE_SIZE = 500
FREE_BUSY_PATH = "/open-apis/calendar/v4/freebusy/list"


class TokenProvider(Protocol):
    async def get_valid_access_token(self, email: str) -> str | None:
        ...

    async def get_open_id(self, email: str) -> str | None:
        ...


class LarkEnvelope(BaseModel):
    code: int
    msg: str = ""
    data: dict[str, Any] | None = None


class LarkTime(BaseModel):
    timestamp: str | None = None
    date: str | None = None
    timezone: str | None = None


class LarkEvent(BaseModel):
    event_id: str
    summary: str | None = None
    status: str | None = None
    free_busy_status: str | None = None
    start_time: LarkTime | None = None
    end_time: LarkTime | None = None
    # RRULE text, e.g. "FREQ=WEEKLY;INTERVAL=1;BYDAY=MO"; set on recurring event definitions
    recurrence: str | None = None

    @property
    def blocks_time(self) -> bool:
        return self.status != "cancelled" and self.free_busy_status != "free"


class LarkBusyPeriod(BaseModel):
    start_time: AwareDatetime
    end_time: AwareDatetime


def _to_datetime(value: LarkTime | None, tz: ZoneInfo) -> datetime | None:
    if value is None:
        return None
    if value.timestamp:
        return datetime.fromtimestamp(int(value.timestamp), tz=tz)
    if value.date:
        # All-day events carry a date only
        return datetime.combine(date.fromisoformat(value.date), datetime.min.time(), tzinfo=tz)
    return None


def _event_interval(event: LarkEvent, tz: ZoneInfo) -> BusyInterval | None:
    if not event.blocks_time:
        return None
    try:
        start = _to_datetime(event.start_time, tz)
        end = _to_datetime(event.end_time, tz)
    except ValueError:
        logger.warning("Skipping event %s with unreadable times", event.event_id)
        return None
    if start is None or end is None:
        return None
    if event.end_time and event.end_time.date and not event.end_time.timestamp:
        # All-day end dates are inclusive
        end += timedelta(days=1)
    return BusyInterval(start=start, end=end)


def _parse_events(items: list[Any]) -> list[LarkEvent]:
    events = []
    for item in items:
        try:
            events.append(LarkEvent.model_validate(item))
        except ValidationError as e:
            logger.warning("Skipping malformed calendar event: %s", e.errors(include_url=False))
    return events


def _unique(intervals: list[BusyInterval]) -> list[BusyInterval]:
    """Sorted, with periods reported by more than one source kept once."""
    seen = set()
    unique = []
    for interval in sorted(intervals, key=lambda b: (b.start, b.end)):
        key = (interval.start, interval.end)
        if key in seen:
            continue
        seen.add(key)
        unique.append(interval)
    return unique


class LarkClient:
    def __init__(
        self,
        *,
        app_id: str,
        app_secret: str,
        base_url: str = "https://open.larksuite.com",
        timezone: str = "Asia/Singapore",
        token_provider: TokenProvider | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.app_id = app_id
        self.app_secret = app_secret
        self.base_url = base_url.rstrip("/")
        self.timezone = timezone
        self.token_provider = token_provider
        self._http = http_client or httpx.AsyncClient()
        # kind ("tenant" / "app") -> (token, expires_at epoch seconds)
        self._internal_tokens: dict[str, tuple[str, float]] = {}

    async def aclose(self) -> None:
        await self._http.aclose()

    # --- auth ---

    async def _internal_token(self, kind: str) -> str:
        cached = self._internal_tokens.get(kind)
        now = time.time()
        if cached and cached[1] > now + TOKEN_REFRESH_MARGIN_SECONDS:
            return cached[0]
        resp = await self._http.post(
            f"{self.base_url}/open-apis/auth/v3/{kind}_access_token/internal",
            json={"app_id": self.app_id, "app_secret": self.app_secret},
        )
        try:
            payload = resp.json()
        except ValueError:
            payload = None
        if not isinstance(payload, dict):
            raise LarkApiError(
                f"Invalid response from Lark {kind} auth: {resp.text[:100]}", status_code=resp.status_code
            )
        if resp.status_code != 200 or payload.get("code") != 0:
            raise LarkApiError(
                f"Lark {kind} auth failed: {payload.get('msg')}",
                code=payload.get("code"),
                status_code=resp.status_code,
            )
        token = payload[f"{kind}_access_token"]
        self._internal_tokens[kind] = (token, now + int(payload.get("expire", 0)))
        return token

    async def get_tenant_access_token(self) -> str:
        return await self._internal_token("tenant")

    async def get_app_access_token(self) -> str:
        return await self._internal_token("app")

    async def _user_token(self, email: str) -> str:
        token = None
        if self.token_provider is not None:
            token = await self.token_provider.get_valid_access_token(email)
        if not token:
            raise LarkAuthorizationError(f"No calendar authorization for {email}")
        return token

    async def _request(
        self,
        method: str,
        path: str,
        *,
        token: str,
        params: dict[str, Any] | None = None,
        body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        resp = await self._http.request(
            method,
            f"{self.base_url}{path}",
            params=params,
            json=body,
            headers={"Authorization": f"Bearer {token}"},
        )
        if "application/json" not in resp.headers.get("content-type", ""):
            raise LarkApiError(
                f"Invalid response from Lark API: {resp.text[:100]}", status_code=resp.status_code
            )
        try:
            envelope = LarkEnvelope.model_validate(resp.json())
        except ValueError as e:
            # Bad JSON, or JSON that is not a Lark envelope
            raise LarkApiError(
                f"Malformed response from Lark API: {resp.text[:100]}", status_code=resp.status_code
            ) from e
        if envelope.code != 0:
            logger.warning("Lark API error on %s %s: code=%s msg=%s", method, path, envelope.code, envelope.msg)
            raise LarkApiError(
                f"Lark API error: {envelope.msg}", code=envelope.code, status_code=resp.status_code
            )
        return envelope.data or {}

    # --- OAuth (user tokens) ---

    async def exchange_code(self, code: str) -> dict[str, Any]:
        return await self._request(
            "POST",
            "/open-apis/authen/v1/oidc/access_token",
            token=await self.get_app_access_token(),
            body={"grant_type": "authorization_code", "code": code},
        )

    async def refresh_user_token(self, refresh_token: str) -> dict[str, Any]:
        return await self._request(
            "POST",
            "/open-apis/authen/v1/oidc/refresh_access_token",
            token=await self.get_app_access_token(),
            body={"grant_type": "refresh_token", "refresh_token": refresh_token},
        )

    async def get_user_info(self, user_access_token: str) -> dict[str, Any]:
        return await self._request("GET", "/open-apis/authen/v1/user_info", token=user_access_token)

    async def get_primary_calendar_id(self, user_access_token: str) -> str | None:
        data = await self._request(
            "POST", "/open-apis/calendar/v4/calendars/primary", token=user_access_token
        )
        calendars = data.get("calendars") or []
        if not calendars:
            return None
        return (calendars[0].get("calendar") or {}).get("calendar_id")

    # --- calendar ---

    async def query_free_busy(
        self, calendar_id: str, start: datetime, end: datetime, *, user_email: str
    ) -> list[BusyInterval]:
        """Busy intervals in [start, end).

        Two sources are merged. The free/busy API covers every calendar the
        trainer can see, external ones included, but can miss recurring
        events. The calendar's own events cover those: recurring definitions
        are expanded through their instances.
        """
        token = await self._user_token(user_email)
        busy = await self._free_busy_periods(start, end, user_email=user_email, token=token)
        busy.extend(await self._calendar_event_periods(calendar_id, start, end, token=token))
        busy = _unique([b for b in busy if b.overlaps(start, end)])
        logger.debug("Calendar %s: %d busy periods between %s and %s", calendar_id, len(busy), start, end)
        return busy

    async def _free_busy_periods(
        self, start: datetime, end: datetime, *, user_email: str, token: str
    ) -> list[BusyInterval]:
        open_id = await self.token_provider.get_open_id(user_email) if self.token_provider else None
        if not open_id:
            logger.debug("No Lark open_id stored for %s; using calendar events only", user_email)
            return []
        try:
            data = await self._request(
                "POST",
                FREE_BUSY_PATH,
                token=token,
                params={"user_id_type": "open_id"},
                body={
                    "time_min": start.isoformat(),
                    "time_max": end.isoformat(),
                    "user_id": open_id,
                    "only_busy": True,
                    "include_external_calendar": True,
                },
            )
        except (LarkApiError, httpx.HTTPError) as e:
            logger.warning("Free/busy API failed for %s; using calendar events only: %s", user_email, e)
            return []

        busy: list[BusyInterval] = []
        for item in data.get("freebusy_list") or []:
            # Either a busy period, or a per-user entry carrying a busy_time list
            if isinstance(item, dict) and "busy_time" in item:
                periods = item["busy_time"] or []
            else:
                periods = [item]
            for period in periods:
                try:
                    parsed = LarkBusyPeriod.model_validate(period)
                except ValidationError:
                    logger.warning("Skipping malformed free/busy period for %s: %s", user_email, period)
                    continue
                busy.append(BusyInterval(start=parsed.start_time, end=parsed.end_time))
        return busy

    async def _calendar_event_periods(
        self, calendar_id: str, start: datetime, end: datetime, *, token: str
    ) -> list[BusyInterval]:
        tz = ZoneInfo(self.timezone)
        events_path = f"/open-apis/calendar/v4/calendars/{calendar_id}/events"
        busy: list[BusyInterval] = []
        for event in await self._list_events(events_path, start, end, token=token):
            if not event.recurrence:
                interval = _event_interval(event, tz)
                if interval is not None:
                    busy.append(interval)
                continue
            if event.status == "cancelled":
                continue
            try:
                instances = await self._list_events(
                    f"{events_path}/{event.event_id}/instances", start, end, token=token
                )
            except (LarkApiError, httpx.HTTPError) as e:
                logger.warning("Could not expand recurring event %s (%s): %s", event.event_id, event.recurrence, e)
                continue
            for instance in instances:
                if instance.free_busy_status is None:
                    instance = instance.model_copy(update={"free_busy_status": event.free_busy_status})
                interval = _event_interval(instance, tz)
                if interval is not None:
                    busy.append(interval)
        return busy

    async def _list_events(self, path: str, start: datetime, end: datetime, *, token: str) -> list[LarkEvent]:
        events: list[LarkEvent] = []
        page_token: str | None = None
        while True:
            params: dict[str, Any] = {
                "start_time": str(int(start.timestamp())),
                "end_time": str(int(end.timestamp())),
                "page_size": EVENTS_PAGE_SIZE,
            }
            if page_token:
                params["page_token"] = page_token
            data = await self._request("GET", path, token=token, params=params)
            events.extend(_parse_events(data.get("items") or []))
            page_token = data.get("page_token")
            if not data.get("has_more") or not page_token:
                break
        return events

    async def create_event(self, calendar_id: str, draft: CalendarEventDraft, *, user_email: str) -> str:
        token = await self._user_token(user_email)
        body: dict[str, Any] = {
            "summary": draft.title,
            "description": draft.description,
            "start_time": {"timestamp": str(int(draft.start.timestamp())), "timezone": self.timezone},
            "end_time": {"timestamp": str(int(draft.end.timestamp())), "timezone": self.timezone},
            "attendee_ability": "can_see_others",
            "free_busy_status": "busy",
        }
        if draft.location:
            body["location"] = {"name": draft.location}
        data = await self._request(
            "POST", f"/open-apis/calendar/v4/calendars/{calendar_id}/events", token=token, body=body
        )
        event_id = (data.get("event") or {}).get("event_id")
        if not event_id:
            raise LarkApiError("Lark did not return an event id")
        logger.info("Created calendar event %s in %s", event_id, calendar_id)

        if draft.attendees:
            try:
                await self._request(
                    "POST",
                    f"/open-apis/calendar/v4/calendars/{calendar_id}/events/{event_id}/attendees",
                    token=token,
                    body={
                        "attendees": [
                            {"type": "third_party", "third_party_email": email} for email in draft.attendees
                        ],
                        "need_notification": True,
                    },
                )
            except (LarkApiError, httpx.HTTPError) as e:
                logger.warning("Event %s created but attendees could not be added: %s", event_id, e)
        return event_id

    async def delete_event(self, calendar_id: str, event_id: str, *, user_email: str) -> None:
        if not event_id:
            raise LarkApiError("Invalid event ID: empty")
        token = await self._user_token(user_email)
        await self._request(
            "DELETE", f"/open-apis/calendar/v4/calendars/{calendar_id}/events/{event_id}", token=token
        )
        logger.info("Deleted calendar event %s from %s", event_id, calendar_id)

    # --- messaging ---

    async def send_message(self, email: str, text: str) -> None:
        await self._request(
            "POST",
            "/open-apis/im/v1/messages",
            token=await self.get_tenant_access_token(),
            params={"receive_id_type": "email"},
            body={"receive_id": email, "msg_type": "text", "content": json.dumps({"text": text})},
        )
