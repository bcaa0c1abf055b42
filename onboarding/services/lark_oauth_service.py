import base64
import logging
from collections.abc import Iterable
from datetime import UTC, datetime, timedelta
from urllib.parse import urlencode

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from onboarding.core.errors import LarkApiError
from onboarding.models.lark_token import LarkUserToken
from onboarding.models.trainer import Trainer
from onboarding.services.lark_client import LarkClient

logger = logging.getLogger(__name__)

AUTHORIZE_PATH = "/open-apis/authen/v1/authorize"
CALENDAR_SCOPES = "calendar:calendar calendar:calendar.event:create calendar:calendar.event:delete offline_access"
# Refresh user tokens that expire within this window
ACCESS_TOKEN_MARGIN = timedelta(seconds=60)


def _utc_naive() -> datetime:
    """Naive UTC datetime for DB columns that are TIMESTAMP WITHOUT TIME ZONE."""
    return datetime.now(UTC).replace(tzinfo=None)


def encode_state(email: str) -> str:
    return base64.urlsafe_b64encode(email.lower().encode()).decode().rstrip("=")


def decode_state(state: str | None) -> str | None:
    if not state:
        return None
    try:
        padded = state + "=" * (-len(state) % 4)
        return base64.urlsafe_b64decode(padded).decode()
    except (ValueError, UnicodeDecodeError):
        return None


class LarkOAuthService:
    """Per-trainer calendar grants: authorize, exchange, refresh, revoke."""

    def __init__(
        self,
        client: LarkClient,
        session_maker: async_sessionmaker[AsyncSession],
        *,
        redirect_uri: str = "",
    ) -> None:
        self.client = client
        self.session_maker = session_maker
        self.redirect_uri = redirect_uri

    def get_authorization_url(self, trainer_email: str) -> str:
        params = {
            "app_id": self.client.app_id,
            "redirect_uri": self.redirect_uri,
            "scope": CALENDAR_SCOPES,
            "state": encode_state(trainer_email),
        }
        return f"{self.client.base_url}{AUTHORIZE_PATH}?{urlencode(params)}"

    async def _get_row(self, session: AsyncSession, email: str) -> LarkUserToken | None:
        result = await session.execute(select(LarkUserToken).where(LarkUserToken.email == email.lower()))
        return result.scalar_one_or_none()

    @staticmethod
    def _apply_token_payload(row: LarkUserToken, payload: dict, now: datetime) -> None:
        row.access_token = payload["access_token"]
        row.access_expires_at = now + timedelta(seconds=int(payload.get("expires_in", 0)))
        if payload.get("refresh_token"):
            row.refresh_token = payload["refresh_token"]
        if payload.get("refresh_expires_in"):
            row.refresh_expires_at = now + timedelta(seconds=int(payload["refresh_expires_in"]))
        row.updated_at = now

    async def handle_callback(self, code: str, state: str | None) -> LarkUserToken:
        """Exchange the authorization code and store the trainer's grant."""
        tokens = await self.client.exchange_code(code)
        access_token = tokens.get("access_token")
        if not access_token:
            raise LarkApiError("No access token from Lark")
        info = await self.client.get_user_info(access_token)
        email = (info.get("email") or info.get("enterprise_email") or decode_state(state) or "").lower()
        if not email:
            raise LarkApiError("Lark account has no email")
        try:
            calendar_id = await self.client.get_primary_calendar_id(access_token)
        except LarkApiError as e:
            logger.warning("Could not resolve primary calendar for %s: %s", email, e)
            calendar_id = None

        now = _utc_naive()
        async with self.session_maker() as session:
            row = await self._get_row(session, email)
            if row is None:
                row = LarkUserToken(email=email, access_token=access_token, access_expires_at=now)
            row.open_id = info.get("open_id") or row.open_id
            row.calendar_id = calendar_id or row.calendar_id
            self._apply_token_payload(row, tokens, now)
            session.add(row)
            await session.commit()
            await session.refresh(row)
        logger.info("Stored Lark calendar authorization for %s", email)
        return row

    async def is_authorized(self, email: str) -> bool:
        async with self.session_maker() as session:
            row = await self._get_row(session, email)
        if row is None:
            return False
        now = _utc_naive()
        return row.access_expires_at > now or row.refresh_usable(now)

    async def authorization_status(self, trainers: Iterable[Trainer]) -> dict[str, bool]:
        return {t.email: await self.is_authorized(t.email) for t in trainers}

    async def get_valid_access_token(self, email: str) -> str | None:
        now = _utc_naive()
        async with self.session_maker() as session:
            row = await self._get_row(session, email)
            if row is None:
                return None
            if row.access_expires_at > now + ACCESS_TOKEN_MARGIN:
                return row.access_token
            if not row.refresh_usable(now):
                logger.warning("Lark authorization for %s expired; trainer must re-authorize", email)
                return None
            try:
                payload = await self.client.refresh_user_token(row.refresh_token)
            except LarkApiError as e:
                logger.warning("Refreshing Lark token for %s failed: %s", email, e)
                row.refresh_token = None
                session.add(row)
                await session.commit()
                return None
            self._apply_token_payload(row, payload, now)
            session.add(row)
            await session.commit()
            return row.access_token

    async def get_open_id(self, email: str) -> str | None:
        async with self.session_maker() as session:
            row = await self._get_row(session, email)
        return row.open_id if row else None

    async def revoke(self, email: str) -> bool:
        async with self.session_maker() as session:
            result = await session.execute(delete(LarkUserToken).where(LarkUserToken.email == email.lower()))
            await session.commit()
        revoked = bool(result.rowcount)
        if revoked:
            logger.info("Revoked Lark calendar authorization for %s", email)
        return revoked
