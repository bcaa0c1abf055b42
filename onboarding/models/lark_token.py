from datetime import UTC, datetime

from sqlmodel import Field, SQLModel


def _naive_utc(dt: datetime) -> datetime:
    """For TIMESTAMP WITHOUT TIME ZONE: store as naive UTC."""
    if dt.tzinfo is not None:
        dt = dt.astimezone(UTC)
    return dt.replace(tzinfo=None)


def _utc_naive_now() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)


class LarkUserToken(SQLModel, table=True):
    """Calendar write grant for one trainer (Lark OAuth user token)."""

    __tablename__ = "lark_user_tokens"
    id: int | None = Field(default=None, primary_key=True)
    email: str = Field(unique=True, index=True)
    open_id: str | None = None
    access_token: str
    refresh_token: str | None = None
    access_expires_at: datetime
    refresh_expires_at: datetime | None = None
    calendar_id: str | None = None
    created_at: datetime = Field(default_factory=_utc_naive_now)
    updated_at: datetime = Field(default_factory=_utc_naive_now)

    def model_post_init(self, __context: object) -> None:
        """Ensure expiries are naive UTC for TIMESTAMP WITHOUT TIME ZONE."""
        if self.access_expires_at is not None:
            self.access_expires_at = _naive_utc(self.access_expires_at)
        if self.refresh_expires_at is not None:
            self.refresh_expires_at = _naive_utc(self.refresh_expires_at)

    def refresh_usable(self, now: datetime) -> bool:
        if not self.refresh_token:
            return False
        return self.refresh_expires_at is None or self.refresh_expires_at > _naive_utc(now)


class LarkUserTokenPublic(SQLModel):
    email: str
    open_id: str | None = None
    access_expires_at: datetime
    refresh_expires_at: datetime | None = None
    updated_at: datetime
