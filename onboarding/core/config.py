from datetime import time
from pathlib import Path

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Resolve .env from project root so it loads regardless of cwd
_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
_ENV_FILE = _PROJECT_ROOT / ".env"

DEFAULT_SLOT_GRID = "09:00-11:00,11:00-13:00,14:00-16:00,15:00-17:00,16:00-18:00"


def parse_slot_grid(raw: str) -> list[tuple[time, time]]:
    """Parse "HH:MM-HH:MM,HH:MM-HH:MM" into (start, end) pairs."""
    windows: list[tuple[time, time]] = []
    for chunk in raw.split(","):
        chunk = chunk.strip()
        if not chunk:
            continue
        start_str, sep, end_str = chunk.partition("-")
        if not sep:
            raise ValueError(f"Slot window {chunk!r} must look like HH:MM-HH:MM")
        start = time.fromisoformat(start_str.strip())
        end = time.fromisoformat(end_str.strip())
        if start >= end:
            raise ValueError(f"Slot window {chunk!r} must start before it ends")
        windows.append((start, end))
    if not windows:
        raise ValueError("Slot grid must contain at least one window")
    return windows


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=(str(_ENV_FILE), ".env", "../.env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Database (trainer calendar credentials)
    database_url: str = "sqlite+aiosqlite:///./onboarding.db"

    # CORS
    cors_origins: str = "http://localhost:3000"

    # Lark (calendar + messaging)
    lark_base_url: str = "https://open.larksuite.com"
    lark_app_id: str = ""
    lark_app_secret: str = ""
    lark_redirect_uri: str = ""
    lark_calendar_timezone: str = "Asia/Singapore"

    # Salesforce (CRM)
    salesforce_instance_url: str = ""
    salesforce_client_id: str = ""
    salesforce_client_secret: str = ""
    salesforce_username: str = ""
    salesforce_password: str = ""
    salesforce_api_version: str = "v59.0"

    # Scheduling rules
    business_timezone: str = "Asia/Singapore"
    slot_grid: str = DEFAULT_SLOT_GRID
    availability_horizon_days: int = 30
    trainers_config_path: str = str(_PROJECT_ROOT / "config" / "trainers.json")

    # Notifications (Lark IM). Disable to skip sending entirely.
    notifications_enabled: bool = True

    # Env
    env: str = "development"

    @field_validator("slot_grid")
    @classmethod
    def _validate_slot_grid(cls, value: str) -> str:
        parse_slot_grid(value)
        return value

    @property
    def cors_origins_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    @property
    def slot_windows(self) -> list[tuple[time, time]]:
        return parse_slot_grid(self.slot_grid)

    @property
    def lark_enabled(self) -> bool:
        return bool(self.lark_app_id and self.lark_app_secret)

    @property
    def salesforce_enabled(self) -> bool:
        return bool(
            self.salesforce_instance_url
            and self.salesforce_client_id
            and self.salesforce_username
        )


settings = Settings()
