from collections.abc import Iterable

from pydantic import BaseModel, ConfigDict, Field


class Trainer(BaseModel):
    """A trainer as declared in the trainers configuration file."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    name: str
    email: str
    calendar_id: str | None = Field(default=None, alias="calendarId")
    languages: tuple[str, ...] = ()
    # Region tags the trainer travels to; empty means any region
    regions: tuple[str, ...] = Field(default=(), alias="location")

    @property
    def identity(self) -> str:
        return self.email.lower()

    def speaks_any(self, languages: Iterable[str]) -> bool:
        spoken = {lang.casefold() for lang in self.languages}
        return any(lang.casefold() in spoken for lang in languages)

    def covers(self, region: str) -> bool:
        return not self.regions or region in self.regions


class TrainerPublic(BaseModel):
    name: str
    email: str
    languages: list[str]
    regions: list[str]
    authorized: bool = False
