import json
import logging
from collections.abc import Iterable
from pathlib import Path

from onboarding.models.booking import BookingCategory
from onboarding.models.trainer import Trainer

logger = logging.getLogger(__name__)


def _people(entries: Iterable[dict]) -> list[Trainer]:
    people: list[Trainer] = []
    for entry in entries:
        # Entries without an email are merchant placeholders, not bookable people
        if not entry.get("email"):
            continue
        if entry.get("isActive") is False:
            continue
        people.append(Trainer.model_validate(entry))
    return people


def find_by_name(people: Iterable[Trainer], name: str) -> Trainer | None:
    """Case-insensitive exact match, then partial match ("Nezo" finds "Nezo Benardi")."""
    wanted = name.casefold()
    people = list(people)
    exact = next((t for t in people if t.name.casefold() == wanted), None)
    if exact:
        return exact
    return next(
        (t for t in people if wanted in t.name.casefold() or t.name.casefold() in wanted),
        None,
    )


class TrainerDirectory:
    """Trainers and internal installers from the JSON configuration file.

    The file is re-read on every lookup so edits are picked up without a restart.
    Installation bookings draw from the "installers" list; every other booking
    type draws from "trainers". A file without an "installers" key books
    installations with trainers.
    """

    def __init__(self, config_path: str | Path) -> None:
        self.config_path = Path(config_path)

    def _read(self) -> dict:
        if not self.config_path.exists():
            logger.warning("Trainers config not found at %s", self.config_path)
            return {}
        with self.config_path.open(encoding="utf-8") as fh:
            return json.load(fh)

    @property
    def default_calendar_id(self) -> str | None:
        return self._read().get("defaultCalendarId")

    def all(self) -> list[Trainer]:
        return _people(self._read().get("trainers", []))

    def installers(self) -> list[Trainer]:
        return _people(self._read().get("installers", []))

    def pool_for(self, category: BookingCategory | None = None) -> list[Trainer]:
        config = self._read()
        if category is BookingCategory.INSTALLATION and "installers" in config:
            return _people(config["installers"])
        return _people(config.get("trainers", []))

    def everyone(self) -> list[Trainer]:
        """Trainers then installers, each person once."""
        config = self._read()
        seen: set[str] = set()
        people: list[Trainer] = []
        for person in _people(config.get("trainers", [])) + _people(config.get("installers", [])):
            if person.identity not in seen:
                seen.add(person.identity)
                people.append(person)
        return people

    def get_by_email(self, email: str) -> Trainer | None:
        email = email.lower()
        return next((t for t in self.everyone() if t.identity == email), None)

    def get_by_name(self, name: str) -> Trainer | None:
        return find_by_name(self.all(), name)

    def calendar_id_for(self, trainer: Trainer) -> str | None:
        return trainer.calendar_id or self.default_calendar_id
