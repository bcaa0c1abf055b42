"""Pick one trainer from the free, authorized candidates.

Policy: candidates speaking at least one requested language are preferred;
if none do, any candidate is used rather than failing the booking. Ties are
broken by email in alphabetical order so assignment is reproducible.
"""

import logging
from collections.abc import Sequence

from onboarding.models.booking import AssignmentResult
from onboarding.models.trainer import Trainer

logger = logging.getLogger(__name__)


def canonical_order(trainers: Sequence[Trainer]) -> list[Trainer]:
    return sorted(trainers, key=lambda t: (t.identity, t.name.casefold()))


class TrainerAssignmentEngine:
    def assign_trainer(
        self,
        candidate_trainers: Sequence[Trainer],
        required_languages: Sequence[str] | None = None,
    ) -> AssignmentResult:
        candidates = list(candidate_trainers)
        if not candidates:
            raise ValueError("assign_trainer needs at least one candidate trainer")
        languages = [lang for lang in (required_languages or []) if lang and lang.strip()]
        language_list = ", ".join(languages)

        if languages:
            matching = [t for t in candidates if t.speaks_any(languages)]
            if matching:
                pool = canonical_order(matching)
                chosen = pool[0]
                if len(pool) == 1:
                    reason = f"language match: {chosen.name} is the only available trainer speaking {language_list}"
                else:
                    reason = (
                        f"language match: {len(pool)} available trainers speak {language_list}; "
                        f"selected {chosen.name} (first alphabetically)"
                    )
            else:
                chosen = canonical_order(candidates)[0]
                reason = (
                    f"no language match, assigning any available trainer: nobody available speaks "
                    f"{language_list}; selected {chosen.name}"
                )
        else:
            pool = canonical_order(candidates)
            chosen = pool[0]
            if len(pool) == 1:
                reason = f"sole candidate: {chosen.name} is the only available trainer"
            else:
                reason = (
                    f"no language requirement: selected {chosen.name} from "
                    f"{len(pool)} available trainers (first alphabetically)"
                )

        logger.info("Trainer assignment: %s (%s)", chosen.name, reason)
        return AssignmentResult(assigned=chosen, reason=reason, candidates=candidates)
