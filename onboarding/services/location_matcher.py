"""Match a merchant's address or region tag against trainer coverage.

No geocoding happens here: addresses are mapped to a region tag by keyword.
"""

import logging
from collections.abc import Iterable

from onboarding.models.trainer import Trainer

logger = logging.getLogger(__name__)

WITHIN_KLANG_VALLEY = "Within Klang Valley"
PENANG = "Penang"
JOHOR_BAHRU = "Johor Bahru"
OUTSIDE_KLANG_VALLEY = "Outside of Klang Valley"

REGION_TAGS = (WITHIN_KLANG_VALLEY, PENANG, JOHOR_BAHRU, OUTSIDE_KLANG_VALLEY)

# Malaysian states and the spellings / cities merchants use for them
STATE_KEYWORDS: dict[str, tuple[str, ...]] = {
    "Kuala Lumpur": ("kuala lumpur", "kl", "k.l", "wilayah persekutuan kuala lumpur", "wp kuala lumpur"),
    "Selangor": (
        "selangor", "petaling jaya", "pj", "subang", "shah alam", "klang", "puchong", "ampang", "cheras",
    ),
    "Penang": ("penang", "pulau pinang", "p. pinang", "georgetown", "butterworth", "balik pulau"),
    "Johor": ("johor", "johor bahru", "jb", "j.b"),
    "Perak": ("perak", "ipoh"),
    "Kedah": ("kedah", "alor setar"),
    "Kelantan": ("kelantan", "kota bharu"),
    "Terengganu": ("terengganu", "kuala terengganu"),
    "Pahang": ("pahang", "kuantan"),
    "Negeri Sembilan": ("negeri sembilan", "n. sembilan", "seremban"),
    "Melaka": ("melaka", "malacca"),
    "Sabah": ("sabah", "kota kinabalu"),
    "Sarawak": ("sarawak", "kuching"),
    "Perlis": ("perlis", "kangar"),
    "Putrajaya": ("putrajaya", "wp putrajaya"),
    "Labuan": ("labuan", "wp labuan"),
}

KLANG_VALLEY_STATES = ("Kuala Lumpur", "Selangor", "Putrajaya")


def _mentions(address: str, keyword: str) -> bool:
    # Short abbreviations ("kl", "pj", "jb") must match a whole word
    if len(keyword) <= 3:
        words = address.replace(",", " ").replace(".", " ").split()
        return keyword.replace(".", "") in words
    return keyword in address


def extract_states(address: str | None) -> list[str]:
    if not address:
        return []
    normalized = address.lower().strip()
    return [
        state
        for state, keywords in STATE_KEYWORDS.items()
        if any(_mentions(normalized, kw) for kw in keywords)
    ]


def region_for_address(address: str | None) -> str:
    """Map an address to a region tag; unrecognised addresses default to Klang Valley."""
    states = extract_states(address)
    if not states:
        return WITHIN_KLANG_VALLEY
    if any(state in KLANG_VALLEY_STATES for state in states):
        return WITHIN_KLANG_VALLEY
    if "Penang" in states:
        return PENANG
    if "Johor" in states:
        return JOHOR_BAHRU
    return OUTSIDE_KLANG_VALLEY


def resolve_region(location: str) -> str:
    """A location filter is either a region tag already or an address."""
    for tag in REGION_TAGS:
        if location.strip().casefold() == tag.casefold():
            return tag
    return region_for_address(location)


def filter_trainers_by_location(trainers: Iterable[Trainer], location: str | None) -> list[Trainer]:
    trainers = list(trainers)
    if not location:
        return trainers
    region = resolve_region(location)
    matched = [t for t in trainers if t.covers(region)]
    logger.debug(
        "Location filter %r -> %s: %d of %d trainers cover it",
        location,
        region,
        len(matched),
        len(trainers),
    )
    return matched
