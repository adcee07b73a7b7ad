from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from datetime import date
from typing import Any, Dict, Mapping, Optional, Set

# Archetype pair scores. Lookups fall back to the reversed pair, then to
# DEFAULT_PERSONALITY_SCORE, so each pair only needs to appear once.
PERSONALITY_COMPATIBILITY: Dict[str, Dict[str, int]] = {
    "INFP": {"ENFJ": 95, "INFJ": 90, "ENFP": 85, "ENTP": 80, "INFP": 75},
    "ENFP": {"INFJ": 95, "INTJ": 90, "ENFP": 85, "INFP": 85, "ENTP": 80},
    "INFJ": {"ENFP": 95, "ENTP": 90, "INFP": 90, "ENFJ": 85, "INTJ": 80},
    "ENFJ": {"INFP": 95, "ISFP": 90, "ENFJ": 85, "INFJ": 85, "ENFP": 80},
    "INTJ": {"ENTP": 100, "INTJ": 75},
}

DEFAULT_PERSONALITY_SCORE = 70
NO_COMMON_INTERESTS_SCORE = 50
BASE_LIFESTYLE_SCORE = 80
MATCHING_ALCOHOL_BONUS = 10
MAX_OVERALL_SCORE = 99

PERSONALITY_WEIGHT = 0.5
INTEREST_WEIGHT = 0.3
LIFESTYLE_WEIGHT = 0.2


@dataclass(frozen=True)
class CompatibilityScore:
    overall: int
    personality: int
    interests: int
    lifestyle: int

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


def round_half_up(value: float) -> int:
    """Round .5 away from zero for positive values, as score displays expect."""
    return int(math.floor(value + 0.5))


def personality_score(type1: Optional[str], type2: Optional[str]) -> int:
    if type1 and type2:
        forward = PERSONALITY_COMPATIBILITY.get(type1, {}).get(type2)
        if forward is not None:
            return forward
        backward = PERSONALITY_COMPATIBILITY.get(type2, {}).get(type1)
        if backward is not None:
            return backward
    return DEFAULT_PERSONALITY_SCORE


def _interest_set(interests: Any) -> Set[str]:
    # Profiles are client-supplied; only a list of strings counts as interests
    if not isinstance(interests, (list, tuple)):
        return set()
    return {item for item in interests if isinstance(item, str)}


def interest_score(interests1: Any, interests2: Any) -> float:
    first = _interest_set(interests1)
    second = _interest_set(interests2)
    common = first & second
    if not common:
        return NO_COMMON_INTERESTS_SCORE
    return 100 * len(common) / max(len(first), len(second))


def lifestyle_score(lifestyle1: Optional[Mapping[str, Any]], lifestyle2: Optional[Mapping[str, Any]]) -> int:
    score = BASE_LIFESTYLE_SCORE
    alcohol1 = (lifestyle1 or {}).get("alcohol")
    alcohol2 = (lifestyle2 or {}).get("alcohol")
    if alcohol1 and alcohol2 and alcohol1 == alcohol2:
        score += MATCHING_ALCOHOL_BONUS
    return score


def calculate_compatibility(
    personality1: Mapping[str, Any],
    personality2: Mapping[str, Any],
    profile1: Mapping[str, Any],
    profile2: Mapping[str, Any],
) -> CompatibilityScore:
    """Score two users from their personality and profile records.

    The overall score is a weighted blend, rounded and capped at 99 so that no
    pairing is ever presented as perfect.
    """
    personality = personality_score(
        (personality1 or {}).get("type"), (personality2 or {}).get("type")
    )
    interests = interest_score(
        (profile1 or {}).get("interests") or (), (profile2 or {}).get("interests") or ()
    )
    lifestyle = lifestyle_score(
        (profile1 or {}).get("lifestyle"), (profile2 or {}).get("lifestyle")
    )

    blended = (
        PERSONALITY_WEIGHT * personality
        + INTEREST_WEIGHT * interests
        + LIFESTYLE_WEIGHT * lifestyle
    )
    overall = max(0, min(round_half_up(blended), MAX_OVERALL_SCORE))
    return CompatibilityScore(
        overall=overall,
        personality=round_half_up(personality),
        interests=round_half_up(interests),
        lifestyle=round_half_up(lifestyle),
    )


def calculate_age(birth_date: Optional[str], today: Optional[date] = None) -> Optional[int]:
    """Age in whole years for an ISO ``YYYY-MM-DD`` birth date, else None."""
    if not birth_date:
        return None
    try:
        born = date.fromisoformat(str(birth_date)[:10])
    except ValueError:
        return None
    today = today or date.today()
    years = today.year - born.year
    if (today.month, today.day) < (born.month, born.day):
        years -= 1
    return years if years >= 0 else None


__all__ = [
    "CompatibilityScore",
    "PERSONALITY_COMPATIBILITY",
    "calculate_age",
    "calculate_compatibility",
    "interest_score",
    "lifestyle_score",
    "personality_score",
    "round_half_up",
]
