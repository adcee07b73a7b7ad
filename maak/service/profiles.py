from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List

from maak.logging import get_logger
from maak.service.compatibility import (
    CompatibilityScore,
    calculate_age,
    calculate_compatibility,
)
from maak.service.errors import BadRequestError, NotFoundError
from maak.storage.common import KVStore

logger = get_logger(__name__)

PROFILE_PREFIX = "profile:"
PERSONALITY_PREFIX = "personality:"
MAX_MATCHES = 10
DEFAULT_BIO = "Ny användare på MÄÄK"


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class ProfileService:
    """Profiles, personality results and the matches computed from them."""

    def __init__(self, store: KVStore) -> None:
        self.store = store

    async def save_profile(self, user_id: str, profile: Dict[str, Any]) -> Dict[str, Any]:
        record = {**profile, "userId": user_id, "updatedAt": _utcnow_iso()}
        await self.store.set(f"{PROFILE_PREFIX}{user_id}", record)
        logger.info("profile_saved", user_id=user_id, fields=sorted(profile.keys()))
        return record

    async def get_profile(self, user_id: str) -> Dict[str, Any]:
        profile = await self.store.get(f"{PROFILE_PREFIX}{user_id}")
        if not profile:
            raise NotFoundError("Profile not found")
        return profile

    async def save_personality(self, user_id: str, personality: Dict[str, Any]) -> Dict[str, Any]:
        record = {**personality, "userId": user_id, "completedAt": _utcnow_iso()}
        await self.store.set(f"{PERSONALITY_PREFIX}{user_id}", record)
        logger.info("personality_saved", user_id=user_id, personality_type=personality.get("type"))
        return record

    async def get_personality(self, user_id: str) -> Dict[str, Any]:
        personality = await self.store.get(f"{PERSONALITY_PREFIX}{user_id}")
        if not personality:
            raise NotFoundError("Personality results not found")
        return personality

    async def find_matches(self, user_id: str, *, limit: int = MAX_MATCHES) -> List[Dict[str, Any]]:
        """Score every other user that has both a profile and a personality."""
        own_profile = await self.store.get(f"{PROFILE_PREFIX}{user_id}")
        own_personality = await self.store.get(f"{PERSONALITY_PREFIX}{user_id}")
        if not own_profile or not own_personality:
            raise BadRequestError("Profile or personality data missing")

        candidates = await self.store.get_by_prefix(PROFILE_PREFIX)
        matches: List[Dict[str, Any]] = []
        for profile in candidates.values():
            other_id = (profile or {}).get("userId")
            if not other_id or other_id == user_id:
                continue
            personality = await self.store.get(f"{PERSONALITY_PREFIX}{other_id}")
            if not personality:
                continue
            score = calculate_compatibility(own_personality, personality, own_profile, profile)
            matches.append(_match_card(other_id, profile, personality, score))

        matches.sort(key=lambda match: match["compatibilityScore"], reverse=True)
        logger.info("matches_computed", user_id=user_id, candidates=len(matches))
        return matches[:limit]


def _display_name(profile: Dict[str, Any]) -> str:
    first = profile.get("firstName") or ""
    last = profile.get("lastName") or ""
    return f"{first} {last[0]}." if last else first


def _match_card(
    user_id: str,
    profile: Dict[str, Any],
    personality: Dict[str, Any],
    score: CompatibilityScore,
) -> Dict[str, Any]:
    return {
        "id": user_id,
        "name": _display_name(profile),
        "age": calculate_age(profile.get("birthDate")),
        "location": profile.get("location"),
        "photos": profile.get("photos") or [],
        "personalityType": personality.get("type"),
        "archetype": personality.get("name"),
        "category": personality.get("category"),
        "bio": profile.get("bio") or DEFAULT_BIO,
        "interests": profile.get("interests") or [],
        "compatibilityScore": score.overall,
        "personalityMatch": score.personality,
        "interestMatch": score.interests,
        "lifestyleMatch": score.lifestyle,
    }


__all__ = ["ProfileService", "MAX_MATCHES"]
