from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Dict

from maak.logging import get_logger
from maak.service.errors import ForbiddenError, NotFoundError
from maak.storage.common import KVStore

logger = get_logger(__name__)

CONSENT_VERSION = "1.0"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class PrivacyService:
    """Consent records, data subject requests and consent-gated analytics."""

    def __init__(self, store: KVStore) -> None:
        self.store = store

    async def update_consent(self, user_id: str, consent: Dict[str, Any]) -> Dict[str, Any]:
        record = {**consent, "userId": user_id, "timestamp": _now(), "version": CONSENT_VERSION}
        await self.store.set(f"consent:{user_id}", record)
        logger.info("consent_updated", user_id=user_id, analytics=bool(consent.get("analytics")))
        return record

    async def get_consent(self, user_id: str) -> Dict[str, Any]:
        consent = await self.store.get(f"consent:{user_id}")
        if not consent:
            raise NotFoundError("No consent found")
        return consent

    async def _file_request(self, kind: str, user_id: str, payload: Dict[str, Any]) -> str:
        request_id = str(uuid.uuid4())
        await self.store.set(
            f"{kind}-request:{request_id}",
            {
                **payload,
                "userId": user_id,
                "requestId": request_id,
                "status": "pending",
                "requestedAt": _now(),
            },
        )
        logger.info("privacy_request_filed", kind=kind, user_id=user_id, request_id=request_id)
        return request_id

    async def request_export(self, user_id: str, payload: Dict[str, Any]) -> str:
        return await self._file_request("export", user_id, payload)

    async def request_deletion(self, user_id: str, payload: Dict[str, Any]) -> str:
        return await self._file_request("deletion", user_id, payload)

    async def track_event(self, user_id: str, event: Dict[str, Any]) -> str:
        """Store an analytics event; only critical events bypass consent."""
        consent = await self.store.get(f"consent:{user_id}") or {}
        if not consent.get("analytics") and not event.get("critical"):
            raise ForbiddenError("Analytics not consented")
        event_id = str(uuid.uuid4())
        await self.store.set(
            f"analytics:{event_id}",
            {**event, "userId": user_id, "eventId": event_id, "timestamp": _now()},
        )
        return event_id


__all__ = ["PrivacyService", "CONSENT_VERSION"]
