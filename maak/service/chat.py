from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List

from maak.logging import get_logger
from maak.service.errors import BadRequestError
from maak.storage.common import KVStore

logger = get_logger(__name__)


def conversation_key(user_a: str, user_b: str) -> str:
    """Key shared by both participants, independent of who is sending."""
    first, second = sorted((user_a, user_b))
    return f"chat:{first}:{second}"


class ChatService:
    def __init__(self, store: KVStore) -> None:
        self.store = store

    async def send_message(
        self, sender_id: str, recipient_id: str, message: str, message_type: str = "text"
    ) -> Dict[str, Any]:
        if not recipient_id or not message:
            raise BadRequestError("Missing recipient or message")
        now = datetime.now(timezone.utc).isoformat()
        chat_message = {
            "id": str(uuid.uuid4()),
            "senderId": sender_id,
            "recipientId": recipient_id,
            "message": message,
            "type": message_type or "text",
            "timestamp": now,
            "status": "sent",
        }
        key = conversation_key(sender_id, recipient_id)
        conversation = await self.store.get(key) or {"messages": []}
        conversation.setdefault("messages", []).append(chat_message)
        conversation["lastMessage"] = chat_message
        conversation["updatedAt"] = now
        await self.store.set(key, conversation)
        logger.info("chat_message_stored", sender_id=sender_id, recipient_id=recipient_id)
        return chat_message

    async def history(self, user_id: str, other_id: str) -> List[Dict[str, Any]]:
        conversation = await self.store.get(conversation_key(user_id, other_id)) or {}
        return conversation.get("messages") or []


__all__ = ["ChatService", "conversation_key"]
