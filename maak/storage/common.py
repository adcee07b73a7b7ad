"""Shared contract and helpers for the key-value backends."""

from __future__ import annotations

import json
from typing import Any, Dict, Optional, Protocol

from maak.storage.errors import StoreUnavailable


class KVStore(Protocol):
    """Minimal async key-value contract used by every domain service."""

    async def get(self, key: str) -> Optional[Any]: ...

    async def set(self, key: str, value: Any) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def get_by_prefix(self, prefix: str) -> Dict[str, Any]: ...


def encode_value(value: Any) -> str:
    try:
        return json.dumps(value, default=str)
    except (TypeError, ValueError) as exc:
        raise StoreUnavailable("value is not JSON serialisable", {"error": str(exc)}) from exc


def decode_value(raw: Optional[str]) -> Optional[Any]:
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        raise StoreUnavailable("stored value is not valid JSON", {"error": str(exc)}) from exc


__all__ = ["KVStore", "encode_value", "decode_value"]
