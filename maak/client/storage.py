"""Durable client-side slot holding the demo session backup."""

from __future__ import annotations

import os
import tempfile
import threading
from pathlib import Path
from typing import Optional, Protocol

from maak.logging import get_logger
from maak.storage.models import StoredSession

logger = get_logger(__name__)

SESSION_SLOT = "demo-session"


class SessionStore(Protocol):
    def load(self) -> Optional[str]: ...

    def save(self, session: StoredSession) -> None: ...

    def delete(self) -> None: ...


class MemorySessionStore:
    def __init__(self, raw: Optional[str] = None) -> None:
        self._raw = raw
        self._lock = threading.Lock()

    def load(self) -> Optional[str]:
        with self._lock:
            return self._raw

    def save(self, session: StoredSession) -> None:
        with self._lock:
            self._raw = session.to_json()

    def write_raw(self, raw: Optional[str]) -> None:
        with self._lock:
            self._raw = raw

    def delete(self) -> None:
        with self._lock:
            self._raw = None


class FileSessionStore:
    """One JSON file per slot, written atomically with owner-only permissions."""

    def __init__(self, root: str | Path, slot: str = SESSION_SLOT) -> None:
        self.root = Path(root).expanduser()
        self.path = self.root / f"{slot}.json"

    def load(self) -> Optional[str]:
        try:
            return self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            logger.warning("session_backup_read_failed", path=str(self.path), error=str(exc))
            return None

    def save(self, session: StoredSession) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=str(self.root), prefix=".session_", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(session.to_json())
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, self.path)
        except OSError:
            Path(tmp_path).unlink(missing_ok=True)
            raise

    def delete(self) -> None:
        self.path.unlink(missing_ok=True)


__all__ = ["SessionStore", "MemorySessionStore", "FileSessionStore", "SESSION_SLOT"]
