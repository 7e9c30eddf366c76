"""Disk-based per-session message log keyed by session id (thread-safe, atomic)."""
from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import os
import re
import tempfile
import threading
from pathlib import Path
from typing import Any, List, Protocol

from pydantic import ValidationError

from .models import ChatMessage

logger = logging.getLogger(__name__)


# -----------------------------
# Helpers
# -----------------------------
def _safe_key(name: str) -> str:
    # Readable prefix plus a digest of the exact key, so distinct keys never share a file.
    prefix = re.sub(r"[^\w.\-@]+", "_", name)[:64].strip("._") or "session"
    digest = hashlib.sha256(name.encode("utf-8")).hexdigest()[:16]
    return f"{prefix}-{digest}"


def _atomic_write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile("w", encoding="utf-8", delete=False, dir=str(path.parent)) as tmp:
        tmp.write(text)
        tmp.flush()
        os.fsync(tmp.fileno())
        tmp_name = tmp.name
    os.replace(tmp_name, path)


class SessionLog(Protocol):
    """Ordered, append-only message log per session key."""

    async def get_all(self, session_key: str) -> List[ChatMessage]:
        ...

    async def append(self, session_key: str, message: ChatMessage) -> None:
        ...

    async def clear(self, session_key: str) -> None:
        ...


# -----------------------------
# DiskSessionLog
# -----------------------------
class DiskSessionLog:
    """JSON-file session log.

    Layout:
        data_dir/
          <prefix>-<sha256[:16]>.json    # list[{"role": ..., "content": ...}]

    ``append`` reads, extends and rewrites the file under one lock, so
    concurrent turns on the same key never lose each other's messages.
    Blocking file I/O runs in a worker thread.
    """

    def __init__(self, data_dir: str) -> None:
        self.root = Path(data_dir)
        self.root.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()

    def _path(self, session_key: str) -> Path:
        return self.root / f"{_safe_key(session_key)}.json"

    # --------- async API ----------
    async def get_all(self, session_key: str) -> List[ChatMessage]:
        return await asyncio.to_thread(self.load, session_key)

    async def append(self, session_key: str, message: ChatMessage) -> None:
        await asyncio.to_thread(self._append_sync, session_key, message)

    async def clear(self, session_key: str) -> None:
        await asyncio.to_thread(self._clear_sync, session_key)

    # --------- sync internals ----------
    def load(self, session_key: str) -> List[ChatMessage]:
        """Load the full message list for a session (empty if missing)."""
        with self._lock:
            return self._parse_rows(session_key, self._read_rows(session_key))

    def _read_rows(self, session_key: str) -> List[Any]:
        path = self._path(session_key)
        if not path.exists():
            return []
        try:
            with path.open("r", encoding="utf-8") as f:
                rows = json.load(f)
        except (OSError, ValueError) as e:
            # Corruption fallback: keep a backup and start fresh.
            bad = path.with_suffix(".corrupt.json")
            logger.warning("Session log %s unreadable (%s); moving it to %s", path, e, bad)
            path.replace(bad)
            return []
        if not isinstance(rows, list):
            logger.warning("Session log %s is not a list; ignoring its contents", path)
            return []
        return rows

    def _parse_rows(self, session_key: str, rows: List[Any]) -> List[ChatMessage]:
        out: List[ChatMessage] = []
        for i, row in enumerate(rows):
            try:
                out.append(ChatMessage.model_validate(row))
            except ValidationError:
                logger.warning("Skipping malformed row %d in session %r", i, session_key)
        return out

    def _append_sync(self, session_key: str, message: ChatMessage) -> None:
        if not isinstance(message, ChatMessage):
            raise TypeError("message must be a ChatMessage")
        with self._lock:
            rows = self._read_rows(session_key)
            rows.append(message.model_dump())
            _atomic_write_text(self._path(session_key), json.dumps(rows, ensure_ascii=False, indent=2))

    def _clear_sync(self, session_key: str) -> None:
        with self._lock:
            self._path(session_key).unlink(missing_ok=True)
