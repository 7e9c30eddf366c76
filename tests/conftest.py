"""Pytest configuration and shared fixtures."""
from __future__ import annotations

import asyncio
import sys
import time
from pathlib import Path
from typing import Callable, Iterable, List, Optional

import pytest

# Ensure src/ is on the import path (for local imports without installing as package)
SRC_PATH = Path(__file__).resolve().parent.parent / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from chat_relay.llm import InferenceStream  # noqa: E402
from chat_relay.memory import DiskSessionLog  # noqa: E402


def sse(*payloads: str) -> bytes:
    """Frame payloads the way the inference service does."""
    return b"".join(f"data: {p}\n\n".encode("utf-8") for p in payloads)


class FakeInference:
    """Inference collaborator that replays canned byte chunks."""

    def __init__(
        self,
        chunks: Iterable[bytes] = (),
        *,
        delay: float = 0.0,
        error: Optional[Exception] = None,
        fail_with: Optional[Exception] = None,
    ) -> None:
        self.chunks: List[bytes] = list(chunks)
        self.delay = delay
        self.error = error
        self.fail_with = fail_with
        self.calls: List[list] = []

    async def stream(self, messages, *, max_tokens=None) -> InferenceStream:
        self.calls.append(list(messages))
        if self.error is not None:
            raise self.error
        return InferenceStream(self._chunks())

    async def _chunks(self):
        for chunk in self.chunks:
            if self.delay:
                await asyncio.sleep(self.delay)
            yield chunk
        if self.fail_with is not None:
            raise self.fail_with


def wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> bool:
    """Poll ``predicate`` while background tasks finish on the server loop."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture(scope="function")
def tmp_data_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for session logs during tests."""
    d = tmp_path / "sessions"
    d.mkdir(parents=True, exist_ok=True)
    return d


@pytest.fixture(scope="function")
def session_log(tmp_data_dir: Path) -> DiskSessionLog:
    return DiskSessionLog(str(tmp_data_dir))


@pytest.fixture(scope="function")
def clean_env(monkeypatch: pytest.MonkeyPatch):
    """Ensure tests run with a clean environment (no leftover vars)."""
    import os

    for var in list(os.environ):
        if var == "CHAT_RELAY_CONFIG" or var.startswith("CHAT_RELAY__"):
            monkeypatch.delenv(var, raising=False)
    yield
