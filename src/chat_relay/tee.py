"""Duplicate one async byte stream into two independently consumed branches."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Optional, Tuple

from .llm import InferenceError, TurnTimeout

logger = logging.getLogger(__name__)

_END = object()


class TeeBranch:
    """One consumer's view of a teed stream.

    Items are buffered in an unbounded queue, so a branch that is read slowly
    (or never) does not hold back the pump or the other branch.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._queue: "asyncio.Queue[Any]" = asyncio.Queue()
        self._finished = False

    def _put(self, item: Any) -> None:
        self._queue.put_nowait(item)

    def __aiter__(self) -> "TeeBranch":
        return self

    async def __anext__(self) -> bytes:
        if self._finished:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _END:
            self._finished = True
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            self._finished = True
            raise item
        return item


async def _next_chunk(source: AsyncIterator[bytes], idle_timeout: Optional[float]) -> bytes:
    if not idle_timeout:
        return await source.__anext__()
    try:
        return await asyncio.wait_for(source.__anext__(), idle_timeout)
    except asyncio.TimeoutError:
        raise TurnTimeout(f"No inference output for {idle_timeout:g}s") from None


async def _pump(source: AsyncIterator[bytes], branches: Tuple[TeeBranch, ...], idle_timeout: Optional[float]) -> None:
    outcome: Any = _END
    try:
        while True:
            try:
                chunk = await _next_chunk(source, idle_timeout)
            except StopAsyncIteration:
                break
            for branch in branches:
                branch._put(chunk)
    except asyncio.CancelledError:
        outcome = InferenceError("Inference stream cancelled")
        raise
    except Exception as e:
        outcome = e
    finally:
        for branch in branches:
            branch._put(outcome)
        aclose = getattr(source, "aclose", None)
        if aclose is not None:
            try:
                await aclose()
            except Exception:
                logger.warning("Error closing inference stream", exc_info=True)


def tee(
    source: AsyncIterator[bytes],
    *,
    idle_timeout: Optional[float] = None,
) -> Tuple[TeeBranch, TeeBranch, "asyncio.Task[None]"]:
    """Split ``source`` into a live branch and a background branch.

    A single pump task reads ``source`` and hands every chunk to both
    branches in order. End of stream and upstream errors (including
    :class:`TurnTimeout` when ``idle_timeout`` elapses between chunks) are
    delivered to both branches. Must be called from a running event loop.
    """
    live = TeeBranch("live")
    background = TeeBranch("background")
    task = asyncio.get_running_loop().create_task(_pump(source, (live, background), idle_timeout))
    return live, background, task
