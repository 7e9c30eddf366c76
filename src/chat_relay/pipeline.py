"""One request/response turn: persist, generate, tee, stream and persist again.

The caller gets the live half of the teed inference stream right away. The
other half is decoded by a background task that appends the assistant reply
to the session log once the stream ends, whether or not anyone is still
reading the live half.
"""
from __future__ import annotations

import asyncio
import functools
import logging
from dataclasses import dataclass
from typing import AsyncIterator, List, Optional, Protocol, Sequence, Set

from .deltas import extract_delta
from .framing import iter_events
from .llm import InferenceStream
from .memory import SessionLog
from .models import ChatMessage
from .tee import TeeBranch, tee

logger = logging.getLogger(__name__)


class Inference(Protocol):
    async def stream(self, messages: Sequence[ChatMessage], *, max_tokens: Optional[int] = None) -> InferenceStream:
        ...


# -----------------------------
# Helpers
# -----------------------------
def with_system_prompt(messages: Sequence[ChatMessage], system_prompt: str) -> List[ChatMessage]:
    """Return ``messages`` with exactly one system message, placed first.

    The first existing system message wins; later ones are dropped. If there
    is none, ``system_prompt`` is prepended.
    """
    system: Optional[ChatMessage] = None
    rest: List[ChatMessage] = []
    for m in messages:
        if m.role == "system":
            if system is None:
                system = m
            continue
        rest.append(m)
    if system is None:
        system = ChatMessage(role="system", content=system_prompt)
    return [system] + rest


async def iter_fragments(chunks: AsyncIterator[bytes]) -> AsyncIterator[str]:
    """Yield content fragments decoded from a framed byte stream, in order."""
    async for payload in iter_events(chunks):
        delta = extract_delta(payload)
        if delta.done:
            # [DONE] carries no content; keep reading so the stream is drained.
            continue
        if delta.content:
            yield delta.content


@dataclass
class Turn:
    """Handle returned by :meth:`TurnPipeline.run_turn`.

    ``raw`` is the live byte stream. ``completion`` resolves to the persisted
    assistant text (``None`` when nothing was saved) once the background
    accumulator is finished; it may finish after ``raw`` is exhausted.
    """

    session_key: str
    raw: TeeBranch
    completion: "asyncio.Task[Optional[str]]"

    def fragments(self) -> AsyncIterator[str]:
        return iter_fragments(self.raw)


# -----------------------------
# Pipeline
# -----------------------------
class TurnPipeline:
    def __init__(
        self,
        session_log: SessionLog,
        inference: Inference,
        *,
        system_prompt: str,
        max_tokens: Optional[int] = None,
        turn_timeout: Optional[float] = None,
    ) -> None:
        self.session_log = session_log
        self.inference = inference
        self.system_prompt = system_prompt
        self.max_tokens = max_tokens
        self.turn_timeout = turn_timeout
        self._tasks: Set[asyncio.Task] = set()

    async def record_user_message(self, session_key: str, content: str) -> ChatMessage:
        message = ChatMessage(role="user", content=content)
        await self.session_log.append(session_key, message)
        return message

    async def canonical_history(self, session_key: str) -> List[ChatMessage]:
        return with_system_prompt(await self.session_log.get_all(session_key), self.system_prompt)

    async def run_turn(self, session_key: str, new_user_message: Optional[str] = None) -> Turn:
        """Start one turn and return its live stream and completion handle.

        Errors raised here (log read/append, inference request) happen before
        any byte is produced and are the caller's to report.
        """
        if new_user_message is not None:
            await self.record_user_message(session_key, new_user_message)

        history = await self.canonical_history(session_key)
        stream = await self.inference.stream(history, max_tokens=self.max_tokens)

        live, background, pump = tee(stream, idle_timeout=self.turn_timeout)
        self._track(pump)
        completion = self._track(asyncio.get_running_loop().create_task(
            self._accumulate_and_persist(session_key, background)
        ))
        return Turn(session_key=session_key, raw=live, completion=completion)

    async def _accumulate_and_persist(self, session_key: str, chunks: TeeBranch) -> Optional[str]:
        parts: List[str] = []
        try:
            async for fragment in iter_fragments(chunks):
                parts.append(fragment)
        except Exception as e:
            logger.error(
                "Inference stream for session %r failed after %d fragments; reply not saved: %s",
                session_key, len(parts), e,
            )
            return None

        reply = "".join(parts)
        if not reply:
            logger.info("Empty reply for session %r; nothing to persist", session_key)
            return None
        try:
            await self.session_log.append(session_key, ChatMessage(role="assistant", content=reply))
        except Exception:
            logger.exception("Error persisting assistant reply for session %r", session_key)
            return None
        logger.info("Persisted assistant reply for session %r (%d chars)", session_key, len(reply))
        return reply

    def start_turn(self, session_key: str, new_user_message: Optional[str] = None) -> "asyncio.Task[Turn]":
        """Run :meth:`run_turn` as a tracked task.

        Cancelling whoever awaits the result (through :func:`asyncio.shield`)
        leaves the turn running, so the user message always gets its reply
        persisted once it has been recorded.
        """
        task = asyncio.get_running_loop().create_task(self.run_turn(session_key, new_user_message))
        task.add_done_callback(functools.partial(self._note_start_failure, session_key))
        return self._track(task)

    def _note_start_failure(self, session_key: str, task: asyncio.Task) -> None:
        # Retrieves the exception even when nobody is left to await it.
        if not task.cancelled() and task.exception() is not None:
            logger.warning("Turn for session %r failed to start: %s", session_key, task.exception())

    def _track(self, task: asyncio.Task) -> asyncio.Task:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self, timeout: Optional[float] = None) -> bool:
        """Wait for every background task started by this pipeline.

        Returns ``False`` if tasks are still running after ``timeout`` seconds;
        they are left running, not cancelled.
        """
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while self._tasks:
            remaining = None if deadline is None else deadline - loop.time()
            if remaining is not None and remaining <= 0:
                logger.warning("%d turn task(s) still running after %.1fs", len(self._tasks), timeout)
                return False
            await asyncio.wait(list(self._tasks), timeout=remaining)
        return True
