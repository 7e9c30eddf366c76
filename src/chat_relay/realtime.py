"""WebSocket session controller for realtime text turns and audio uploads.

Inbound frames:
    binary                               raw audio chunk, buffered
    {"type": "user_message", "content"}  start a text turn
    {"type": "audio_end"}                close the utterance and start a turn

Outbound frames:
    {"type": "delta", "content"}  one generated fragment
    {"type": "done"}              reply finished
    {"type": "transcript", "content"}
    {"type": "error", "message"}

Each turn ends with exactly one ``done`` or ``error`` frame. At most one turn
runs per connection; the receive loop keeps buffering audio meanwhile.
"""
from __future__ import annotations

import asyncio
import contextlib
import enum
import json
import logging
from typing import Any, Dict, List, Optional

from fastapi import WebSocket
from starlette.websockets import WebSocketDisconnect

from .pipeline import Turn, TurnPipeline

logger = logging.getLogger(__name__)


class ConnectionState(str, enum.Enum):
    IDLE = "idle"
    AWAITING_REPLY = "awaiting_reply"


def audio_placeholder(size: int) -> str:
    # Speech-to-text is not wired in yet; report the utterance size instead.
    return f"[Audio received {size} bytes] (transcription not configured)"


class RealtimeSession:
    """Own one websocket connection for its whole lifetime."""

    def __init__(self, websocket: WebSocket, pipeline: TurnPipeline, session_key: str) -> None:
        self.websocket = websocket
        self.pipeline = pipeline
        self.session_key = session_key
        self.state = ConnectionState.IDLE
        self.audio_chunks: List[bytes] = []
        self._turn_task: Optional[asyncio.Task] = None

    async def run(self) -> None:
        """Receive frames until the client disconnects."""
        try:
            while True:
                message = await self.websocket.receive()
                if message.get("type") == "websocket.disconnect":
                    break
                if message.get("bytes") is not None:
                    self.audio_chunks.append(bytes(message["bytes"]))
                elif message.get("text") is not None:
                    self.handle_text(message["text"])
        except WebSocketDisconnect:
            pass
        finally:
            await self.close()

    def handle_text(self, raw: str) -> None:
        try:
            frame = json.loads(raw)
        except ValueError:
            logger.debug("Ignoring non-JSON frame on session %r", self.session_key)
            return
        if not isinstance(frame, dict):
            return

        kind = frame.get("type")
        if kind == "user_message":
            content = frame.get("content")
            if not isinstance(content, str) or not content.strip():
                logger.debug("Ignoring user_message without content on session %r", self.session_key)
                return
            if self._begin_turn():
                self._start_text_turn(content)
        elif kind == "audio_end":
            if self._begin_turn():
                self._start_audio_turn(self.take_audio())
        else:
            logger.debug("Ignoring frame of type %r on session %r", kind, self.session_key)

    def take_audio(self) -> bytes:
        """Concatenate and clear the buffered audio chunks, in arrival order."""
        blob = b"".join(self.audio_chunks)
        self.audio_chunks.clear()
        return blob

    async def close(self) -> None:
        task = self._turn_task
        if task is not None and not task.done():
            # Stops forwarding only; the turn itself is owned by the pipeline.
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self.audio_chunks.clear()
        self.state = ConnectionState.IDLE

    # --------- turns ----------
    def _begin_turn(self) -> bool:
        if self.state is ConnectionState.AWAITING_REPLY:
            logger.warning("Turn already in progress on session %r; ignoring trigger", self.session_key)
            return False
        self.state = ConnectionState.AWAITING_REPLY
        return True

    def _start_text_turn(self, content: str) -> None:
        started = self.pipeline.start_turn(self.session_key, content)
        self._turn_task = asyncio.get_running_loop().create_task(self._forward(started))

    def _start_audio_turn(self, blob: bytes) -> None:
        logger.info("Received audio %d bytes for session %r", len(blob), self.session_key)
        transcript = audio_placeholder(len(blob))
        started = self.pipeline.start_turn(self.session_key, transcript)
        self._turn_task = asyncio.get_running_loop().create_task(self._forward(started, transcript))

    async def _forward(self, started: "asyncio.Task[Turn]", transcript: Optional[str] = None) -> None:
        """Relay one turn to the client; cancelling this never cancels ``started``."""
        try:
            if transcript is not None:
                await self._send({"type": "transcript", "content": transcript})
            turn = await asyncio.shield(started)
            async for fragment in turn.fragments():
                await self._send({"type": "delta", "content": fragment})
            await asyncio.shield(turn.completion)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Realtime turn failed on session %r", self.session_key)
            final: Dict[str, Any] = {"type": "error", "message": str(e)}
        else:
            final = {"type": "done"}
        finally:
            self.state = ConnectionState.IDLE
        # Idle before the client hears about it, so its next trigger is accepted.
        await self._send_quietly(final)

    # --------- sending ----------
    async def _send(self, payload: Dict[str, Any]) -> None:
        await self.websocket.send_text(json.dumps(payload))

    async def _send_quietly(self, payload: Dict[str, Any]) -> None:
        try:
            await self._send(payload)
        except Exception as e:
            logger.debug("Could not notify session %r: %s", self.session_key, e)
