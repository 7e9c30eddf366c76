"""Streaming client for a remote chat-completion inference service."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional, Sequence

import httpx

from .models import ChatMessage

logger = logging.getLogger(__name__)


class InferenceError(RuntimeError):
    """The inference call failed before or while producing bytes."""


class TurnTimeout(InferenceError):
    """The inference stream went silent for longer than the turn timeout."""


# -----------------------------
# Types & defaults
# -----------------------------

@dataclass
class GenerationConfig:
    model: str = "llama-3.3-70b-instruct"
    max_tokens: int = 1024
    temperature: float = 0.7


class InferenceStream:
    """Async iterator over the raw byte chunks of one streamed response."""

    def __init__(
        self,
        chunks: AsyncIterator[bytes],
        on_close: Optional[Callable[[], Awaitable[None]]] = None,
    ) -> None:
        self._chunks = chunks
        self._on_close = on_close
        self._closed = False

    def __aiter__(self) -> "InferenceStream":
        return self

    async def __anext__(self) -> bytes:
        if self._closed:
            raise StopAsyncIteration
        try:
            return await self._chunks.__anext__()
        except httpx.HTTPError as e:
            raise InferenceError(f"Inference stream failed: {e}") from e

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        aclose = getattr(self._chunks, "aclose", None)
        if aclose is not None:
            await aclose()
        if self._on_close is not None:
            await self._on_close()


# -----------------------------
# HTTP client
# -----------------------------

class InferenceClient:
    """Thin wrapper around :class:`httpx.AsyncClient` for streamed chat completions."""

    def __init__(
        self,
        base_url: str,
        *,
        api_key: Optional[str] = None,
        generation: Optional[GenerationConfig] = None,
        timeout: float = 60.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url
        self.generation = generation or GenerationConfig()
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = client or httpx.AsyncClient(
            headers=headers,
            timeout=httpx.Timeout(timeout, connect=10.0),
        )

    def _payload(self, messages: Sequence[ChatMessage], max_tokens: Optional[int]) -> Dict[str, Any]:
        return {
            "model": self.generation.model,
            "messages": [m.model_dump() for m in messages],
            "max_tokens": max_tokens or self.generation.max_tokens,
            "temperature": self.generation.temperature,
            "stream": True,
        }

    async def stream(
        self,
        messages: Sequence[ChatMessage],
        *,
        max_tokens: Optional[int] = None,
    ) -> InferenceStream:
        """Start a streamed completion.

        Raises :class:`InferenceError` if the request cannot be sent or the
        service answers with a non-2xx status, i.e. before any byte is handed
        to the caller.
        """
        request = self._client.build_request(
            "POST", self.base_url, json=self._payload(messages, max_tokens)
        )
        try:
            response = await self._client.send(request, stream=True)
        except httpx.HTTPError as e:
            raise InferenceError(f"Inference request failed: {e}") from e

        if response.is_error:
            body = (await response.aread())[:500].decode("utf-8", errors="replace")
            await response.aclose()
            raise InferenceError(f"Inference service returned {response.status_code}: {body}")

        logger.debug("Inference stream opened (%d messages)", len(messages))
        return InferenceStream(response.aiter_raw(), on_close=response.aclose)

    async def aclose(self) -> None:
        await self._client.aclose()


# -----------------------------
# Convenience factory
# -----------------------------

def create_from_config(cfg: Dict[str, Any]) -> InferenceClient:
    """Create an InferenceClient from a config dict (e.g., loaded YAML)."""
    inf_cfg = (cfg or {}).get("inference", {}) if isinstance(cfg, dict) else {}
    base_url = inf_cfg.get("base_url")
    if not base_url:
        raise ValueError("No inference.base_url configured.")

    api_key = inf_cfg.get("api_key")
    if not api_key and inf_cfg.get("api_key_env"):
        api_key = os.environ.get(str(inf_cfg["api_key_env"]))

    generation = GenerationConfig(
        model=str(inf_cfg.get("model", GenerationConfig.model)),
        max_tokens=int(inf_cfg.get("max_tokens", GenerationConfig.max_tokens)),
        temperature=float(inf_cfg.get("temperature", GenerationConfig.temperature)),
    )
    return InferenceClient(
        str(base_url),
        api_key=api_key,
        generation=generation,
        timeout=float(inf_cfg.get("timeout", 60.0)),
    )
