from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from conftest import sse
from chat_relay.llm import GenerationConfig, InferenceClient, InferenceError
from chat_relay.models import ChatMessage

HISTORY = [ChatMessage(role="system", content="s"), ChatMessage(role="user", content="Hi")]


def _client(handler) -> InferenceClient:
    transport = httpx.MockTransport(handler)
    return InferenceClient(
        "https://inference.test/v1/chat/completions",
        generation=GenerationConfig(model="m", max_tokens=64, temperature=0.2),
        client=httpx.AsyncClient(transport=transport),
    )


def test_stream_posts_history_and_yields_bytes():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, content=sse('{"response":"ok"}', "[DONE]"))

    async def scenario():
        client = _client(handler)
        stream = await client.stream(HISTORY)
        body = b"".join([chunk async for chunk in stream])
        await stream.aclose()
        await client.aclose()
        return body

    body = asyncio.run(scenario())
    assert body == sse('{"response":"ok"}', "[DONE]")
    assert seen["body"] == {
        "model": "m",
        "messages": [{"role": "system", "content": "s"}, {"role": "user", "content": "Hi"}],
        "max_tokens": 64,
        "temperature": 0.2,
        "stream": True,
    }


def test_error_status_raises_before_streaming():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, text="overloaded")

    async def scenario():
        client = _client(handler)
        try:
            await client.stream(HISTORY, max_tokens=8)
        finally:
            await client.aclose()

    with pytest.raises(InferenceError, match="503"):
        asyncio.run(scenario())


def test_transport_error_raises_inference_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    async def scenario():
        client = _client(handler)
        try:
            await client.stream(HISTORY)
        finally:
            await client.aclose()

    with pytest.raises(InferenceError, match="refused"):
        asyncio.run(scenario())
