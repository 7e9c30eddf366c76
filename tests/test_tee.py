from __future__ import annotations

import asyncio

import pytest

from chat_relay.llm import InferenceError, TurnTimeout
from chat_relay.tee import tee


class Source:
    def __init__(self, chunks, *, delay=0.0, fail_with=None):
        self.chunks = list(chunks)
        self.delay = delay
        self.fail_with = fail_with
        self.closed = False

    def __aiter__(self):
        return self

    async def __anext__(self):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.chunks:
            return self.chunks.pop(0)
        if self.fail_with is not None:
            raise self.fail_with
        raise StopAsyncIteration

    async def aclose(self):
        self.closed = True


async def _collect(branch):
    return [chunk async for chunk in branch]


def test_both_branches_see_the_same_bytes_in_order():
    async def scenario():
        source = Source([b"a", b"b", b"c"])
        live, background, pump = tee(source)
        got = await asyncio.gather(_collect(live), _collect(background))
        await pump
        return got, source.closed

    (live, background), closed = asyncio.run(scenario())
    assert live == background == [b"a", b"b", b"c"]
    assert closed


def test_unread_branch_does_not_block_the_other():
    async def scenario():
        live, background, pump = tee(Source([b"x"] * 100))
        got = await asyncio.wait_for(_collect(live), timeout=1.0)
        await pump
        # The background branch buffered everything and can still be read.
        return got, await _collect(background)

    live, background = asyncio.run(scenario())
    assert len(live) == len(background) == 100


def test_upstream_error_reaches_both_branches():
    async def scenario():
        live, background, _ = tee(Source([b"a"], fail_with=InferenceError("boom")))
        results = []
        for branch in (live, background):
            seen = []
            with pytest.raises(InferenceError, match="boom"):
                async for chunk in branch:
                    seen.append(chunk)
            results.append(seen)
        return results

    assert asyncio.run(scenario()) == [[b"a"], [b"a"]]


def test_idle_timeout_aborts_a_stalled_stream():
    async def scenario():
        source = Source([b"a", b"b"], delay=0.2)
        live, background, pump = tee(source, idle_timeout=0.05)
        with pytest.raises(TurnTimeout):
            await _collect(live)
        with pytest.raises(TurnTimeout):
            await _collect(background)
        await pump
        return source.closed

    assert asyncio.run(scenario())
