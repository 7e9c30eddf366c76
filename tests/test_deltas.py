from __future__ import annotations

import pytest

from chat_relay.deltas import END_OF_STREAM, NO_DELTA, Delta, extract_delta


def test_done_sentinel_ends_stream_without_content():
    assert extract_delta("[DONE]") == Delta(content=None, done=True)
    assert extract_delta("[DONE]") is END_OF_STREAM


def test_response_field():
    assert extract_delta('{"response": "Hel"}') == Delta(content="Hel")


def test_chat_completion_delta():
    payload = '{"choices": [{"delta": {"content": "lo"}, "index": 0}]}'
    assert extract_delta(payload) == Delta(content="lo")


def test_empty_response_falls_back_to_choices():
    payload = '{"response": "", "choices": [{"delta": {"content": "x"}}]}'
    assert extract_delta(payload).content == "x"


@pytest.mark.parametrize(
    "payload",
    [
        "not json",
        '{"response": ',
        "42",
        '["response"]',
        '{"response": 5}',
        '{"choices": []}',
        '{"choices": [{"delta": {}}]}',
        '{"choices": [{"delta": {"role": "assistant", "content": ""}}]}',
        '{"usage": {"total_tokens": 3}}',
    ],
)
def test_events_without_content_are_dropped(payload):
    assert extract_delta(payload) == NO_DELTA


def test_extraction_is_idempotent():
    payload = '{"response": "same"}'
    assert extract_delta(payload) == extract_delta(payload)
