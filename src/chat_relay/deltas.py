"""Map one decoded event payload to at most one content fragment."""
from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Optional

DONE_SENTINEL = "[DONE]"


@dataclass(frozen=True)
class Delta:
    content: Optional[str] = None
    done: bool = False


NO_DELTA = Delta()
END_OF_STREAM = Delta(done=True)


def _chat_completion_content(obj: Any) -> Optional[str]:
    # {"choices": [{"delta": {"content": "..."}}]}
    choices = obj.get("choices")
    if not isinstance(choices, list) or not choices:
        return None
    first = choices[0]
    if not isinstance(first, dict):
        return None
    delta = first.get("delta")
    if not isinstance(delta, dict):
        return None
    content = delta.get("content")
    if isinstance(content, str) and content:
        return content
    return None


def extract_delta(payload: str) -> Delta:
    """Return the fragment carried by ``payload``.

    Workers-AI style events carry ``{"response": "..."}`` while OpenAI style
    events carry ``choices[0].delta.content``; both are accepted. Payloads
    that are not JSON are dropped rather than raised.
    """
    if payload == DONE_SENTINEL:
        return END_OF_STREAM
    try:
        obj = json.loads(payload)
    except ValueError:
        return NO_DELTA
    if not isinstance(obj, dict):
        return NO_DELTA

    response = obj.get("response")
    if isinstance(response, str) and response:
        return Delta(content=response)

    content = _chat_completion_content(obj)
    if content:
        return Delta(content=content)
    return NO_DELTA
