"""Pydantic models shared by the HTTP routes, the pipeline and the session log."""
from __future__ import annotations

from typing import List, Literal

from pydantic import BaseModel, ConfigDict, Field

Role = Literal["system", "user", "assistant"]


class ChatMessage(BaseModel):
    """A single conversation message. Immutable once appended to a log."""

    model_config = ConfigDict(frozen=True)

    role: Role
    content: str


class ChatRequest(BaseModel):
    messages: List[ChatMessage] = Field(default_factory=list)
