from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import Field

from chat_memory.schemas.common import APIModel


class ChatRequest(APIModel):
    """Payload for one chat turn."""

    message: str = Field(min_length=1)
    stream: Optional[bool] = Field(default=None)


class TurnOut(APIModel):
    """A conversation turn as exposed over HTTP."""

    turn_id: str
    role: str
    content: str
    seq: int
    timestamp: datetime
    truncated: bool = False


class MemoryFragmentOut(APIModel):
    source_turn_id: str
    role: str
    content: str
    similarity_score: float


class ChatResponse(APIModel):
    """Result of a non-streamed chat turn."""

    conversation_id: str
    reply: str
    turn_id: str
    memory: list[MemoryFragmentOut] = Field(default_factory=list)
    degraded: bool = False
    states: list[str] = Field(default_factory=list)
    token_in: Optional[int] = Field(default=None)
    token_out: Optional[int] = Field(default=None)


class HistoryResponse(APIModel):
    conversation_id: str
    turns: list[TurnOut] = Field(default_factory=list)


class ForgetResponse(APIModel):
    conversation_id: str
    deleted_turns: int
    deleted_records: int
