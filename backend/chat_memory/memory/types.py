from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Mapping, Optional

MEMORY_INSTRUCTION = (
    "Use the conversation memory from the MEMORY section to provide accurate answers."
)
MEMORY_DIVIDER = "---------------------"


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class MemoryPlacement(str, Enum):
    """Where retrieved memory is rendered in the outbound prompt."""

    PREPEND = "prepend"
    INLINE = "inline"


@dataclass(frozen=True)
class ConversationTurn:
    """One immutable message in a conversation log."""

    turn_id: str
    conversation_id: str
    role: Role
    content: str
    timestamp: datetime
    seq: int = 0
    truncated: bool = False


@dataclass(frozen=True)
class MemoryFragment:
    """A retrieved snippet of earlier conversation with its similarity score."""

    source_turn_id: str
    embedding_vector: tuple[float, ...]
    content: str
    similarity_score: float
    role: Role = Role.USER
    timestamp: Optional[datetime] = None
    truncated: bool = False


@dataclass(frozen=True)
class TokenBudget:
    """Maximum number of tokens injected memory may occupy."""

    max_tokens: int

    def __post_init__(self) -> None:
        if self.max_tokens <= 0:
            raise ValueError("TokenBudget.max_tokens must be > 0")


@dataclass(frozen=True)
class BasePrompt:
    """Prompt parts supplied by the caller before memory is injected."""

    system_preamble: str
    user_message: str


@dataclass(frozen=True)
class AugmentedPrompt:
    """Prompt with retrieved memory attached, built once per turn."""

    system_preamble: str
    injected_memory: tuple[MemoryFragment, ...]
    user_message: str
    placement: MemoryPlacement = MemoryPlacement.PREPEND

    def memory_block(self) -> str:
        if not self.injected_memory:
            return ""
        lines = [f"- [{item.role.value}] {item.content}" for item in self.injected_memory]
        return "\n".join(
            [MEMORY_INSTRUCTION, MEMORY_DIVIDER, "MEMORY:", *lines, MEMORY_DIVIDER]
        )

    def system_text(self) -> str:
        block = self.memory_block()
        if not block or self.placement is not MemoryPlacement.PREPEND:
            return self.system_preamble
        if not self.system_preamble.strip():
            return block
        return f"{self.system_preamble}\n\n{block}"

    def user_text(self) -> str:
        block = self.memory_block()
        if not block or self.placement is not MemoryPlacement.INLINE:
            return self.user_message
        return f"{block}\n\nQuestion:\n{self.user_message}"

    def to_messages(self) -> list[dict]:
        """Render the prompt as an OpenAI-style message list."""

        messages: list[dict] = []
        system_text = self.system_text()
        if system_text.strip():
            messages.append({"role": Role.SYSTEM.value, "content": system_text})
        messages.append({"role": Role.USER.value, "content": self.user_text()})
        return messages


@dataclass(frozen=True)
class PersistedMemoryRecord:
    """Vector-store record for one conversation turn, keyed by turn id."""

    turn_id: str
    embedding_vector: tuple[float, ...]
    content: str
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def payload(self) -> dict[str, Any]:
        return {**dict(self.metadata), "turn_id": self.turn_id, "content": self.content}


@dataclass(frozen=True)
class VectorHit:
    """One similarity-search result returned by a vector store."""

    id: str
    payload: Mapping[str, Any]
    score: float
    vector: tuple[float, ...] = ()
