from __future__ import annotations

from enum import Enum
from typing import Optional


class TurnStage(str, Enum):
    """Pipeline stage a turn failure is attributed to."""

    RETRIEVING = "retrieving"
    TRIMMING = "trimming"
    AUGMENTING = "augmenting"
    COMPLETING = "completing"
    PERSISTING = "persisting"


class TurnError(RuntimeError):
    """Raised when one stage of a chat turn fails."""

    default_code = "TURN_FAILED"
    stage: TurnStage = TurnStage.COMPLETING

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        stage: Optional[TurnStage] = None,
        retryable: bool = False,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        if stage is not None:
            self.stage = stage
        self.retryable = retryable

    def to_dict(self) -> dict[str, str]:
        return {"code": self.code, "stage": self.stage.value, "message": self.message}


class RetrievalUnavailable(TurnError):
    """The vector store could not be queried for memory."""

    default_code = "RETRIEVAL_UNAVAILABLE"
    stage = TurnStage.RETRIEVING


class EmbeddingFailure(TurnError):
    """The embedding provider failed to embed a query or a turn."""

    default_code = "EMBEDDING_FAILED"
    stage = TurnStage.RETRIEVING


class PromptOverflow(TurnError):
    """The augmented prompt does not fit the model context window."""

    default_code = "PROMPT_OVERFLOW"
    stage = TurnStage.AUGMENTING

    def __init__(self, required_tokens: int, limit: int) -> None:
        super().__init__(
            f"Prompt needs {required_tokens} tokens but the model allows {limit}."
        )
        self.required_tokens = required_tokens
        self.limit = limit


class CompletionProviderError(TurnError):
    """The chat completion provider failed."""

    default_code = "COMPLETION_FAILED"
    stage = TurnStage.COMPLETING


class PersistenceFailure(TurnError):
    """A finished turn could not be written to the vector store."""

    default_code = "PERSISTENCE_FAILED"
    stage = TurnStage.PERSISTING
