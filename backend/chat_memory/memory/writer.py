from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Optional

from chat_memory.core.errors import PersistenceFailure
from chat_memory.memory.embedder import Embedder, EmbeddingError
from chat_memory.memory.types import ConversationTurn, PersistedMemoryRecord
from chat_memory.memory.vector_store import StoreUnavailable, VectorStore
from chat_memory.utils.time_utils import to_epoch

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PersistOutcome:
    """Result of persisting one conversation turn."""

    turn_id: str
    ok: bool
    attempts: int
    error: Optional[PersistenceFailure] = None


class MemoryWriter:
    """Embeds finished turns and upserts them into the vector store."""

    _BACKOFF_DELAYS: tuple[float, ...] = (1, 2, 4)

    def __init__(
        self,
        *,
        embedder: Embedder,
        vector_store: VectorStore,
        retry_delays: Optional[Sequence[float]] = None,
    ) -> None:
        self._embedder = embedder
        self._vector_store = vector_store
        self._retry_delays = tuple(
            self._BACKOFF_DELAYS if retry_delays is None else retry_delays
        )

    @property
    def vector_store(self) -> VectorStore:
        return self._vector_store

    async def persist(self, turn: ConversationTurn) -> PersistOutcome:
        """Store ``turn`` under its turn id; safe to call again for the same turn."""

        content = turn.content.strip()
        if not content:
            return PersistOutcome(turn_id=turn.turn_id, ok=True, attempts=0)

        attempt = 0
        while True:
            attempt += 1
            try:
                record = await self._build_record(turn, content)
                await self._vector_store.upsert(
                    record.turn_id, record.embedding_vector, record.payload()
                )
                return PersistOutcome(turn_id=turn.turn_id, ok=True, attempts=attempt)
            except EmbeddingError as exc:
                failure = PersistenceFailure(
                    f"Embedding turn {turn.turn_id} failed: {exc}",
                    code="EMBEDDING_FAILED",
                    retryable=exc.retryable,
                )
            except StoreUnavailable as exc:
                failure = PersistenceFailure(
                    f"Writing turn {turn.turn_id} failed: {exc}",
                    code="STORE_UNAVAILABLE",
                    retryable=True,
                )

            delay = self._next_backoff(attempt - 1) if failure.retryable else None
            if delay is None:
                logger.warning(
                    "Memory persistence gave up on turn %s after %d attempt(s): %s",
                    turn.turn_id,
                    attempt,
                    failure.message,
                )
                return PersistOutcome(
                    turn_id=turn.turn_id, ok=False, attempts=attempt, error=failure
                )
            logger.info(
                "Memory persistence of turn %s failed; retrying in %ss", turn.turn_id, delay
            )
            await asyncio.sleep(delay)

    async def _build_record(
        self, turn: ConversationTurn, content: str
    ) -> PersistedMemoryRecord:
        vector = await self._embedder.embed(content)
        return PersistedMemoryRecord(
            turn_id=turn.turn_id,
            embedding_vector=tuple(vector),
            content=content,
            metadata={
                "conversation_id": turn.conversation_id,
                "role": turn.role.value,
                "seq": turn.seq,
                "timestamp": to_epoch(turn.timestamp),
                "truncated": turn.truncated,
                "embed_provider": self._embedder.provider,
                "embed_model": self._embedder.model_name,
            },
        )

    def _next_backoff(self, attempt: int) -> Optional[float]:
        if attempt >= len(self._retry_delays):
            return None
        return self._retry_delays[attempt]
