from __future__ import annotations

from datetime import datetime, timezone

import pytest

from chat_memory.memory.embedder import DeterministicEmbedder, EmbeddingError
from chat_memory.memory.types import ConversationTurn, Role
from chat_memory.memory.vector_store import SQLiteVectorStore, StoreUnavailable
from chat_memory.memory.writer import MemoryWriter


class FlakyStore(SQLiteVectorStore):
    """SQLite store whose first ``failures`` upserts raise StoreUnavailable."""

    def __init__(self, sessionmaker, failures: int) -> None:
        super().__init__(sessionmaker)
        self.failures = failures
        self.attempts = 0

    async def upsert(self, id, vector, payload) -> None:
        self.attempts += 1
        if self.attempts <= self.failures:
            raise StoreUnavailable("temporarily down")
        await super().upsert(id, vector, payload)


class BrokenEmbedder(DeterministicEmbedder):
    async def embed_texts(self, texts):
        raise EmbeddingError("invalid input", retryable=False)


def _turn(content: str, turn_id: str = "turn-1", role: Role = Role.USER) -> ConversationTurn:
    return ConversationTurn(
        turn_id=turn_id,
        conversation_id="c1",
        role=role,
        content=content,
        timestamp=datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc),
        seq=3,
    )


@pytest.mark.anyio
async def test_persist_stores_turn_with_metadata(sessionmaker, embedder):
    store = SQLiteVectorStore(sessionmaker)
    writer = MemoryWriter(embedder=embedder, vector_store=store)

    outcome = await writer.persist(_turn("Alice lives in Paris.", role=Role.ASSISTANT))

    assert outcome.ok is True
    assert outcome.attempts == 1
    record = await store.get("turn-1")
    assert record is not None
    assert record.payload["content"] == "Alice lives in Paris."
    assert record.payload["conversation_id"] == "c1"
    assert record.payload["role"] == "assistant"
    assert record.payload["seq"] == 3
    assert record.payload["embed_provider"] == "deterministic"
    assert record.payload["timestamp"] == datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc).timestamp()


@pytest.mark.anyio
async def test_persist_is_idempotent_per_turn_id(sessionmaker, embedder):
    store = SQLiteVectorStore(sessionmaker)
    writer = MemoryWriter(embedder=embedder, vector_store=store)
    turn = _turn("Remember the blue door.")

    await writer.persist(turn)
    await writer.persist(turn)

    assert await store.count() == 1


@pytest.mark.anyio
async def test_blank_turn_is_skipped(sessionmaker, embedder):
    store = SQLiteVectorStore(sessionmaker)
    writer = MemoryWriter(embedder=embedder, vector_store=store)

    outcome = await writer.persist(_turn("   "))

    assert outcome.ok is True
    assert outcome.attempts == 0
    assert await store.count() == 0


@pytest.mark.anyio
async def test_retries_store_outage_until_success(sessionmaker, embedder):
    store = FlakyStore(sessionmaker, failures=2)
    writer = MemoryWriter(embedder=embedder, vector_store=store, retry_delays=(0, 0, 0))

    outcome = await writer.persist(_turn("Retry me."))

    assert outcome.ok is True
    assert outcome.attempts == 3
    assert await store.count() == 1


@pytest.mark.anyio
async def test_gives_up_after_retry_schedule(sessionmaker, embedder):
    store = FlakyStore(sessionmaker, failures=10)
    writer = MemoryWriter(embedder=embedder, vector_store=store, retry_delays=(0, 0))

    outcome = await writer.persist(_turn("Never stored."))

    assert outcome.ok is False
    assert outcome.attempts == 3
    assert outcome.error is not None
    assert outcome.error.code == "STORE_UNAVAILABLE"
    assert outcome.error.stage.value == "persisting"


@pytest.mark.anyio
async def test_non_retryable_embedding_error_fails_fast(sessionmaker):
    store = SQLiteVectorStore(sessionmaker)
    writer = MemoryWriter(
        embedder=BrokenEmbedder(dimension=8), vector_store=store, retry_delays=(0, 0, 0)
    )

    outcome = await writer.persist(_turn("Cannot embed."))

    assert outcome.ok is False
    assert outcome.attempts == 1
    assert outcome.error is not None
    assert outcome.error.code == "EMBEDDING_FAILED"
    assert await store.count() == 0
