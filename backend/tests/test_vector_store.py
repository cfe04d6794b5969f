from __future__ import annotations

import pytest

from chat_memory.db.base import create_engine, create_sessionmaker
from chat_memory.memory.vector_store import (
    QdrantVectorStore,
    SQLiteVectorStore,
    StoreUnavailable,
    point_id_for,
)


async def _seed(store, embedder) -> None:
    rows = [
        ("t1", "c1", "Alice lives in Paris near the river.", 100.0),
        ("t2", "c1", "The weather in Paris is rainy today.", 200.0),
        ("t3", "c2", "Bob collects vintage synthesizers.", 300.0),
    ]
    for turn_id, conversation_id, content, timestamp in rows:
        vector = await embedder.embed(content)
        await store.upsert(
            turn_id,
            vector,
            {
                "conversation_id": conversation_id,
                "content": content,
                "role": "user",
                "timestamp": timestamp,
            },
        )


async def _exercise_store(store, embedder) -> None:
    assert await store.count() == 0
    assert await store.search(await embedder.embed("Paris"), 5) == []

    await _seed(store, embedder)
    assert await store.count() == 3

    query = await embedder.embed("Where does Alice live? Paris")
    hits = await store.search(query, 5)
    assert len(hits) == 3
    scores = [hit.score for hit in hits]
    assert scores == sorted(scores, reverse=True)

    scoped = await store.search(query, 5, conversation_id="c2")
    assert [hit.id for hit in scoped] == ["t3"]

    limited = await store.search(query, 1)
    assert len(limited) == 1

    record = await store.get("t1")
    assert record is not None
    assert record.id == "t1"
    assert record.payload["content"] == "Alice lives in Paris near the river."
    assert len(record.vector) == embedder.dimension
    assert await store.get("missing") is None

    # Same id twice keeps a single record with the latest payload.
    vector = await embedder.embed("Alice moved to Lyon.")
    await store.upsert(
        "t1",
        vector,
        {"conversation_id": "c1", "content": "Alice moved to Lyon.", "role": "user"},
    )
    assert await store.count() == 3
    refreshed = await store.get("t1")
    assert refreshed is not None
    assert refreshed.payload["content"] == "Alice moved to Lyon."

    assert await store.delete_conversation("c1") == 2
    assert await store.count() == 1
    assert await store.search(query, 5, conversation_id="c1") == []


@pytest.mark.anyio
async def test_sqlite_vector_store_roundtrip(sessionmaker, embedder):
    store = SQLiteVectorStore(sessionmaker)
    await _exercise_store(store, embedder)


@pytest.mark.anyio
async def test_qdrant_vector_store_in_memory(embedder):
    store = QdrantVectorStore(url=":memory:", collection="test_collection")
    try:
        await _exercise_store(store, embedder)
    finally:
        await store.close()


@pytest.mark.anyio
async def test_sqlite_vector_store_unavailable_database(tmp_path):
    missing_dir = tmp_path / "missing" / "nested"
    engine = create_engine(f"sqlite+aiosqlite:///{missing_dir / 'memory.db'}")
    store = SQLiteVectorStore(create_sessionmaker(engine))
    try:
        with pytest.raises(StoreUnavailable):
            await store.search([1.0, 0.0], 3)
        with pytest.raises(StoreUnavailable):
            await store.upsert("t1", [1.0, 0.0], {"content": "hello"})
    finally:
        await engine.dispose()


def test_qdrant_point_ids_are_stable_uuids():
    assert point_id_for("turn-1") == point_id_for("turn-1")
    assert point_id_for("turn-1") != point_id_for("turn-2")
    assert len(point_id_for("turn-1")) == 36


def test_qdrant_store_requires_collection_name():
    with pytest.raises(ValueError):
        QdrantVectorStore(url=":memory:", collection=" ")
