from __future__ import annotations

import hashlib
import json
import logging
import math
import uuid
from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

from qdrant_client import AsyncQdrantClient, models
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chat_memory.memory.types import VectorHit
from chat_memory.repos.memory_repo import MemoryRepo

logger = logging.getLogger(__name__)

# Qdrant point ids must be UUIDs or integers; turn ids are mapped through uuid5.
POINT_ID_NAMESPACE = uuid.UUID("6f1c6a52-8f7e-4d2e-9b63-0c1d2b7f4a10")


class StoreUnavailable(RuntimeError):
    """Raised when the vector store cannot be reached or rejects an operation."""


class VectorStore(ABC):
    """Abstract vector-memory storage backend."""

    @abstractmethod
    async def upsert(
        self, id: str, vector: Sequence[float], payload: Mapping[str, Any]
    ) -> None:
        """Insert or replace the record stored under ``id``."""

    @abstractmethod
    async def search(
        self,
        vector: Sequence[float],
        k: int,
        *,
        conversation_id: Optional[str] = None,
    ) -> list[VectorHit]:
        """Return up to ``k`` records ordered by descending similarity."""

    @abstractmethod
    async def get(self, id: str) -> Optional[VectorHit]:
        """Fetch one record by id."""

    @abstractmethod
    async def count(self) -> int:
        """Return the number of stored records."""

    @abstractmethod
    async def delete_conversation(self, conversation_id: str) -> int:
        """Remove every record of one conversation."""

    async def close(self) -> None:
        return None


class SQLiteVectorStore(VectorStore):
    """SQLite-backed vector store with in-process cosine similarity."""

    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession]) -> None:
        self._sessionmaker = sessionmaker

    async def upsert(
        self, id: str, vector: Sequence[float], payload: Mapping[str, Any]
    ) -> None:
        values = [float(value) for value in vector]
        norm = math.sqrt(sum(value * value for value in values))
        content = str(payload.get("content", ""))
        try:
            async with self._db_context() as db:
                repo = MemoryRepo(db)
                item = await repo.upsert_memory_item(
                    item_id=id,
                    conversation_id=str(payload.get("conversation_id") or ""),
                    content=content,
                    content_hash=hashlib.sha256(content.encode("utf-8")).hexdigest(),
                    payload_json=json.dumps(dict(payload), separators=(",", ":"), default=str),
                )
                await repo.upsert_embedding(
                    memory_item_id=item.id,
                    dim=len(values),
                    vector_json=json.dumps(values, separators=(",", ":")),
                    vector_norm=norm if norm > 0 else 1.0,
                )
        except (SQLAlchemyError, OSError) as exc:
            raise StoreUnavailable(f"SQLite vector store upsert failed: {exc}") from exc

    async def search(
        self,
        vector: Sequence[float],
        k: int,
        *,
        conversation_id: Optional[str] = None,
    ) -> list[VectorHit]:
        if k <= 0:
            return []

        query = [float(value) for value in vector]
        query_norm = math.sqrt(sum(value * value for value in query))
        if query_norm <= 0:
            return []

        try:
            async with self._db_context() as db:
                rows = await MemoryRepo(db).list_vectors(conversation_id=conversation_id)
        except (SQLAlchemyError, OSError) as exc:
            raise StoreUnavailable(f"SQLite vector store search failed: {exc}") from exc

        scored: list[VectorHit] = []
        for item, embedding in rows:
            candidate = _decode_vector(embedding.vector_json)
            if candidate is None or len(candidate) != len(query):
                continue
            score = _cosine_similarity(
                query, query_norm, candidate, float(embedding.vector_norm)
            )
            scored.append(
                VectorHit(
                    id=item.id,
                    payload=_decode_payload(item.payload_json),
                    score=score,
                    vector=tuple(candidate),
                )
            )

        scored.sort(key=lambda hit: (hit.score, _hit_timestamp(hit)), reverse=True)
        return scored[:k]

    async def get(self, id: str) -> Optional[VectorHit]:
        try:
            async with self._db_context() as db:
                repo = MemoryRepo(db)
                item = await repo.get_memory_item(id)
                if item is None:
                    return None
                embedding = await repo.get_embedding(item.id)
        except (SQLAlchemyError, OSError) as exc:
            raise StoreUnavailable(f"SQLite vector store read failed: {exc}") from exc
        vector = _decode_vector(embedding.vector_json) if embedding else None
        return VectorHit(
            id=item.id,
            payload=_decode_payload(item.payload_json),
            score=1.0,
            vector=tuple(vector or ()),
        )

    async def count(self) -> int:
        try:
            async with self._db_context() as db:
                return await MemoryRepo(db).count_items()
        except (SQLAlchemyError, OSError) as exc:
            raise StoreUnavailable(f"SQLite vector store count failed: {exc}") from exc

    async def delete_conversation(self, conversation_id: str) -> int:
        try:
            async with self._db_context() as db:
                return await MemoryRepo(db).delete_conversation(conversation_id)
        except (SQLAlchemyError, OSError) as exc:
            raise StoreUnavailable(f"SQLite vector store delete failed: {exc}") from exc

    @asynccontextmanager
    async def _db_context(self) -> AsyncIterator[AsyncSession]:
        async with self._sessionmaker() as local_db:
            async with local_db.begin():
                yield local_db


class QdrantVectorStore(VectorStore):
    """Qdrant-backed vector store using cosine distance."""

    def __init__(
        self,
        *,
        client: Optional[AsyncQdrantClient] = None,
        url: str = ":memory:",
        api_key: Optional[str] = None,
        collection: str = "chat_memory",
    ) -> None:
        if not collection or not collection.strip():
            raise ValueError("collection name is required and cannot be empty")
        self._client = client or create_qdrant_client(url, api_key)
        self._collection = collection
        self._collection_ready = False

    @property
    def collection(self) -> str:
        return self._collection

    async def upsert(
        self, id: str, vector: Sequence[float], payload: Mapping[str, Any]
    ) -> None:
        values = [float(value) for value in vector]
        try:
            await self._ensure_collection(len(values))
            await self._client.upsert(
                collection_name=self._collection,
                points=[
                    models.PointStruct(
                        id=point_id_for(id),
                        vector=values,
                        payload={**dict(payload), "turn_id": id},
                    )
                ],
                wait=True,
            )
        except Exception as exc:  # noqa: BLE001
            raise StoreUnavailable(f"Qdrant upsert failed: {exc}") from exc

    async def search(
        self,
        vector: Sequence[float],
        k: int,
        *,
        conversation_id: Optional[str] = None,
    ) -> list[VectorHit]:
        if k <= 0:
            return []
        try:
            if not await self._collection_exists():
                return []
            response = await self._client.query_points(
                collection_name=self._collection,
                query=[float(value) for value in vector],
                query_filter=_conversation_filter(conversation_id),
                limit=k,
                with_payload=True,
                with_vectors=True,
            )
        except Exception as exc:  # noqa: BLE001
            raise StoreUnavailable(f"Qdrant search failed: {exc}") from exc

        hits = [_point_to_hit(point, float(point.score)) for point in response.points]
        hits.sort(key=lambda hit: (hit.score, _hit_timestamp(hit)), reverse=True)
        return hits[:k]

    async def get(self, id: str) -> Optional[VectorHit]:
        try:
            if not await self._collection_exists():
                return None
            points = await self._client.retrieve(
                collection_name=self._collection,
                ids=[point_id_for(id)],
                with_payload=True,
                with_vectors=True,
            )
        except Exception as exc:  # noqa: BLE001
            raise StoreUnavailable(f"Qdrant retrieve failed: {exc}") from exc
        if not points:
            return None
        return _point_to_hit(points[0], 1.0)

    async def count(self) -> int:
        try:
            if not await self._collection_exists():
                return 0
            result = await self._client.count(collection_name=self._collection, exact=True)
        except Exception as exc:  # noqa: BLE001
            raise StoreUnavailable(f"Qdrant count failed: {exc}") from exc
        return int(result.count)

    async def delete_conversation(self, conversation_id: str) -> int:
        selector = _conversation_filter(conversation_id)
        try:
            if not await self._collection_exists():
                return 0
            matched = await self._client.count(
                collection_name=self._collection, count_filter=selector, exact=True
            )
            await self._client.delete(
                collection_name=self._collection,
                points_selector=models.FilterSelector(filter=selector),
                wait=True,
            )
        except Exception as exc:  # noqa: BLE001
            raise StoreUnavailable(f"Qdrant delete failed: {exc}") from exc
        return int(matched.count)

    async def close(self) -> None:
        await self._client.close()

    async def _collection_exists(self) -> bool:
        if self._collection_ready:
            return True
        exists = await self._client.collection_exists(self._collection)
        self._collection_ready = bool(exists)
        return self._collection_ready

    async def _ensure_collection(self, vector_size: int) -> None:
        if await self._collection_exists():
            return
        logger.info("Creating Qdrant collection %s (dim=%d)", self._collection, vector_size)
        try:
            await self._client.create_collection(
                collection_name=self._collection,
                vectors_config=models.VectorParams(
                    size=vector_size, distance=models.Distance.COSINE
                ),
            )
        except Exception:  # noqa: BLE001
            # A concurrent turn may have created it first.
            if not await self._client.collection_exists(self._collection):
                raise
        await self._client.create_payload_index(
            collection_name=self._collection,
            field_name="conversation_id",
            field_schema=models.PayloadSchemaType.KEYWORD,
        )
        self._collection_ready = True


def create_qdrant_client(url: str, api_key: Optional[str] = None) -> AsyncQdrantClient:
    """Create an async Qdrant client for a server URL or in-process ``:memory:`` mode."""

    cleaned = (url or "").strip()
    if not cleaned or cleaned == ":memory:":
        return AsyncQdrantClient(location=":memory:")
    return AsyncQdrantClient(url=cleaned, api_key=api_key or None)


def point_id_for(turn_id: str) -> str:
    return str(uuid.uuid5(POINT_ID_NAMESPACE, turn_id))


def _conversation_filter(conversation_id: Optional[str]) -> Optional[models.Filter]:
    if conversation_id is None:
        return None
    return models.Filter(
        must=[
            models.FieldCondition(
                key="conversation_id", match=models.MatchValue(value=conversation_id)
            )
        ]
    )


def _point_to_hit(point: Any, score: float) -> VectorHit:
    payload = dict(point.payload or {})
    vector = point.vector if isinstance(point.vector, list) else []
    return VectorHit(
        id=str(payload.get("turn_id") or point.id),
        payload=payload,
        score=score,
        vector=tuple(float(value) for value in vector),
    )


def _decode_vector(raw: str) -> Optional[list[float]]:
    try:
        candidate = json.loads(raw)
    except json.JSONDecodeError:
        return None
    if not isinstance(candidate, list):
        return None
    try:
        return [float(value) for value in candidate]
    except (TypeError, ValueError):
        return None


def _decode_payload(raw: str) -> dict[str, Any]:
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    return payload if isinstance(payload, dict) else {}


def _hit_timestamp(hit: VectorHit) -> float:
    value = hit.payload.get("timestamp")
    return float(value) if isinstance(value, (int, float)) else 0.0


def _cosine_similarity(
    left: list[float], left_norm: float, right: list[float], right_norm: float
) -> float:
    if left_norm <= 0 or right_norm <= 0 or len(left) != len(right):
        return 0.0
    dot = 0.0
    for l_value, r_value in zip(left, right):
        dot += l_value * r_value
    return dot / (left_norm * right_norm)
