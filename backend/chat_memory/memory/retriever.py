from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from typing import Any, Mapping, Optional

from chat_memory.core.errors import EmbeddingFailure, RetrievalUnavailable
from chat_memory.memory.embedder import Embedder, EmbeddingError
from chat_memory.memory.types import MemoryFragment, Role, VectorHit
from chat_memory.memory.vector_store import StoreUnavailable, VectorStore
from chat_memory.utils.time_utils import from_epoch, to_epoch

logger = logging.getLogger(__name__)

CANDIDATE_MULTIPLIER = 2


class MemoryRetriever:
    """Fetches the conversation fragments most similar to a query."""

    def __init__(self, *, embedder: Embedder, vector_store: VectorStore) -> None:
        self._embedder = embedder
        self._vector_store = vector_store

    async def retrieve(
        self,
        query: str,
        k: int,
        *,
        conversation_id: Optional[str] = None,
    ) -> list[MemoryFragment]:
        """Return at most ``k`` fragments, best match first.

        Raises ``EmbeddingFailure`` when the query cannot be embedded and
        ``RetrievalUnavailable`` when the vector store cannot be searched.
        """

        if k <= 0:
            raise ValueError("k must be > 0")
        cleaned_query = query.strip()
        if not cleaned_query:
            return []

        try:
            query_embedding = await self._embedder.embed(cleaned_query)
        except EmbeddingError as exc:
            raise EmbeddingFailure(
                f"Query embedding failed: {exc}", retryable=exc.retryable
            ) from exc

        try:
            hits = await self._vector_store.search(
                query_embedding,
                k * CANDIDATE_MULTIPLIER,
                conversation_id=conversation_id,
            )
        except StoreUnavailable as exc:
            raise RetrievalUnavailable(str(exc), retryable=True) from exc

        fragments = [fragment_from_hit(hit) for hit in hits]
        ranked = rank_fragments(_dedupe_by_content(fragments))
        logger.debug(
            "Retrieved %d/%d memory fragments for conversation %s",
            min(len(ranked), k),
            len(hits),
            conversation_id,
        )
        return ranked[:k]


def rank_fragments(fragments: Iterable[MemoryFragment]) -> list[MemoryFragment]:
    """Order by descending score; ties go to the more recent fragment."""

    return sorted(
        fragments,
        key=lambda item: (
            -item.similarity_score,
            -_timestamp_key(item),
            item.source_turn_id,
        ),
    )


def fragment_from_hit(hit: VectorHit) -> MemoryFragment:
    payload: Mapping[str, Any] = hit.payload
    timestamp = payload.get("timestamp")
    return MemoryFragment(
        source_turn_id=str(payload.get("turn_id") or hit.id),
        embedding_vector=tuple(hit.vector),
        content=str(payload.get("content", "")),
        similarity_score=float(hit.score),
        role=_parse_role(payload.get("role")),
        timestamp=from_epoch(timestamp) if isinstance(timestamp, (int, float)) else None,
        truncated=bool(payload.get("truncated", False)),
    )


def _dedupe_by_content(fragments: Sequence[MemoryFragment]) -> list[MemoryFragment]:
    best_by_content: dict[str, MemoryFragment] = {}
    for item in rank_fragments(fragments):
        key = _normalize_text(item.content)
        if not key or key in best_by_content:
            continue
        best_by_content[key] = item
    return list(best_by_content.values())


def _timestamp_key(fragment: MemoryFragment) -> float:
    if fragment.timestamp is None:
        return 0.0
    return to_epoch(fragment.timestamp)


def _parse_role(value: Any) -> Role:
    try:
        return Role(str(value))
    except ValueError:
        return Role.USER


def _normalize_text(value: str) -> str:
    collapsed = " ".join(value.split())
    return collapsed.casefold().strip()
