from __future__ import annotations

from typing import Optional

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from chat_memory.db.models import MemoryEmbedding, MemoryItem
from chat_memory.utils.time_utils import utc_now


class MemoryRepo:
    """Repository for stored turns and their vectors."""

    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    async def upsert_memory_item(
        self,
        *,
        item_id: str,
        conversation_id: str,
        content: str,
        content_hash: str,
        payload_json: str,
    ) -> MemoryItem:
        """Insert the item, or overwrite the one already stored under ``item_id``."""

        item = await self.get_memory_item(item_id)
        if item is None:
            item = MemoryItem(id=item_id, created_at=utc_now())
            self._db.add(item)
        item.conversation_id = conversation_id
        item.content = content
        item.content_hash = content_hash
        item.payload_json = payload_json
        item.updated_at = utc_now()
        await self._db.flush()
        return item

    async def upsert_embedding(
        self,
        *,
        memory_item_id: str,
        dim: int,
        vector_json: str,
        vector_norm: float,
    ) -> MemoryEmbedding:
        embedding = await self.get_embedding(memory_item_id)
        if embedding is None:
            embedding = MemoryEmbedding(memory_item_id=memory_item_id)
            self._db.add(embedding)
        embedding.dim = dim
        embedding.vector_json = vector_json
        embedding.vector_norm = vector_norm
        embedding.updated_at = utc_now()
        await self._db.flush()
        return embedding

    async def list_vectors(
        self, *, conversation_id: Optional[str] = None
    ) -> list[tuple[MemoryItem, MemoryEmbedding]]:
        """Return item/vector pairs, newest first, optionally for one conversation."""

        stmt = select(MemoryItem, MemoryEmbedding).join(
            MemoryEmbedding, MemoryEmbedding.memory_item_id == MemoryItem.id
        )
        if conversation_id is not None:
            stmt = stmt.where(MemoryItem.conversation_id == conversation_id)
        result = await self._db.execute(stmt.order_by(MemoryItem.created_at.desc()))
        return list(result.tuples())

    async def get_memory_item(self, item_id: str) -> Optional[MemoryItem]:
        return await self._db.get(MemoryItem, item_id)

    async def get_embedding(self, memory_item_id: str) -> Optional[MemoryEmbedding]:
        return await self._db.get(MemoryEmbedding, memory_item_id)

    async def count_items(self) -> int:
        result = await self._db.execute(select(func.count()).select_from(MemoryItem))
        return int(result.scalar_one())

    async def delete_conversation(self, conversation_id: str) -> int:
        """Delete every stored turn of one conversation; returns how many."""

        item_ids = select(MemoryItem.id).where(MemoryItem.conversation_id == conversation_id)
        await self._db.execute(
            delete(MemoryEmbedding).where(MemoryEmbedding.memory_item_id.in_(item_ids))
        )
        result = await self._db.execute(
            delete(MemoryItem).where(MemoryItem.conversation_id == conversation_id)
        )
        return int(result.rowcount or 0)
