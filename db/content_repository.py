"""Read access to ingested content items.

Each call opens its own short-lived session, so lookups can run concurrently
(an AsyncSession must not be shared between concurrent tasks).
"""

from typing import Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from models.postgres import ContentItem


class ContentRepository:
    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self.session_maker = session_maker

    async def get_item(self, item_id: str) -> ContentItem | None:
        async with self.session_maker() as session:
            return await session.get(ContentItem, item_id)

    async def get_items(self, item_ids: Sequence[str]) -> list[ContentItem]:
        """Fetch items by id, in the order of ``item_ids`` (missing ids dropped)."""
        if not item_ids:
            return []
        async with self.session_maker() as session:
            result = await session.scalars(
                select(ContentItem).where(ContentItem.id.in_(list(item_ids)))
            )
            by_id = {item.id: item for item in result}
        return [by_id[item_id] for item_id in item_ids if item_id in by_id]

    async def list_items(
        self,
        organization_id: str,
        source_id: str | None = None,
        limit: int = 500,
        embedded_only: bool = False,
        exclude_id: str | None = None,
    ) -> list[ContentItem]:
        """List an organization's most recent items in a stable order.

        Newest first by source timestamp, then ingestion time, with undated
        items last and id breaking ties. ``limit`` therefore keeps the latest
        items, and repeated runs over the same data see the same sequence.
        """
        stmt = select(ContentItem).where(ContentItem.organization_id == organization_id)
        if source_id:
            stmt = stmt.where(ContentItem.source_id == source_id)
        if embedded_only:
            stmt = stmt.where(ContentItem.embedding_vector.is_not(None))
        if exclude_id:
            stmt = stmt.where(ContentItem.id != exclude_id)
        stmt = stmt.order_by(
            ContentItem.created_at_source.desc().nulls_last(),
            ContentItem.created_at.desc(),
            ContentItem.id.asc(),
        ).limit(limit)

        async with self.session_maker() as session:
            result = await session.scalars(stmt)
            items = list(result)

        if embedded_only:
            # JSON 'null' literals pass IS NOT NULL
            items = [item for item in items if item.embedding_vector]
        return items
