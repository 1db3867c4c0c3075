"""Persistence for relationship edges, topic clusters and topic expertise."""

from typing import Sequence

from sqlalchemy import delete, func, or_, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from models.postgres import (
    ClusterMembership,
    ContentItem,
    ContentRelationship,
    TopicCluster,
    TopicExpertise,
    generate_uuid,
    utc_now,
)
from models.schemas import RelationshipCandidate


class GraphRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def commit(self) -> None:
        await self.session.commit()

    async def rollback(self) -> None:
        await self.session.rollback()

    # ------------------------------------------------------------------
    # Relationships
    # ------------------------------------------------------------------

    async def create_relationship(self, candidate: RelationshipCandidate) -> str | None:
        """Insert an edge unless it already exists.

        Returns the new row id, or None when the (source, target, type) edge
        was already present. The check and the insert are one statement.
        """
        table = ContentRelationship.__table__
        stmt = (
            pg_insert(table)
            .values(
                id=generate_uuid(),
                source_item_id=candidate.source_item_id,
                target_item_id=candidate.target_item_id,
                relationship_type=candidate.relationship_type.value,
                confidence=candidate.confidence,
                metadata={**candidate.metadata, "reason": candidate.reason},
                created_at=utc_now(),
            )
            .on_conflict_do_nothing(constraint="uq_content_relationship")
            .returning(table.c.id)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_relationships(
        self, item_id: str, direction: str = "both"
    ) -> list[ContentRelationship]:
        stmt = select(ContentRelationship)
        if direction == "outgoing":
            stmt = stmt.where(ContentRelationship.source_item_id == item_id)
        elif direction == "incoming":
            stmt = stmt.where(ContentRelationship.target_item_id == item_id)
        else:
            stmt = stmt.where(
                or_(
                    ContentRelationship.source_item_id == item_id,
                    ContentRelationship.target_item_id == item_id,
                )
            )
        result = await self.session.scalars(
            stmt.order_by(ContentRelationship.confidence.desc())
        )
        return list(result)

    # ------------------------------------------------------------------
    # Clusters
    # ------------------------------------------------------------------

    async def add_cluster(self, cluster: TopicCluster) -> TopicCluster:
        self.session.add(cluster)
        await self.session.flush()
        return cluster

    async def get_cluster(self, cluster_id: str) -> TopicCluster | None:
        return await self.session.get(TopicCluster, cluster_id)

    async def list_clusters(
        self, organization_id: str, limit: int | None = None, offset: int = 0
    ) -> list[TopicCluster]:
        stmt = (
            select(TopicCluster)
            .where(TopicCluster.organization_id == organization_id)
            .order_by(TopicCluster.member_count.desc(), TopicCluster.created_at.asc())
            .offset(offset)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self.session.scalars(stmt)
        return list(result)

    async def delete_cluster(self, cluster: TopicCluster) -> None:
        await self.session.delete(cluster)
        await self.session.flush()

    async def add_members(
        self, cluster_id: str, members: Sequence[tuple[str, float]]
    ) -> int:
        """Upsert (item_id, relevance) memberships and refresh the member count."""
        if members:
            table = ClusterMembership.__table__
            stmt = pg_insert(table).values(
                [
                    {
                        "id": generate_uuid(),
                        "cluster_id": cluster_id,
                        "content_item_id": item_id,
                        "relevance_score": relevance,
                        "created_at": utc_now(),
                    }
                    for item_id, relevance in members
                ]
            )
            stmt = stmt.on_conflict_do_update(
                constraint="uq_cluster_membership",
                set_={"relevance_score": stmt.excluded.relevance_score},
            )
            await self.session.execute(stmt)
        return await self.refresh_member_count(cluster_id)

    async def remove_members(self, cluster_id: str, item_ids: Sequence[str]) -> int:
        if item_ids:
            await self.session.execute(
                delete(ClusterMembership).where(
                    ClusterMembership.cluster_id == cluster_id,
                    ClusterMembership.content_item_id.in_(list(item_ids)),
                )
            )
        return await self.refresh_member_count(cluster_id)

    async def refresh_member_count(self, cluster_id: str) -> int:
        count = await self.session.scalar(
            select(func.count())
            .select_from(ClusterMembership)
            .where(ClusterMembership.cluster_id == cluster_id)
        )
        cluster = await self.session.get(TopicCluster, cluster_id)
        if cluster is not None:
            cluster.member_count = count or 0
            cluster.updated_at = utc_now()
            await self.session.flush()
        return count or 0

    async def get_members(
        self, cluster_id: str
    ) -> list[tuple[ClusterMembership, ContentItem]]:
        """Memberships joined with their items, most relevant first."""
        result = await self.session.execute(
            select(ClusterMembership, ContentItem)
            .join(ContentItem, ContentItem.id == ClusterMembership.content_item_id)
            .where(ClusterMembership.cluster_id == cluster_id)
            .order_by(
                ClusterMembership.relevance_score.desc(), ContentItem.id.asc()
            )
        )
        return [(membership, item) for membership, item in result.all()]

    async def count_members_by_cluster(self, organization_id: str) -> dict[str, int]:
        """Live membership counts for every cluster of an organization."""
        result = await self.session.execute(
            select(TopicCluster.id, func.count(ClusterMembership.id))
            .outerjoin(ClusterMembership, ClusterMembership.cluster_id == TopicCluster.id)
            .where(TopicCluster.organization_id == organization_id)
            .group_by(TopicCluster.id)
        )
        return {cluster_id: count for cluster_id, count in result.all()}

    # ------------------------------------------------------------------
    # Expertise
    # ------------------------------------------------------------------

    async def upsert_expertise(self, rows: Sequence[dict]) -> None:
        """Insert or overwrite expertise rows keyed on (cluster_id, author_key)."""
        if not rows:
            return
        table = TopicExpertise.__table__
        stmt = pg_insert(table).values(
            [{"id": generate_uuid(), "updated_at": utc_now(), **row} for row in rows]
        )
        stmt = stmt.on_conflict_do_update(
            constraint="uq_topic_expertise",
            set_={
                "user_id": stmt.excluded.user_id,
                "author_external": stmt.excluded.author_external,
                "author_name": stmt.excluded.author_name,
                "contribution_count": stmt.excluded.contribution_count,
                "summed_relevance": stmt.excluded.summed_relevance,
                "expertise_score": stmt.excluded.expertise_score,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        await self.session.execute(stmt)

    async def delete_expertise_except(
        self, cluster_id: str, author_keys: Sequence[str]
    ) -> None:
        """Drop expertise rows of authors who no longer contribute to the cluster."""
        stmt = delete(TopicExpertise).where(TopicExpertise.cluster_id == cluster_id)
        if author_keys:
            stmt = stmt.where(TopicExpertise.author_key.not_in(list(author_keys)))
        await self.session.execute(stmt)

    async def get_experts(self, cluster_id: str, limit: int = 10) -> list[TopicExpertise]:
        result = await self.session.scalars(
            select(TopicExpertise)
            .where(TopicExpertise.cluster_id == cluster_id)
            .order_by(
                TopicExpertise.expertise_score.desc(), TopicExpertise.author_key.asc()
            )
            .limit(limit)
        )
        return list(result)
