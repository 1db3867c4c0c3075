"""Topic clustering over content embeddings.

auto_cluster() runs a greedy single pass: each not-yet-assigned item seeds a
group of the unassigned items whose embeddings are within the similarity
threshold of it. Groups of at least ``min_cluster_size`` items become
clusters; the rest stay unclustered. The result depends on item order, so
items are always fetched in a stable order.

Clusters carry per-author expertise scores that are recomputed whenever the
membership changes:

    score = 0.5 * count / max_count + 0.5 * summed_relevance / max_summed_relevance
"""

from __future__ import annotations

import math
from collections import Counter
from dataclasses import dataclass, field
from typing import Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from config import Settings, get_settings
from db.content_repository import ContentRepository
from db.graph_repository import GraphRepository
from db.postgres import get_session_maker
from models.errors import DatabaseError, NotFoundError
from models.postgres import ClusterMembership, ContentItem, TopicCluster, generate_uuid
from models.schemas import (
    ClusteringError,
    ClusteringOptions,
    ClusteringResult,
    ClusterMember,
    ClusterProposal,
    CreateTopicClusterInput,
    ExtractedTopic,
    RelatedCluster,
    TopicExpert,
    UpdateTopicClusterInput,
)
from services.embeddings import EmbeddingService, get_embedding_service
from services.llm import LLMClient, get_llm_client
from services.response_parsers import parse_cluster_name, parse_topics
from utils.logging import get_logger
from utils.vectors import calculate_centroid, cosine_similarity

logger = get_logger(__name__)

CLUSTER_NAMING_PROMPT = """Based on these content titles, suggest a short topic name (2-4 words) and brief description (1 sentence):
Titles:
{titles}

Tags: {tags}

Return as JSON: {{"name": "...", "description": "..."}}"""

TOPIC_EXTRACTION_PROMPT = """Extract the main topics from this content. Return as JSON array with topic name and confidence (0-1):
Content: {content}

Return format: [{{"topic": "topic name", "confidence": 0.9}}, ...]"""

MIN_TOPIC_CONTENT_LENGTH = 20
TOPIC_CONTENT_MAX_CHARS = 3000


@dataclass
class ClusterDetail:
    cluster: TopicCluster
    members: list[tuple[ClusterMembership, ContentItem]] = field(default_factory=list)


@dataclass
class ClusterMatch:
    cluster: TopicCluster
    relevance: float


def common_tags(items: Sequence[ContentItem]) -> list[str]:
    """Tags carried by at least half (rounded up) of the items."""
    if not items:
        return []
    counts = Counter(tag for item in items for tag in dict.fromkeys(item.tags or []))
    needed = math.ceil(len(items) / 2)
    return [tag for tag, count in counts.items() if count >= needed]


def author_key(item: ContentItem) -> str:
    return item.author_id or item.author_external or item.author_name or "unknown"


def compute_expertise(
    members: Sequence[tuple[ClusterMembership, ContentItem]],
) -> list[dict]:
    """Aggregate memberships per author and score them against the top author."""
    stats: dict[str, dict] = {}
    for membership, item in members:
        key = author_key(item)
        entry = stats.setdefault(
            key,
            {
                "author_key": key,
                "user_id": item.author_id,
                "author_external": item.author_external,
                "author_name": item.author_name,
                "contribution_count": 0,
                "summed_relevance": 0.0,
            },
        )
        entry["contribution_count"] += 1
        entry["summed_relevance"] += membership.relevance_score or 0.0

    if not stats:
        return []

    max_count = max(s["contribution_count"] for s in stats.values())
    max_relevance = max(s["summed_relevance"] for s in stats.values())

    rows = []
    for entry in stats.values():
        count_part = entry["contribution_count"] / max_count if max_count > 0 else 0.0
        relevance_part = (
            entry["summed_relevance"] / max_relevance if max_relevance > 0 else 0.0
        )
        rows.append(
            {**entry, "expertise_score": min(1.0, 0.5 * count_part + 0.5 * relevance_part)}
        )
    return rows


class TopicClusterer:
    """Groups content into topic clusters and tracks who knows each topic."""

    def __init__(
        self,
        content_repo: ContentRepository,
        graph_repo: GraphRepository,
        embedding_service: EmbeddingService | None = None,
        llm: LLMClient | None = None,
        settings: Settings | None = None,
    ):
        self.content_repo = content_repo
        self.graph_repo = graph_repo
        self.embedding_service = embedding_service
        self.llm = llm
        self.settings = settings or get_settings()

    # ------------------------------------------------------------------
    # Auto clustering
    # ------------------------------------------------------------------

    async def auto_cluster(self, options: ClusteringOptions) -> ClusteringResult:
        items = await self.content_repo.list_items(
            options.organization_id,
            source_id=options.source_id,
            limit=self.settings.cluster_fetch_limit,
            embedded_only=True,
        )

        if len(items) < options.min_cluster_size:
            return ClusteringResult(unclustered_items=[item.id for item in items])

        result = ClusteringResult()
        assigned: set[str] = set()
        groups: list[list[tuple[ContentItem, float]]] = []

        for seed in items:
            if len(groups) >= options.max_clusters:
                break
            if seed.id in assigned:
                continue

            group = [(seed, 1.0)]
            for other in items:
                if other.id == seed.id or other.id in assigned:
                    continue
                similarity = cosine_similarity(seed.embedding_vector, other.embedding_vector)
                if similarity >= options.similarity_threshold:
                    group.append((other, similarity))

            if len(group) < options.min_cluster_size:
                continue

            assigned.update(item.id for item, _ in group)
            groups.append(group)

        for index, group in enumerate(groups, start=1):
            proposal = await self._build_proposal(group, index, options.use_ai)
            if options.persist:
                await self._persist_proposal(options.organization_id, proposal, result)
            result.clusters.append(proposal)

        result.unclustered_items = [item.id for item in items if item.id not in assigned]

        logger.info(
            f"Auto-clustering complete: {len(items)} items, "
            f"{len(result.clusters)} clusters, "
            f"{len(result.unclustered_items)} unclustered",
            extra={"organization_id": options.organization_id},
        )
        return result

    async def _build_proposal(
        self, group: list[tuple[ContentItem, float]], index: int, use_ai: bool
    ) -> ClusterProposal:
        members = [item for item, _ in group]
        tags = common_tags(members)
        name, description = f"Topic {index}", None

        if use_ai and self.llm is not None:
            suggested_name, suggested_description = await self._suggest_name(members, tags)
            if suggested_name:
                name, description = suggested_name, suggested_description

        return ClusterProposal(
            name=name,
            description=description,
            tags=tags,
            centroid=calculate_centroid([item.embedding_vector for item in members]),
            members=[
                ClusterMember(item_id=item.id, relevance_score=max(0.0, min(1.0, score)))
                for item, score in group
            ],
        )

    async def _suggest_name(
        self, members: Sequence[ContentItem], tags: Sequence[str]
    ) -> tuple[str | None, str | None]:
        titles = "\n".join(
            item.title
            for item in members[: self.settings.cluster_naming_sample_size]
            if item.title
        )
        try:
            response = await self.llm.generate(
                CLUSTER_NAMING_PROMPT.format(titles=titles, tags=", ".join(tags)),
                temperature=0.3,
                max_tokens=256,
            )
        except Exception as e:
            logger.warning(f"Cluster naming failed, keeping default name: {e}")
            return None, None
        return parse_cluster_name(response)

    async def _persist_proposal(
        self, organization_id: str, proposal: ClusterProposal, result: ClusteringResult
    ) -> None:
        try:
            cluster = await self.graph_repo.add_cluster(
                TopicCluster(
                    id=generate_uuid(),
                    organization_id=organization_id,
                    name=proposal.name,
                    description=proposal.description,
                    tags=list(proposal.tags),
                    centroid_embedding=list(proposal.centroid),
                    member_count=0,
                )
            )
            await self.graph_repo.add_members(
                cluster.id,
                [(member.item_id, member.relevance_score) for member in proposal.members],
            )
            await self._recompute_expertise(cluster)
            await self.graph_repo.commit()
        except Exception as e:
            await self.graph_repo.rollback()
            logger.error(f"Failed to persist cluster '{proposal.name}': {e}")
            result.errors.append(ClusteringError(cluster_name=proposal.name, message=str(e)))
            return

        proposal.cluster_id = cluster.id

    # ------------------------------------------------------------------
    # Matching and expertise
    # ------------------------------------------------------------------

    async def find_best_cluster(self, item_id: str) -> ClusterMatch | None:
        """Closest cluster of the item's organization, if similar enough."""
        item = await self.content_repo.get_item(item_id)
        if item is None or not item.embedding_vector:
            return None

        best: ClusterMatch | None = None
        for cluster in await self.graph_repo.list_clusters(item.organization_id):
            if not cluster.centroid_embedding:
                continue
            similarity = cosine_similarity(item.embedding_vector, cluster.centroid_embedding)
            if best is None or similarity > best.relevance:
                best = ClusterMatch(cluster=cluster, relevance=similarity)

        if best is None or best.relevance < self.settings.cluster_match_threshold:
            return None
        return best

    async def _recompute_expertise(self, cluster: TopicCluster) -> list[dict]:
        rows = compute_expertise(await self.graph_repo.get_members(cluster.id))
        await self.graph_repo.delete_expertise_except(
            cluster.id, [row["author_key"] for row in rows]
        )
        await self.graph_repo.upsert_expertise(
            [
                {"cluster_id": cluster.id, "organization_id": cluster.organization_id, **row}
                for row in rows
            ]
        )
        return rows

    async def update_expertise_scores(self, cluster_id: str) -> int:
        """Recompute expertise for every author of the cluster; returns the author count."""
        cluster = await self._require_cluster(cluster_id)
        try:
            rows = await self._recompute_expertise(cluster)
            await self.graph_repo.commit()
        except Exception as e:
            await self.graph_repo.rollback()
            raise DatabaseError("update_expertise_scores", e) from e
        return len(rows)

    async def get_topic_experts(self, cluster_id: str, limit: int = 10) -> list[TopicExpert]:
        experts = await self.graph_repo.get_experts(cluster_id, limit=limit)
        return [
            TopicExpert(
                author_key=e.author_key,
                user_id=e.user_id,
                author_external=e.author_external,
                author_name=e.author_name,
                contribution_count=e.contribution_count,
                summed_relevance=e.summed_relevance,
                expertise_score=e.expertise_score,
            )
            for e in experts
        ]

    async def get_related_clusters(
        self, cluster_id: str, limit: int = 5, min_similarity: float = 0.5
    ) -> list[RelatedCluster]:
        cluster = await self.graph_repo.get_cluster(cluster_id)
        if cluster is None or not cluster.centroid_embedding:
            return []

        related = []
        for other in await self.graph_repo.list_clusters(cluster.organization_id):
            if other.id == cluster.id or not other.centroid_embedding:
                continue
            similarity = cosine_similarity(cluster.centroid_embedding, other.centroid_embedding)
            if similarity >= min_similarity:
                related.append(
                    RelatedCluster(cluster_id=other.id, name=other.name, similarity=similarity)
                )

        related.sort(key=lambda r: r.similarity, reverse=True)
        return related[:limit]

    # ------------------------------------------------------------------
    # Cluster management
    # ------------------------------------------------------------------

    async def _require_cluster(self, cluster_id: str) -> TopicCluster:
        cluster = await self.graph_repo.get_cluster(cluster_id)
        if cluster is None:
            raise NotFoundError("TopicCluster", cluster_id)
        return cluster

    async def _embed_cluster_text(
        self, name: str, description: str | None, tags: Sequence[str]
    ) -> list[float] | None:
        if self.embedding_service is None:
            return None
        text = f"{name} {description or ''} {' '.join(tags)}".strip()
        try:
            return await self.embedding_service.embed_text(text)
        except Exception as e:
            logger.warning(f"Cluster embedding failed for '{name}': {e}")
            return None

    async def create_cluster(self, data: CreateTopicClusterInput) -> TopicCluster:
        centroid = await self._embed_cluster_text(data.name, data.description, data.tags)
        try:
            cluster = await self.graph_repo.add_cluster(
                TopicCluster(
                    id=generate_uuid(),
                    organization_id=data.organization_id,
                    name=data.name,
                    description=data.description,
                    tags=list(data.tags),
                    centroid_embedding=centroid,
                    member_count=0,
                )
            )
            if data.item_ids:
                await self.graph_repo.add_members(
                    cluster.id, [(item_id, 1.0) for item_id in dict.fromkeys(data.item_ids)]
                )
                await self._recompute_expertise(cluster)
            await self.graph_repo.commit()
        except Exception as e:
            await self.graph_repo.rollback()
            raise DatabaseError("create_cluster", e) from e
        return cluster

    async def get_cluster(self, cluster_id: str) -> ClusterDetail:
        cluster = await self._require_cluster(cluster_id)
        return ClusterDetail(cluster=cluster, members=await self.graph_repo.get_members(cluster_id))

    async def list_clusters(
        self, organization_id: str, limit: int = 50, offset: int = 0
    ) -> list[TopicCluster]:
        return await self.graph_repo.list_clusters(organization_id, limit=limit, offset=offset)

    async def update_cluster(
        self, cluster_id: str, data: UpdateTopicClusterInput
    ) -> TopicCluster:
        cluster = await self._require_cluster(cluster_id)
        changes = data.model_dump(exclude_unset=True)
        if not changes:
            return cluster

        for key, value in changes.items():
            setattr(cluster, key, value)

        centroid = await self._embed_cluster_text(
            cluster.name, cluster.description, cluster.tags or []
        )
        if centroid is not None:
            cluster.centroid_embedding = centroid

        try:
            await self.graph_repo.commit()
        except Exception as e:
            await self.graph_repo.rollback()
            raise DatabaseError("update_cluster", e) from e
        return cluster

    async def delete_cluster(self, cluster_id: str) -> None:
        cluster = await self._require_cluster(cluster_id)
        try:
            await self.graph_repo.delete_cluster(cluster)
            await self.graph_repo.commit()
        except Exception as e:
            await self.graph_repo.rollback()
            raise DatabaseError("delete_cluster", e) from e
        logger.info(f"Deleted topic cluster {cluster_id}")

    async def add_to_cluster(
        self, cluster_id: str, item_ids: Sequence[str], relevance_score: float = 1.0
    ) -> int:
        """Add items to a cluster; returns the new member count."""
        cluster = await self._require_cluster(cluster_id)
        relevance_score = max(0.0, min(1.0, relevance_score))
        try:
            count = await self.graph_repo.add_members(
                cluster.id, [(item_id, relevance_score) for item_id in dict.fromkeys(item_ids)]
            )
            await self._recompute_expertise(cluster)
            await self.graph_repo.commit()
        except Exception as e:
            await self.graph_repo.rollback()
            raise DatabaseError("add_to_cluster", e) from e
        return count

    async def remove_from_cluster(self, cluster_id: str, item_ids: Sequence[str]) -> int:
        """Remove items from a cluster; returns the new member count."""
        cluster = await self._require_cluster(cluster_id)
        try:
            count = await self.graph_repo.remove_members(cluster.id, list(item_ids))
            await self._recompute_expertise(cluster)
            await self.graph_repo.commit()
        except Exception as e:
            await self.graph_repo.rollback()
            raise DatabaseError("remove_from_cluster", e) from e
        return count

    # ------------------------------------------------------------------
    # Topic extraction
    # ------------------------------------------------------------------

    async def extract_topics(self, item_id: str) -> list[ExtractedTopic]:
        item = await self.content_repo.get_item(item_id)
        if item is None:
            raise NotFoundError("ContentItem", item_id)

        content = f"{item.title or ''} {item.content or ''}".strip()
        if len(content) < MIN_TOPIC_CONTENT_LENGTH or self.llm is None:
            return []

        try:
            response = await self.llm.generate(
                TOPIC_EXTRACTION_PROMPT.format(content=content[:TOPIC_CONTENT_MAX_CHARS]),
                temperature=0.2,
                max_tokens=512,
            )
        except Exception as e:
            logger.warning(f"Topic extraction failed for item {item_id}: {e}")
            return []

        return parse_topics(response, min_confidence=self.settings.topic_min_confidence)


def get_topic_clusterer(session: AsyncSession) -> TopicClusterer:
    """Create a TopicClusterer with the shared embedding service and LLM client."""
    return TopicClusterer(
        ContentRepository(get_session_maker()),
        GraphRepository(session),
        embedding_service=get_embedding_service(),
        llm=get_llm_client(),
    )
