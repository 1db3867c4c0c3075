"""Cross-source relationship detection between content items.

Four strategies propose candidate edges:
- explicit: URLs, ``#<external id>`` references and title mentions
- semantic: cosine similarity of stored embeddings
- temporal: items from different sources created close together
- entity: items from different sources sharing tags or an author

Candidates are deduplicated by (source, target, type) keeping the highest
confidence, filtered by a minimum confidence and optionally persisted as
``content_relationships`` rows.
"""

import asyncio
import re
from datetime import UTC, datetime
from typing import Iterable, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from config import Settings, get_settings
from db.content_repository import ContentRepository
from db.graph_repository import GraphRepository
from db.postgres import get_session_maker
from models.errors import DatabaseError, InvalidInputError
from models.postgres import (
    ContentItem,
    ContentRelationship,
    DetectionStrategy,
    RelationshipType,
)
from models.schemas import (
    DEFAULT_STRATEGIES,
    DetectionError,
    DetectionOptions,
    DetectionResult,
    RelationshipCandidate,
    SimilarItem,
)
from utils.logging import get_logger
from utils.vectors import cosine_similarity

logger = get_logger(__name__)

URL_PATTERN = re.compile(r"https?://[^\s<>\"{}|\\^`\[\]]+", re.IGNORECASE)

# (max hours apart, confidence), checked in order
TEMPORAL_TIERS = ((1.0, 0.8), (4.0, 0.7), (24.0, 0.5))

MIN_TITLE_LENGTH = 5
MIN_SHARED_TAGS = 2
SAME_AUTHOR_CONFIDENCE = 0.7


def _source_text(item: ContentItem) -> str:
    return f"{item.title or ''} {item.content or ''}"


def _item_time(item: ContentItem) -> datetime | None:
    value = item.created_at_source or item.created_at
    if value is not None and value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value


def extract_urls(item: ContentItem) -> list[str]:
    """URLs that identify an item: its metadata/url fields plus URLs in its text."""
    urls: list[str] = []
    metadata_url = (item.metadata_ or {}).get("url")
    if isinstance(metadata_url, str) and metadata_url:
        urls.append(metadata_url)
    if item.url:
        urls.append(item.url)
    urls.extend(URL_PATTERN.findall(_source_text(item)))
    return list(dict.fromkeys(urls))


def detect_explicit_references(
    source: ContentItem, targets: Iterable[ContentItem]
) -> list[RelationshipCandidate]:
    candidates = []
    text = _source_text(source)

    for target in targets:
        for url in extract_urls(target):
            if url in text:
                candidates.append(
                    RelationshipCandidate(
                        source_item_id=source.id,
                        target_item_id=target.id,
                        relationship_type=RelationshipType.REFERENCES,
                        confidence=0.95,
                        reason=f"Source contains URL reference to target: {url}",
                        metadata={"url": url},
                    )
                )

        if target.external_id:
            # "#123" but not "#1234"
            pattern = re.compile(rf"#{re.escape(target.external_id)}(?:\D|$)", re.IGNORECASE)
            if pattern.search(text):
                candidates.append(
                    RelationshipCandidate(
                        source_item_id=source.id,
                        target_item_id=target.id,
                        relationship_type=RelationshipType.REFERENCES,
                        confidence=0.90,
                        reason=f"Source references target by ID: #{target.external_id}",
                        metadata={"external_id": target.external_id},
                    )
                )

        if target.title and len(target.title) > MIN_TITLE_LENGTH:
            if target.title.lower() in text.lower():
                candidates.append(
                    RelationshipCandidate(
                        source_item_id=source.id,
                        target_item_id=target.id,
                        relationship_type=RelationshipType.MENTIONS,
                        confidence=0.80,
                        reason=f'Source mentions target title: "{target.title}"',
                    )
                )

    return candidates


def detect_semantic_similarity(
    source: ContentItem, targets: Iterable[ContentItem], min_confidence: float
) -> list[RelationshipCandidate]:
    if not source.embedding_vector:
        return []

    candidates = []
    for target in targets:
        if not target.embedding_vector:
            continue
        similarity = cosine_similarity(source.embedding_vector, target.embedding_vector)
        if similarity >= min_confidence:
            candidates.append(
                RelationshipCandidate(
                    source_item_id=source.id,
                    target_item_id=target.id,
                    relationship_type=RelationshipType.SIMILAR_TO,
                    confidence=similarity,
                    reason=f"Semantic similarity: {similarity * 100:.1f}%",
                    metadata={"similarity": similarity},
                )
            )
    return candidates


def detect_temporal_proximity(
    source: ContentItem, targets: Iterable[ContentItem]
) -> list[RelationshipCandidate]:
    source_time = _item_time(source)
    if source_time is None:
        return []

    candidates = []
    for target in targets:
        if target.source_id == source.source_id:
            continue
        target_time = _item_time(target)
        if target_time is None:
            continue

        hours_apart = abs((source_time - target_time).total_seconds()) / 3600
        confidence = next(
            (conf for max_hours, conf in TEMPORAL_TIERS if hours_apart <= max_hours),
            None,
        )
        if confidence is None:
            continue

        candidates.append(
            RelationshipCandidate(
                source_item_id=source.id,
                target_item_id=target.id,
                relationship_type=RelationshipType.RELATES_TO,
                confidence=confidence,
                reason=f"Temporal proximity: {hours_apart:.1f} hours apart",
                metadata={
                    "hours_apart": hours_apart,
                    "source_type": source.type,
                    "target_type": target.type,
                },
            )
        )
    return candidates


def detect_entity_co_occurrence(
    source: ContentItem, targets: Iterable[ContentItem]
) -> list[RelationshipCandidate]:
    candidates = []
    source_tags = set(source.tags or [])
    source_author = source.author_external or source.author_id

    for target in targets:
        if target.source_id == source.source_id:
            continue

        shared_tags = sorted(source_tags & set(target.tags or []))
        if len(shared_tags) >= MIN_SHARED_TAGS:
            candidates.append(
                RelationshipCandidate(
                    source_item_id=source.id,
                    target_item_id=target.id,
                    relationship_type=RelationshipType.RELATES_TO,
                    confidence=min(0.9, 0.5 + 0.1 * len(shared_tags)),
                    reason=f"Shared tags: {', '.join(shared_tags)}",
                    metadata={"shared_tags": shared_tags},
                )
            )

        target_author = target.author_external or target.author_id
        if source_author and target_author and source_author == target_author:
            candidates.append(
                RelationshipCandidate(
                    source_item_id=source.id,
                    target_item_id=target.id,
                    relationship_type=RelationshipType.RELATES_TO,
                    confidence=SAME_AUTHOR_CONFIDENCE,
                    reason=f"Same author: {source.author_name or source_author}",
                    metadata={"author": source_author},
                )
            )
    return candidates


def deduplicate_candidates(
    candidates: Iterable[RelationshipCandidate],
) -> list[RelationshipCandidate]:
    """Keep one candidate per (source, target, type): the most confident one."""
    best: dict[tuple[str, str, str], RelationshipCandidate] = {}
    for candidate in candidates:
        existing = best.get(candidate.key)
        if existing is None or candidate.confidence > existing.confidence:
            best[candidate.key] = candidate
    return list(best.values())


def _normalize_strategies(
    strategies: Sequence[str | DetectionStrategy] | None,
) -> list[DetectionStrategy]:
    if strategies is None:
        return list(DEFAULT_STRATEGIES)
    try:
        return [DetectionStrategy(s) for s in strategies]
    except ValueError as e:
        raise InvalidInputError(f"Unknown detection strategy: {e}") from e


def run_strategies(
    item: ContentItem,
    others: Sequence[ContentItem],
    strategies: Sequence[DetectionStrategy],
    min_confidence: float,
) -> list[RelationshipCandidate]:
    """Run the selected strategies for one item against its neighbours."""
    candidates: list[RelationshipCandidate] = []
    if DetectionStrategy.EXPLICIT in strategies:
        candidates.extend(detect_explicit_references(item, others))
    if DetectionStrategy.SEMANTIC in strategies:
        candidates.extend(detect_semantic_similarity(item, others, min_confidence))
    if DetectionStrategy.TEMPORAL in strategies:
        candidates.extend(detect_temporal_proximity(item, others))
    if DetectionStrategy.ENTITY in strategies:
        candidates.extend(detect_entity_co_occurrence(item, others))
    return candidates


class RelationshipDetector:
    """Detects and persists relationships between content items."""

    def __init__(
        self,
        content_repo: ContentRepository,
        graph_repo: GraphRepository,
        settings: Settings | None = None,
    ):
        self.content_repo = content_repo
        self.graph_repo = graph_repo
        self.settings = settings or get_settings()

    async def detect_for_item(
        self,
        item_id: str,
        min_confidence: float | None = None,
        strategies: Sequence[str | DetectionStrategy] | None = None,
    ) -> list[RelationshipCandidate]:
        """Candidates for one item against other items of its organization.

        Returns [] for an unknown item. Nothing is persisted.
        """
        if min_confidence is None:
            min_confidence = self.settings.relationship_min_confidence
        selected = _normalize_strategies(strategies)

        item = await self.content_repo.get_item(item_id)
        if item is None:
            return []

        others = await self.content_repo.list_items(
            item.organization_id,
            limit=self.settings.relationship_item_limit,
            exclude_id=item.id,
        )
        candidates = run_strategies(item, others, selected, min_confidence)
        return [
            c for c in deduplicate_candidates(candidates) if c.confidence >= min_confidence
        ]

    async def _resolve_items(
        self, item_ids: Sequence[str], errors: list[DetectionError]
    ) -> list[ContentItem]:
        semaphore = asyncio.Semaphore(self.settings.relationship_fetch_concurrency)

        async def fetch(item_id: str) -> ContentItem | None:
            async with semaphore:
                try:
                    return await self.content_repo.get_item(item_id)
                except Exception as e:
                    logger.error(f"Failed to fetch content item {item_id}: {e}")
                    errors.append(
                        DetectionError(item_id=item_id, stage="fetch", message=str(e))
                    )
                    return None

        # dict.fromkeys drops duplicate ids but keeps their order
        results = await asyncio.gather(*(fetch(i) for i in dict.fromkeys(item_ids)))
        return [item for item in results if item is not None]

    async def detect_relationships(self, options: DetectionOptions) -> DetectionResult:
        """Detect (and by default persist) relationships across a scope of items.

        The scope is either ``options.item_ids`` or every item of
        ``options.organization_id`` (optionally one source). Failures on a
        single item or candidate are recorded in ``errors`` and do not stop
        the batch.
        """
        errors: list[DetectionError] = []

        if options.item_ids:
            items = await self._resolve_items(options.item_ids, errors)
        elif options.organization_id:
            items = await self.content_repo.list_items(
                options.organization_id,
                source_id=options.source_id,
                limit=self.settings.relationship_scope_limit,
            )
        else:
            raise InvalidInputError("Either item_ids or organization_id is required")

        candidates: list[RelationshipCandidate] = []
        for item in items:
            others = [other for other in items if other.id != item.id]
            try:
                candidates.extend(
                    run_strategies(item, others, options.strategies, options.min_confidence)
                )
            except Exception as e:
                logger.error(f"Relationship detection failed for item {item.id}: {e}")
                errors.append(DetectionError(item_id=item.id, stage="detect", message=str(e)))

        unique = [
            c
            for c in deduplicate_candidates(candidates)
            if c.confidence >= options.min_confidence
        ][: options.max_results]

        result = DetectionResult(candidates=unique, errors=errors)
        if options.create_relationships:
            await self._persist_candidates(unique, result)

        logger.info(
            f"Relationship detection complete: {len(items)} items, "
            f"{len(unique)} candidates, {result.created} created, "
            f"{result.skipped} skipped, {len(result.errors)} errors",
            extra={
                "organization_id": options.organization_id,
                "strategies": [s.value for s in options.strategies],
            },
        )
        return result

    async def _persist_candidates(
        self, candidates: Sequence[RelationshipCandidate], result: DetectionResult
    ) -> None:
        for candidate in candidates:
            try:
                relationship_id = await self.graph_repo.create_relationship(candidate)
                await self.graph_repo.commit()
            except Exception as e:
                await self.graph_repo.rollback()
                logger.error(
                    f"Failed to create relationship {candidate.source_item_id} -> "
                    f"{candidate.target_item_id} ({candidate.relationship_type.value}): {e}"
                )
                result.errors.append(
                    DetectionError(
                        item_id=candidate.source_item_id,
                        target_item_id=candidate.target_item_id,
                        stage="persist",
                        message=str(e),
                    )
                )
                continue

            if relationship_id is None:
                result.skipped += 1
            else:
                result.created += 1

    async def create_relationships(
        self, candidates: Sequence[RelationshipCandidate]
    ) -> list[str]:
        """Persist candidates; returns ids of the edges that did not exist yet."""
        created: list[str] = []
        try:
            for candidate in candidates:
                relationship_id = await self.graph_repo.create_relationship(candidate)
                if relationship_id is not None:
                    created.append(relationship_id)
            await self.graph_repo.commit()
        except Exception as e:
            await self.graph_repo.rollback()
            raise DatabaseError("create_relationships", e) from e
        return created

    async def get_relationships(
        self, item_id: str, direction: str = "both"
    ) -> list[ContentRelationship]:
        """Stored edges touching an item (``outgoing``, ``incoming`` or ``both``)."""
        if direction not in ("outgoing", "incoming", "both"):
            raise InvalidInputError(f"Unknown relationship direction: {direction}")
        return await self.graph_repo.get_relationships(item_id, direction=direction)

    async def find_similar_items(
        self,
        item_id: str,
        limit: int = 10,
        min_similarity: float | None = None,
    ) -> list[SimilarItem]:
        """Nearest same-organization items by embedding similarity."""
        if min_similarity is None:
            min_similarity = self.settings.similar_items_min_similarity

        item = await self.content_repo.get_item(item_id)
        if item is None or not item.embedding_vector:
            return []

        others = await self.content_repo.list_items(
            item.organization_id,
            limit=self.settings.relationship_scope_limit,
            embedded_only=True,
            exclude_id=item.id,
        )
        scored = [
            SimilarItem(
                item_id=other.id,
                title=other.title,
                similarity=cosine_similarity(item.embedding_vector, other.embedding_vector),
            )
            for other in others
        ]
        scored = [s for s in scored if s.similarity >= min_similarity]
        scored.sort(key=lambda s: s.similarity, reverse=True)
        return scored[:limit]


def get_relationship_detector(session: AsyncSession) -> RelationshipDetector:
    """Create a RelationshipDetector writing edges through the given session."""
    return RelationshipDetector(ContentRepository(get_session_maker()), GraphRepository(session))
