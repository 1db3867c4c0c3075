"""Decision lifecycle tracking.

Decisions move through a small state machine:

    proposed -> decided -> implemented
    decided <-> revisited

Any decision that is not yet superseded can be replaced by a newer one through
supersede(), which is the only way into the terminal ``superseded`` state.
"""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from config import Settings, get_settings
from db.content_repository import ContentRepository
from db.decision_repository import DecisionRepository
from db.postgres import get_session_maker
from models.errors import (
    DatabaseError,
    InvalidInputError,
    InvalidTransitionError,
    NotFoundError,
)
from models.postgres import (
    Decision,
    DecisionEvidence,
    DecisionLink,
    DecisionParticipant,
    DecisionStatus,
    DecisionType,
    EvidenceStage,
    EvidenceType,
    LinkType,
    generate_uuid,
    utc_now,
)
from models.schemas import (
    CreateDecisionInput,
    DecisionFilters,
    EvidenceInput,
    ExtractedDecision,
    ParticipantInput,
    RelatedDecision,
    TimelineEntry,
    TimelineEvidence,
    UpdateDecisionInput,
)
from services.embeddings import EmbeddingService, get_embedding_service
from services.llm import LLMClient, get_llm_client
from services.response_parsers import parse_extracted_decisions
from utils.logging import get_logger
from utils.vectors import cosine_similarity

logger = get_logger(__name__)

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    DecisionStatus.PROPOSED.value: frozenset({DecisionStatus.DECIDED.value}),
    DecisionStatus.DECIDED.value: frozenset(
        {DecisionStatus.IMPLEMENTED.value, DecisionStatus.REVISITED.value}
    ),
    DecisionStatus.REVISITED.value: frozenset({DecisionStatus.DECIDED.value}),
    DecisionStatus.IMPLEMENTED.value: frozenset(),
    DecisionStatus.SUPERSEDED.value: frozenset(),
}

DEFAULT_SUPERSEDED_REASON = "Superseded by newer decision"
TIMELINE_EVIDENCE_LIMIT = 5

DECISION_EXTRACTION_PROMPT = """Analyze the following content and extract any decisions that were made or proposed.
For each decision, provide:
- summary: A clear, concise summary of the decision (1-2 sentences)
- context: The surrounding context or discussion that led to this decision
- reasoning: Why this decision was made (if stated)
- decisionType: One of: technical, product, process, resource, strategic, team, other
- confidence: How confident you are this is a real decision (0-100)
- participants: Names of people involved in making this decision
- tags: Relevant tags/topics for this decision

Content:
{content}

Return a JSON array of decisions. If no decisions are found, return an empty array."""


def _enum_value(value: enum.Enum | str) -> str:
    return value.value if isinstance(value, enum.Enum) else str(value)


def validate_transition(current: str, target: str) -> bool:
    """Check a status change; returns False when it is a no-op.

    Raises InvalidTransitionError for changes the lifecycle does not allow.
    Moving into ``superseded`` always goes through supersede().
    """
    if current == target:
        return False
    if target == DecisionStatus.SUPERSEDED.value:
        raise InvalidTransitionError(current, target)
    if target not in ALLOWED_TRANSITIONS.get(current, frozenset()):
        raise InvalidTransitionError(current, target)
    return True


class DecisionLifecycleTracker:
    """Creates, evolves and links decisions and the content they came from."""

    def __init__(
        self,
        decision_repo: DecisionRepository,
        content_repo: ContentRepository,
        embedding_service: EmbeddingService | None = None,
        llm: LLMClient | None = None,
        settings: Settings | None = None,
    ):
        self.decision_repo = decision_repo
        self.content_repo = content_repo
        self.embedding_service = embedding_service
        self.llm = llm
        self.settings = settings or get_settings()

    async def _embed(
        self, summary: str, context: str | None, reasoning: str | None
    ) -> list[float] | None:
        if self.embedding_service is None:
            return None
        try:
            return await self.embedding_service.embed_decision(summary, context, reasoning)
        except Exception as e:
            logger.warning(f"Decision embedding failed, storing without vector: {e}")
            return None

    async def _require(self, decision_id: str, with_relations: bool = False) -> Decision:
        decision = await self.decision_repo.get(decision_id, with_relations=with_relations)
        if decision is None:
            raise NotFoundError("Decision", decision_id)
        return decision

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    async def create_decision(self, data: CreateDecisionInput) -> Decision:
        """Store a decision with its participants and evidence in one transaction."""
        embedding = await self._embed(data.summary, data.context, data.reasoning)
        now = utc_now()

        decision = Decision(
            id=generate_uuid(),
            organization_id=data.organization_id,
            content_item_id=data.content_item_id,
            summary=data.summary,
            context=data.context,
            reasoning=data.reasoning,
            status=data.status.value,
            decision_type=data.decision_type.value,
            confidence=data.confidence,
            tags=list(data.tags),
            embedding_vector=embedding,
            superseded_by_id=None,
            metadata_=dict(data.metadata),
            decided_at=data.decided_at
            or (now if data.status == DecisionStatus.DECIDED else None),
            created_at=now,
            updated_at=now,
        )
        rows: list[object] = [decision]
        rows.extend(
            self._participant_row(decision.id, participant)
            for participant in data.participants
        )

        # one row per (content item, evidence type); later entries win
        evidence: dict[tuple[str, str], EvidenceInput] = {}
        for entry in data.evidence:
            evidence[(entry.content_item_id, entry.evidence_type.value)] = entry
        rows.extend(
            self._evidence_row(decision.id, data.organization_id, entry)
            for entry in evidence.values()
        )

        try:
            self.decision_repo.add_all(rows)
            await self.decision_repo.flush()
            await self.decision_repo.commit()
        except Exception as e:
            await self.decision_repo.rollback()
            raise DatabaseError("create_decision", e) from e

        logger.info(
            f"Created decision {decision.id} with {len(data.participants)} participants "
            f"and {len(evidence)} evidence items",
            extra={"organization_id": data.organization_id},
        )
        return await self._require(decision.id, with_relations=True)

    @staticmethod
    def _participant_row(decision_id: str, participant: ParticipantInput) -> DecisionParticipant:
        return DecisionParticipant(
            id=generate_uuid(),
            decision_id=decision_id,
            user_id=participant.user_id,
            speaker_name=participant.speaker_name,
            role=participant.role.value,
            attributed_text=participant.attributed_text,
            created_at=utc_now(),
        )

    @staticmethod
    def _evidence_row(
        decision_id: str, organization_id: str, entry: EvidenceInput
    ) -> DecisionEvidence:
        return DecisionEvidence(
            id=generate_uuid(),
            decision_id=decision_id,
            content_item_id=entry.content_item_id,
            organization_id=organization_id,
            evidence_type=entry.evidence_type.value,
            stage=entry.stage.value,
            confidence=entry.confidence,
            excerpt=entry.excerpt,
            created_at=utc_now(),
        )

    async def get_decision(self, decision_id: str) -> Decision:
        return await self._require(decision_id, with_relations=True)

    async def update_decision(self, decision_id: str, data: UpdateDecisionInput) -> Decision:
        decision = await self._require(decision_id)
        changes = {
            key: value
            for key, value in data.model_dump(exclude_unset=True).items()
            if value is not None or key in ("context", "reasoning", "confidence")
        }
        if not changes:
            return decision

        status = changes.pop("status", None)
        if status is not None:
            status = _enum_value(status)
            if not validate_transition(decision.status, status):
                status = None

        metadata = changes.pop("metadata", None)
        text_changed = any(
            key in changes and changes[key] != getattr(decision, key)
            for key in ("summary", "context", "reasoning")
        )

        for key, value in changes.items():
            if isinstance(value, DecisionType):
                value = value.value
            if key == "tags" and value is not None:
                value = list(value)
            setattr(decision, key, value)

        if metadata is not None:
            decision.metadata_ = {**(decision.metadata_ or {}), **metadata}
        if status is not None:
            self._apply_status(decision, status)

        if text_changed:
            embedding = await self._embed(decision.summary, decision.context, decision.reasoning)
            if embedding is not None:
                decision.embedding_vector = embedding

        decision.updated_at = utc_now()
        try:
            await self.decision_repo.commit()
        except Exception as e:
            await self.decision_repo.rollback()
            raise DatabaseError("update_decision", e) from e
        return decision

    async def delete_decision(self, decision_id: str) -> None:
        decision = await self._require(decision_id)
        try:
            await self.decision_repo.delete(decision)
            await self.decision_repo.commit()
        except Exception as e:
            await self.decision_repo.rollback()
            raise DatabaseError("delete_decision", e) from e
        logger.info(f"Deleted decision {decision_id}")

    async def list_decisions(
        self, filters: DecisionFilters, limit: int = 50, offset: int = 0
    ) -> tuple[list[Decision], int]:
        return await self.decision_repo.list_decisions(filters, limit=limit, offset=offset)

    # ------------------------------------------------------------------
    # Evidence and links
    # ------------------------------------------------------------------

    async def add_evidence(
        self,
        decision_id: str,
        content_item_id: str,
        evidence_type: EvidenceType = EvidenceType.DISCUSSION,
        stage: EvidenceStage = EvidenceStage.DECIDED,
        confidence: Optional[float] = None,
        excerpt: Optional[str] = None,
    ) -> DecisionEvidence:
        """Attach content as evidence; re-adding the same (item, type) updates it."""
        decision = await self._require(decision_id)
        if confidence is not None and not 0.0 <= confidence <= 1.0:
            raise InvalidInputError(
                "Evidence confidence must be between 0 and 1",
                {"confidence": confidence},
            )

        try:
            evidence = await self.decision_repo.upsert_evidence(
                {
                    "decision_id": decision.id,
                    "content_item_id": content_item_id,
                    "organization_id": decision.organization_id,
                    "evidence_type": _enum_value(evidence_type),
                    "stage": _enum_value(stage),
                    "confidence": confidence,
                    "excerpt": excerpt,
                }
            )
            await self.decision_repo.commit()
        except Exception as e:
            await self.decision_repo.rollback()
            raise DatabaseError("add_evidence", e) from e
        return evidence

    async def link_decision(
        self,
        decision_id: str,
        entity_type: str,
        entity_id: str,
        link_type: LinkType = LinkType.RELATED,
        entity_ref: Optional[str] = None,
        url: Optional[str] = None,
    ) -> DecisionLink:
        """Link a decision to another entity, returning the existing link if present."""
        decision = await self._require(decision_id)
        try:
            link = await self.decision_repo.insert_link(
                {
                    "decision_id": decision.id,
                    "entity_type": entity_type,
                    "entity_id": entity_id,
                    "link_type": _enum_value(link_type),
                    "entity_ref": entity_ref,
                    "url": url,
                }
            )
            await self.decision_repo.commit()
        except Exception as e:
            await self.decision_repo.rollback()
            raise DatabaseError("link_decision", e) from e
        return link

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @staticmethod
    def _apply_status(decision: Decision, status: str) -> None:
        decision.status = status
        if status == DecisionStatus.DECIDED.value and decision.decided_at is None:
            decision.decided_at = utc_now()

    async def update_status(
        self,
        decision_id: str,
        status: DecisionStatus | str,
        reason: Optional[str] = None,
    ) -> Decision:
        decision = await self._require(decision_id)
        target = _enum_value(status)
        if not validate_transition(decision.status, target):
            return decision

        previous = decision.status
        self._apply_status(decision, target)
        if reason:
            decision.metadata_ = {**(decision.metadata_ or {}), "status_change_reason": reason}
        decision.updated_at = utc_now()

        try:
            await self.decision_repo.commit()
        except Exception as e:
            await self.decision_repo.rollback()
            raise DatabaseError("update_status", e) from e

        logger.info(f"Decision {decision_id} moved from {previous} to {target}")
        return decision

    async def supersede(
        self, old_decision_id: str, new_decision_id: str, reason: Optional[str] = None
    ) -> Decision:
        """Mark ``old_decision_id`` as replaced by ``new_decision_id``.

        The status change and the ``supersedes`` link from the new decision
        to the old one are committed together. Calling it again with the same
        pair is a no-op; superseding by a different decision is rejected.
        """
        if old_decision_id == new_decision_id:
            raise InvalidInputError(
                "A decision cannot supersede itself", {"decision_id": old_decision_id}
            )

        old = await self._require(old_decision_id)
        new = await self._require(new_decision_id)
        superseded = DecisionStatus.SUPERSEDED.value

        if old.status == superseded and old.superseded_by_id != new.id:
            raise InvalidTransitionError(old.status, superseded)
        if new.superseded_by_id == old.id:
            raise InvalidInputError(
                "Superseding would create a cycle",
                {"old_decision_id": old.id, "new_decision_id": new.id},
            )

        if old.status != superseded:
            old.status = superseded
            old.superseded_by_id = new.id
            old.metadata_ = {
                **(old.metadata_ or {}),
                "superseded_by": new.id,
                "superseded_reason": reason or DEFAULT_SUPERSEDED_REASON,
            }
            old.updated_at = utc_now()

        try:
            await self.decision_repo.insert_link(
                {
                    "decision_id": new.id,
                    "entity_type": "decision",
                    "entity_id": old.id,
                    "link_type": LinkType.SUPERSEDES.value,
                    "entity_ref": None,
                    "url": None,
                }
            )
            await self.decision_repo.commit()
        except Exception as e:
            await self.decision_repo.rollback()
            raise DatabaseError("supersede", e) from e

        logger.info(f"Decision {old.id} superseded by {new.id}")
        return old

    # ------------------------------------------------------------------
    # Similarity
    # ------------------------------------------------------------------

    async def find_related_decisions(
        self,
        decision_id: str,
        limit: int = 10,
        min_similarity: Optional[float] = None,
    ) -> list[RelatedDecision]:
        threshold = (
            self.settings.related_decision_min_similarity
            if min_similarity is None
            else min_similarity
        )
        decision = await self.decision_repo.get(decision_id)
        if decision is None or not decision.embedding_vector:
            return []

        related = []
        for other in await self.decision_repo.list_with_embeddings(
            decision.organization_id, exclude_id=decision.id
        ):
            similarity = cosine_similarity(decision.embedding_vector, other.embedding_vector)
            if similarity >= threshold:
                related.append(
                    RelatedDecision(
                        decision_id=other.id,
                        summary=other.summary,
                        status=other.status,
                        similarity=similarity,
                    )
                )

        related.sort(key=lambda r: r.similarity, reverse=True)
        return related[:limit]

    # ------------------------------------------------------------------
    # Extraction
    # ------------------------------------------------------------------

    async def extract_decisions_from_content(self, item_id: str) -> list[ExtractedDecision]:
        item = await self.content_repo.get_item(item_id)
        if item is None:
            raise NotFoundError("ContentItem", item_id)

        content = item.content or ""
        if len(content) < self.settings.decision_extraction_min_length or self.llm is None:
            return []

        prompt = DECISION_EXTRACTION_PROMPT.format(
            content=content[: self.settings.decision_extraction_max_chars]
        )
        try:
            response = await self.llm.generate(prompt, temperature=0.2, max_tokens=2048)
        except Exception as e:
            logger.warning(f"Decision extraction failed for item {item_id}: {e}")
            return []

        decisions = parse_extracted_decisions(
            response,
            min_confidence=self.settings.decision_extraction_min_confidence,
            min_summary_length=self.settings.decision_summary_min_length,
        )
        logger.debug(f"Extracted {len(decisions)} decisions from item {item_id}")
        return decisions

    async def record_extracted_decisions(
        self, item_id: str, extracted: Sequence[ExtractedDecision]
    ) -> list[Decision]:
        """Persist extracted decisions with the source item as origin evidence."""
        item = await self.content_repo.get_item(item_id)
        if item is None:
            raise NotFoundError("ContentItem", item_id)

        created = []
        for candidate in extracted:
            confidence = max(0.0, min(1.0, candidate.confidence / 100))
            created.append(
                await self.create_decision(
                    CreateDecisionInput(
                        organization_id=item.organization_id,
                        summary=candidate.summary,
                        context=candidate.context,
                        reasoning=candidate.reasoning,
                        decision_type=candidate.decision_type,
                        confidence=confidence,
                        tags=candidate.tags,
                        content_item_id=item.id,
                        decided_at=item.created_at_source,
                        metadata={"extracted": True},
                        participants=[
                            ParticipantInput(speaker_name=name)
                            for name in dict.fromkeys(candidate.participants)
                        ],
                        evidence=[
                            EvidenceInput(
                                content_item_id=item.id,
                                evidence_type=EvidenceType.ORIGIN,
                                stage=EvidenceStage.DECIDED,
                                confidence=confidence,
                            )
                        ],
                    )
                )
            )
        return created

    # ------------------------------------------------------------------
    # Timeline
    # ------------------------------------------------------------------

    async def get_decision_timeline(
        self,
        organization_id: str,
        limit: int = 50,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[TimelineEntry]:
        decisions = await self.decision_repo.list_in_range(
            organization_id, start=start, end=end, limit=limit
        )
        if not decisions:
            return []

        evidence_by_decision = await self.decision_repo.get_evidence_for_decisions(
            [d.id for d in decisions]
        )
        evidence_by_decision = {
            decision_id: rows[:TIMELINE_EVIDENCE_LIMIT]
            for decision_id, rows in evidence_by_decision.items()
        }
        item_ids = list(
            dict.fromkeys(
                row.content_item_id
                for rows in evidence_by_decision.values()
                for row in rows
            )
        )
        items = {item.id: item for item in await self.content_repo.get_items(item_ids)}

        timeline = []
        for decision in decisions:
            entries: list[TimelineEvidence] = []
            for row in evidence_by_decision.get(decision.id, []):
                item = items.get(row.content_item_id)
                entries.append(
                    TimelineEvidence(
                        content_item_id=row.content_item_id,
                        evidence_type=row.evidence_type,
                        stage=row.stage,
                        title=item.title if item else None,
                        type=item.type if item else None,
                        source_id=item.source_id if item else None,
                        created_at=item.created_at if item else row.created_at,
                    )
                )
            timeline.append(
                TimelineEntry(
                    decision_id=decision.id,
                    summary=decision.summary,
                    status=decision.status,
                    decision_type=decision.decision_type,
                    decided_at=decision.decided_at,
                    created_at=decision.created_at,
                    superseded_by_id=decision.superseded_by_id,
                    evidence=entries,
                )
            )
        return timeline


def get_decision_tracker(session: AsyncSession) -> DecisionLifecycleTracker:
    """Create a DecisionLifecycleTracker bound to the given session."""
    return DecisionLifecycleTracker(
        DecisionRepository(session),
        ContentRepository(get_session_maker()),
        embedding_service=get_embedding_service(),
        llm=get_llm_client(),
    )
