import enum
from datetime import UTC, datetime
from typing import Optional
from uuid import uuid4

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from db.postgres import Base


def generate_uuid() -> str:
    return str(uuid4())


def utc_now() -> datetime:
    return datetime.now(UTC)


class RelationshipType(str, enum.Enum):
    REFERENCES = "references"
    MENTIONS = "mentions"
    SIMILAR_TO = "similar_to"
    RELATES_TO = "relates_to"


class DetectionStrategy(str, enum.Enum):
    EXPLICIT = "explicit"
    SEMANTIC = "semantic"
    TEMPORAL = "temporal"
    ENTITY = "entity"


class DecisionStatus(str, enum.Enum):
    PROPOSED = "proposed"
    DECIDED = "decided"
    IMPLEMENTED = "implemented"
    REVISITED = "revisited"
    SUPERSEDED = "superseded"


class DecisionType(str, enum.Enum):
    TECHNICAL = "technical"
    PRODUCT = "product"
    PROCESS = "process"
    RESOURCE = "resource"
    STRATEGIC = "strategic"
    TEAM = "team"
    OTHER = "other"


class ParticipantRole(str, enum.Enum):
    PROPOSER = "proposer"
    APPROVER = "approver"
    PARTICIPANT = "participant"
    OBJECTOR = "objector"


class EvidenceType(str, enum.Enum):
    ORIGIN = "origin"
    DISCUSSION = "discussion"
    DOCUMENTATION = "documentation"
    IMPLEMENTATION = "implementation"
    REVISION = "revision"
    SUPERSEDED = "superseded"


class EvidenceStage(str, enum.Enum):
    PROPOSED = "proposed"
    DISCUSSED = "discussed"
    DECIDED = "decided"
    DOCUMENTED = "documented"
    IMPLEMENTED = "implemented"
    REVISED = "revised"


class LinkType(str, enum.Enum):
    SUPERSEDES = "supersedes"
    RELATED = "related"
    OUTCOME = "outcome"


class ContentItem(Base):
    """Ingested content (messages, issues, documents). Read-only to the engine."""

    __tablename__ = "content_items"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    organization_id: Mapped[str] = mapped_column(String(36), index=True)
    source_id: Mapped[str] = mapped_column(String(36), index=True)
    external_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    type: Mapped[str] = mapped_column(String(50), default="document")
    title: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    content: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    url: Mapped[Optional[str]] = mapped_column(String(2048), nullable=True)
    tags: Mapped[list] = mapped_column(JSON, default=list)
    author_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    author_external: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    author_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    embedding_vector: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    metadata_: Mapped[dict] = mapped_column("metadata", JSON, default=dict)
    created_at_source: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )


class ContentRelationship(Base):
    __tablename__ = "content_relationships"
    __table_args__ = (
        UniqueConstraint(
            "source_item_id",
            "target_item_id",
            "relationship_type",
            name="uq_content_relationship",
        ),
        CheckConstraint(
            "confidence >= 0 AND confidence <= 1", name="ck_relationship_confidence"
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    source_item_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("content_items.id", ondelete="CASCADE"), index=True
    )
    target_item_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("content_items.id", ondelete="CASCADE"), index=True
    )
    relationship_type: Mapped[str] = mapped_column(String(30))
    confidence: Mapped[float] = mapped_column(Float)
    metadata_: Mapped[dict] = mapped_column("metadata", JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


class TopicCluster(Base):
    __tablename__ = "topic_clusters"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    organization_id: Mapped[str] = mapped_column(String(36), index=True)
    name: Mapped[str] = mapped_column(String(255))
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    tags: Mapped[list] = mapped_column(JSON, default=list)
    centroid_embedding: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    member_count: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )

    memberships: Mapped[list["ClusterMembership"]] = relationship(
        back_populates="cluster",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    expertise: Mapped[list["TopicExpertise"]] = relationship(
        back_populates="cluster",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class ClusterMembership(Base):
    __tablename__ = "cluster_memberships"
    __table_args__ = (
        UniqueConstraint("cluster_id", "content_item_id", name="uq_cluster_membership"),
        CheckConstraint(
            "relevance_score >= 0 AND relevance_score <= 1",
            name="ck_membership_relevance",
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    cluster_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("topic_clusters.id", ondelete="CASCADE"), index=True
    )
    content_item_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("content_items.id", ondelete="CASCADE"), index=True
    )
    relevance_score: Mapped[float] = mapped_column(Float, default=1.0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    cluster: Mapped["TopicCluster"] = relationship(back_populates="memberships")


class TopicExpertise(Base):
    __tablename__ = "topic_expertise"
    __table_args__ = (
        UniqueConstraint("cluster_id", "author_key", name="uq_topic_expertise"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    cluster_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("topic_clusters.id", ondelete="CASCADE"), index=True
    )
    organization_id: Mapped[str] = mapped_column(String(36), index=True)
    author_key: Mapped[str] = mapped_column(String(255))
    user_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    author_external: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    author_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    contribution_count: Mapped[int] = mapped_column(Integer, default=0)
    summed_relevance: Mapped[float] = mapped_column(Float, default=0.0)
    expertise_score: Mapped[float] = mapped_column(Float, default=0.0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )

    cluster: Mapped["TopicCluster"] = relationship(back_populates="expertise")


class Decision(Base):
    __tablename__ = "decisions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    organization_id: Mapped[str] = mapped_column(String(36), index=True)
    content_item_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("content_items.id", ondelete="SET NULL"), nullable=True
    )
    summary: Mapped[str] = mapped_column(Text)
    context: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    reasoning: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), default=DecisionStatus.DECIDED.value, index=True
    )
    decision_type: Mapped[str] = mapped_column(
        String(20), default=DecisionType.OTHER.value
    )
    confidence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    tags: Mapped[list] = mapped_column(JSON, default=list)
    embedding_vector: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    superseded_by_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("decisions.id", ondelete="SET NULL"), nullable=True
    )
    metadata_: Mapped[dict] = mapped_column("metadata", JSON, default=dict)
    decided_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )

    participants: Mapped[list["DecisionParticipant"]] = relationship(
        back_populates="decision",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    evidence: Mapped[list["DecisionEvidence"]] = relationship(
        back_populates="decision",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    links: Mapped[list["DecisionLink"]] = relationship(
        back_populates="decision",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class DecisionParticipant(Base):
    __tablename__ = "decision_participants"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    decision_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("decisions.id", ondelete="CASCADE"), index=True
    )
    user_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    speaker_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    role: Mapped[str] = mapped_column(String(20), default=ParticipantRole.PARTICIPANT.value)
    attributed_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    decision: Mapped["Decision"] = relationship(back_populates="participants")


class DecisionEvidence(Base):
    __tablename__ = "decision_evidence"
    __table_args__ = (
        UniqueConstraint(
            "decision_id",
            "content_item_id",
            "evidence_type",
            name="uq_decision_evidence",
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    decision_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("decisions.id", ondelete="CASCADE"), index=True
    )
    content_item_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("content_items.id", ondelete="CASCADE"), index=True
    )
    organization_id: Mapped[str] = mapped_column(String(36), index=True)
    evidence_type: Mapped[str] = mapped_column(
        String(20), default=EvidenceType.DISCUSSION.value
    )
    stage: Mapped[str] = mapped_column(String(20), default=EvidenceStage.DECIDED.value)
    confidence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    excerpt: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    decision: Mapped["Decision"] = relationship(back_populates="evidence")


class DecisionLink(Base):
    __tablename__ = "decision_links"
    __table_args__ = (
        UniqueConstraint(
            "decision_id",
            "entity_type",
            "entity_id",
            "link_type",
            name="uq_decision_link",
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    decision_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("decisions.id", ondelete="CASCADE"), index=True
    )
    entity_type: Mapped[str] = mapped_column(String(50))
    entity_id: Mapped[str] = mapped_column(String(255))
    link_type: Mapped[str] = mapped_column(String(20))
    entity_ref: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    url: Mapped[Optional[str]] = mapped_column(String(2048), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    decision: Mapped["Decision"] = relationship(back_populates="links")
