"""Pydantic schemas for engine inputs and results."""

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from models.postgres import (
    DecisionStatus,
    DecisionType,
    DetectionStrategy,
    EvidenceStage,
    EvidenceType,
    LinkType,
    ParticipantRole,
    RelationshipType,
)

DEFAULT_STRATEGIES = [
    DetectionStrategy.EXPLICIT,
    DetectionStrategy.SEMANTIC,
    DetectionStrategy.TEMPORAL,
]


# ---------------------------------------------------------------------------
# Relationship detection
# ---------------------------------------------------------------------------


class RelationshipCandidate(BaseModel):
    """A proposed edge between two content items, not yet persisted."""

    source_item_id: str
    target_item_id: str
    relationship_type: RelationshipType
    confidence: float = Field(..., ge=0.0, le=1.0)
    reason: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def key(self) -> tuple[str, str, str]:
        return (
            self.source_item_id,
            self.target_item_id,
            self.relationship_type.value,
        )


class DetectionOptions(BaseModel):
    """Scope and tuning for a detection batch.

    Either ``item_ids`` or ``organization_id`` must be given; ``source_id``
    narrows an organization scope to one source.
    """

    organization_id: Optional[str] = None
    source_id: Optional[str] = None
    item_ids: Optional[list[str]] = None
    strategies: list[DetectionStrategy] = Field(
        default_factory=lambda: list(DEFAULT_STRATEGIES)
    )
    min_confidence: float = Field(0.5, ge=0.0, le=1.0)
    max_results: int = Field(1000, ge=1)
    create_relationships: bool = True


class DetectionError(BaseModel):
    item_id: Optional[str] = None
    target_item_id: Optional[str] = None
    stage: Literal["fetch", "detect", "persist"]
    message: str


class DetectionResult(BaseModel):
    candidates: list[RelationshipCandidate] = Field(default_factory=list)
    created: int = 0
    skipped: int = 0
    errors: list[DetectionError] = Field(default_factory=list)


class SimilarItem(BaseModel):
    item_id: str
    title: Optional[str] = None
    similarity: float


# ---------------------------------------------------------------------------
# Topic clustering
# ---------------------------------------------------------------------------


class ClusteringOptions(BaseModel):
    organization_id: str
    source_id: Optional[str] = None
    min_cluster_size: int = Field(3, ge=1)
    max_clusters: int = Field(20, ge=1)
    similarity_threshold: float = Field(0.7, ge=-1.0, le=1.0)
    use_ai: bool = True
    persist: bool = True


class ClusterMember(BaseModel):
    item_id: str
    relevance_score: float = Field(..., ge=0.0, le=1.0)


class ClusterProposal(BaseModel):
    """A cluster found by auto-clustering (``cluster_id`` is set once stored)."""

    cluster_id: Optional[str] = None
    name: str
    description: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    centroid: list[float] = Field(default_factory=list)
    members: list[ClusterMember] = Field(default_factory=list)

    @property
    def item_ids(self) -> list[str]:
        return [member.item_id for member in self.members]


class ClusteringError(BaseModel):
    cluster_name: str
    message: str


class ClusteringResult(BaseModel):
    clusters: list[ClusterProposal] = Field(default_factory=list)
    unclustered_items: list[str] = Field(default_factory=list)
    errors: list[ClusteringError] = Field(default_factory=list)


class CreateTopicClusterInput(BaseModel):
    organization_id: str
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    item_ids: list[str] = Field(default_factory=list)


class UpdateTopicClusterInput(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    tags: Optional[list[str]] = None


class TopicExpert(BaseModel):
    author_key: str
    user_id: Optional[str] = None
    author_external: Optional[str] = None
    author_name: Optional[str] = None
    contribution_count: int
    summed_relevance: float
    expertise_score: float = Field(..., ge=0.0, le=1.0)


class RelatedCluster(BaseModel):
    cluster_id: str
    name: str
    similarity: float


class ExtractedTopic(BaseModel):
    topic: str
    confidence: float = Field(..., ge=0.0, le=1.0)


# ---------------------------------------------------------------------------
# Decisions
# ---------------------------------------------------------------------------


class ParticipantInput(BaseModel):
    user_id: Optional[str] = None
    speaker_name: Optional[str] = None
    role: ParticipantRole = ParticipantRole.PARTICIPANT
    attributed_text: Optional[str] = None


class EvidenceInput(BaseModel):
    content_item_id: str
    evidence_type: EvidenceType = EvidenceType.DISCUSSION
    stage: EvidenceStage = EvidenceStage.DECIDED
    confidence: Optional[float] = Field(None, ge=0.0, le=1.0)
    excerpt: Optional[str] = None


class CreateDecisionInput(BaseModel):
    organization_id: str
    summary: str = Field(..., min_length=1)
    context: Optional[str] = None
    reasoning: Optional[str] = None
    status: DecisionStatus = DecisionStatus.DECIDED
    decision_type: DecisionType = DecisionType.OTHER
    confidence: Optional[float] = Field(None, ge=0.0, le=1.0)
    tags: list[str] = Field(default_factory=list)
    content_item_id: Optional[str] = None
    decided_at: Optional[datetime] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    participants: list[ParticipantInput] = Field(default_factory=list)
    evidence: list[EvidenceInput] = Field(default_factory=list)

    @field_validator("status")
    @classmethod
    def not_superseded(cls, v: DecisionStatus) -> DecisionStatus:
        if v == DecisionStatus.SUPERSEDED:
            raise ValueError("decisions cannot be created as superseded")
        return v


class UpdateDecisionInput(BaseModel):
    summary: Optional[str] = Field(None, min_length=1)
    context: Optional[str] = None
    reasoning: Optional[str] = None
    status: Optional[DecisionStatus] = None
    decision_type: Optional[DecisionType] = None
    confidence: Optional[float] = Field(None, ge=0.0, le=1.0)
    tags: Optional[list[str]] = None
    metadata: Optional[dict[str, Any]] = None


class DecisionFilters(BaseModel):
    organization_id: str
    status: Optional[list[DecisionStatus]] = None
    decision_type: Optional[DecisionType] = None
    tag: Optional[str] = None
    content_item_id: Optional[str] = None
    created_after: Optional[datetime] = None
    created_before: Optional[datetime] = None


class ExtractedDecision(BaseModel):
    """A decision proposed by the extraction model (confidence on a 0-100 scale)."""

    summary: str
    context: Optional[str] = None
    reasoning: Optional[str] = None
    decision_type: DecisionType = DecisionType.OTHER
    confidence: float = Field(..., ge=0, le=100)
    participants: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)


class RelatedDecision(BaseModel):
    decision_id: str
    summary: str
    status: DecisionStatus
    similarity: float


class TimelineEvidence(BaseModel):
    content_item_id: str
    evidence_type: EvidenceType
    stage: EvidenceStage
    title: Optional[str] = None
    type: Optional[str] = None
    source_id: Optional[str] = None
    created_at: Optional[datetime] = None


class TimelineEntry(BaseModel):
    decision_id: str
    summary: str
    status: DecisionStatus
    decision_type: DecisionType
    decided_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    superseded_by_id: Optional[str] = None
    evidence: list[TimelineEvidence] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Gap and conflict analysis
# ---------------------------------------------------------------------------

GapType = Literal["no_documentation", "no_implementation", "no_evidence", "stale"]
GapPriority = Literal["high", "medium", "low"]
ConflictType = Literal[
    "direct_contradiction", "supersession_unclear", "scope_overlap"
]


class UndocumentedDecision(BaseModel):
    decision_id: str
    summary: str
    status: DecisionStatus
    gap_type: GapType
    priority: GapPriority
    reason: str
    age_days: int


class ConflictVerdict(BaseModel):
    result: Literal["CONFLICT", "SUPERSEDE", "OVERLAP", "NO_CONFLICT"]
    confidence: Optional[float] = None
    explanation: Optional[str] = None


class DecisionConflict(BaseModel):
    decision_a_id: str
    decision_b_id: str
    decision_a_summary: str
    decision_b_summary: str
    conflict_type: ConflictType
    similarity: float
    confidence: float = Field(..., ge=0.0, le=1.0)
    explanation: str


class TopicCoverageGap(BaseModel):
    cluster_id: str
    name: str
    member_count: int
    coverage: float = Field(..., ge=0.0, le=1.0)
    message: Optional[str] = None
    recommendation: Optional[str] = None


class KnowledgeGapReport(BaseModel):
    organization_id: str
    generated_at: datetime
    undocumented_decisions: list[UndocumentedDecision] = Field(default_factory=list)
    conflicts: list[DecisionConflict] = Field(default_factory=list)
    topic_coverage: list[TopicCoverageGap] = Field(default_factory=list)
