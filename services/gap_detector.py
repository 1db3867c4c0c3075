"""Knowledge gap and decision conflict analysis.

Read-only reports over the decision and topic cluster stores: decisions that
lack documentation or evidence, topics with thin coverage, and pairs of
decisions that look semantically close enough to be in conflict. Conflict
candidates are pre-filtered by embedding similarity and then arbitrated by
the LLM, one pair at a time.
"""

from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy.ext.asyncio import AsyncSession

from config import Settings, get_settings
from db.decision_repository import DecisionRepository
from db.graph_repository import GraphRepository
from models.errors import ExternalServiceError
from models.postgres import Decision, DecisionStatus, EvidenceType, utc_now
from models.schemas import (
    DecisionConflict,
    KnowledgeGapReport,
    TopicCoverageGap,
    UndocumentedDecision,
)
from services.embeddings import EmbeddingService, conflict_text, get_embedding_service
from services.llm import LLMClient, get_llm_client
from services.response_parsers import parse_conflict_verdict
from utils.logging import LogContext, get_logger
from utils.vectors import cosine_similarity

logger = get_logger(__name__)

CONFLICT_ANALYSIS_PROMPT = """Analyze these two decisions for potential conflicts:

Decision 1: "{summary_a}"
Reasoning: {reasoning_a}
Status: {status_a}

Decision 2: "{summary_b}"
Reasoning: {reasoning_b}
Status: {status_b}

Determine if these decisions:
1. CONFLICT - They directly contradict each other
2. SUPERSEDE - One should replace the other
3. OVERLAP - They cover similar scope
4. NO_CONFLICT - They are compatible

Respond:
RESULT: [CONFLICT|SUPERSEDE|OVERLAP|NO_CONFLICT]
CONFIDENCE: [0.0-1.0]
EXPLANATION: [Brief explanation]"""

CONFLICT_TYPES = {
    "CONFLICT": "direct_contradiction",
    "SUPERSEDE": "supersession_unclear",
    "OVERLAP": "scope_overlap",
}

PRIORITY_ORDER = {"high": 0, "medium": 1, "low": 2}

FULL_COVERAGE_MEMBERS = 10


def _age_days(created_at: datetime | None, now: datetime) -> int:
    if created_at is None:
        return 0
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=UTC)
    return max(0, (now - created_at).days)


class KnowledgeGapDetector:
    """Finds undocumented decisions, thin topics and conflicting decisions."""

    def __init__(
        self,
        decision_repo: DecisionRepository,
        graph_repo: GraphRepository,
        embedding_service: EmbeddingService | None = None,
        llm: LLMClient | None = None,
        settings: Settings | None = None,
    ):
        self.decision_repo = decision_repo
        self.graph_repo = graph_repo
        self.embedding_service = embedding_service
        self.llm = llm
        self.settings = settings or get_settings()

    # ------------------------------------------------------------------
    # Undocumented decisions
    # ------------------------------------------------------------------

    async def find_undocumented_decisions(
        self, organization_id: str
    ) -> list[UndocumentedDecision]:
        """Classify decided and implemented decisions by their first missing piece.

        Checks run in order and the first match wins: a decided decision
        without documentation, an implemented one without implementation
        evidence, any decision with no evidence at all, and finally a decided
        decision older than the stale threshold.
        """
        decisions = await self.decision_repo.list_by_status(
            organization_id,
            [DecisionStatus.DECIDED.value, DecisionStatus.IMPLEMENTED.value],
        )
        if not decisions:
            return []

        evidence = await self.decision_repo.get_evidence_for_decisions(
            [d.id for d in decisions]
        )
        now = utc_now()
        gaps = []
        for decision in decisions:
            gap = self._classify(decision, evidence.get(decision.id, []), now)
            if gap is not None:
                gaps.append(gap)

        gaps.sort(key=lambda g: PRIORITY_ORDER[g.priority])
        return gaps

    def _classify(self, decision: Decision, evidence, now: datetime) -> UndocumentedDecision | None:
        types = {row.evidence_type for row in evidence}
        age = _age_days(decision.created_at, now)
        summary = decision.summary

        if decision.status == DecisionStatus.DECIDED.value and (
            EvidenceType.DOCUMENTATION.value not in types
        ):
            gap_type, priority = "no_documentation", "high"
            reason = (
                f'Decision "{summary}" was made but has no documentation. '
                "Consider adding a design doc or README update."
            )
        elif decision.status == DecisionStatus.IMPLEMENTED.value and (
            EvidenceType.IMPLEMENTATION.value not in types
        ):
            gap_type, priority = "no_implementation", "medium"
            reason = (
                f'Decision "{summary}" is marked as implemented but has no linked '
                "implementation evidence. Link the relevant PR or code."
            )
        elif not evidence:
            gap_type, priority = "no_evidence", "medium"
            reason = (
                f'Decision "{summary}" has no supporting evidence. Add links to '
                "discussions, documents, or code that led to this decision."
            )
        elif (
            decision.status == DecisionStatus.DECIDED.value
            and age > self.settings.stale_decision_days
        ):
            gap_type, priority = "stale", "low"
            reason = (
                f'Decision "{summary}" was made over {self.settings.stale_decision_days} '
                "days ago but hasn't been implemented. Review if it's still relevant."
            )
        else:
            return None

        return UndocumentedDecision(
            decision_id=decision.id,
            summary=summary,
            status=decision.status,
            gap_type=gap_type,
            priority=priority,
            reason=reason,
            age_days=age,
        )

    # ------------------------------------------------------------------
    # Conflicts
    # ------------------------------------------------------------------

    async def detect_conflicts(
        self,
        organization_id: str,
        max_decisions: int | None = None,
        similarity_threshold: float | None = None,
    ) -> list[DecisionConflict]:
        max_decisions = max_decisions or self.settings.conflict_max_decisions
        threshold = (
            self.settings.conflict_similarity_threshold
            if similarity_threshold is None
            else similarity_threshold
        )

        decisions = await self.decision_repo.list_by_status(
            organization_id,
            [
                DecisionStatus.PROPOSED.value,
                DecisionStatus.DECIDED.value,
                DecisionStatus.IMPLEMENTED.value,
            ],
            limit=max_decisions,
        )
        if len(decisions) < 2:
            return []

        embeddings = await self._embed_for_comparison(decisions)

        conflicts = []
        pairs_checked = 0
        for i in range(len(decisions)):
            for j in range(i + 1, len(decisions)):
                similarity = cosine_similarity(embeddings[i], embeddings[j])
                if similarity < threshold:
                    continue
                pairs_checked += 1
                conflict = await self._arbitrate(decisions[i], decisions[j], similarity)
                if conflict is not None:
                    conflicts.append(conflict)

        conflicts.sort(key=lambda c: c.confidence, reverse=True)
        logger.info(
            f"Conflict detection: {len(decisions)} decisions, "
            f"{pairs_checked} similar pairs, {len(conflicts)} conflicts",
            extra={"organization_id": organization_id},
        )
        return conflicts

    async def _embed_for_comparison(self, decisions: list[Decision]) -> list[list[float]]:
        if self.embedding_service is None:
            raise ExternalServiceError("embedding")
        texts = [conflict_text(d.summary, d.reasoning, d.context) for d in decisions]
        try:
            return await self.embedding_service.embed_texts(texts, input_type="passage")
        except Exception as e:
            raise ExternalServiceError("embedding", e) from e

    async def _arbitrate(
        self, a: Decision, b: Decision, similarity: float
    ) -> DecisionConflict | None:
        if self.llm is None:
            return None

        prompt = CONFLICT_ANALYSIS_PROMPT.format(
            summary_a=a.summary,
            reasoning_a=a.reasoning or "Not stated",
            status_a=a.status,
            summary_b=b.summary,
            reasoning_b=b.reasoning or "Not stated",
            status_b=b.status,
        )
        try:
            response = await self.llm.generate(prompt, temperature=0.1, max_tokens=512)
        except Exception as e:
            logger.warning(f"Conflict arbitration failed for {a.id} / {b.id}: {e}")
            return None

        verdict = parse_conflict_verdict(
            response, default_confidence=max(0.0, min(1.0, similarity))
        )
        if verdict is None or verdict.result == "NO_CONFLICT":
            return None

        return DecisionConflict(
            decision_a_id=a.id,
            decision_b_id=b.id,
            decision_a_summary=a.summary,
            decision_b_summary=b.summary,
            conflict_type=CONFLICT_TYPES[verdict.result],
            similarity=similarity,
            confidence=verdict.confidence,
            explanation=verdict.explanation,
        )

    # ------------------------------------------------------------------
    # Topic coverage
    # ------------------------------------------------------------------

    async def analyze_topic_coverage(self, organization_id: str) -> list[TopicCoverageGap]:
        clusters = await self.graph_repo.list_clusters(organization_id)
        counts = await self.graph_repo.count_members_by_cluster(organization_id)

        gaps = []
        for cluster in clusters:
            count = counts.get(cluster.id, 0)
            if count == 0:
                message = "No content associated with this topic"
                recommendation = (
                    f'Topic "{cluster.name}" has no content. '
                    "Consider linking relevant discussions or documents."
                )
            elif count < 3:
                message = "Very limited content coverage"
                recommendation = (
                    f'Topic "{cluster.name}" has limited coverage. '
                    "Look for additional discussions to link."
                )
            elif count < 5:
                message = "Moderate content coverage"
                recommendation = f'Topic "{cluster.name}" could benefit from more documentation.'
            else:
                continue

            gaps.append(
                TopicCoverageGap(
                    cluster_id=cluster.id,
                    name=cluster.name,
                    member_count=count,
                    coverage=min(count / FULL_COVERAGE_MEMBERS, 1.0),
                    message=message,
                    recommendation=recommendation,
                )
            )

        gaps.sort(key=lambda g: g.coverage)
        return gaps

    async def build_report(self, organization_id: str) -> KnowledgeGapReport:
        async with LogContext(organization_id=organization_id):
            report = KnowledgeGapReport(
                organization_id=organization_id,
                generated_at=utc_now(),
                undocumented_decisions=await self.find_undocumented_decisions(
                    organization_id
                ),
                conflicts=await self.detect_conflicts(organization_id),
                topic_coverage=await self.analyze_topic_coverage(organization_id),
            )
            logger.info(
                f"Gap report: {len(report.undocumented_decisions)} undocumented, "
                f"{len(report.conflicts)} conflicts, "
                f"{len(report.topic_coverage)} thin topics"
            )
        return report


def get_gap_detector(session: AsyncSession) -> KnowledgeGapDetector:
    """Create a KnowledgeGapDetector reading through the given session."""
    return KnowledgeGapDetector(
        DecisionRepository(session),
        GraphRepository(session),
        embedding_service=get_embedding_service(),
        llm=get_llm_client(),
    )
