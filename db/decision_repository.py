"""Persistence for decisions and their participants, evidence and links."""

from typing import Sequence

from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from models.postgres import (
    Decision,
    DecisionEvidence,
    DecisionLink,
    generate_uuid,
    utc_now,
)
from models.schemas import DecisionFilters


class DecisionRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def commit(self) -> None:
        await self.session.commit()

    async def rollback(self) -> None:
        await self.session.rollback()

    async def flush(self) -> None:
        await self.session.flush()

    def add_all(self, objects: Sequence[object]) -> None:
        self.session.add_all(list(objects))

    async def get(self, decision_id: str, with_relations: bool = False) -> Decision | None:
        if not with_relations:
            return await self.session.get(Decision, decision_id)
        result = await self.session.scalars(
            select(Decision)
            .where(Decision.id == decision_id)
            .options(
                selectinload(Decision.participants),
                selectinload(Decision.evidence),
                selectinload(Decision.links),
            )
            .execution_options(populate_existing=True)
        )
        return result.one_or_none()

    async def delete(self, decision: Decision) -> None:
        await self.session.delete(decision)
        await self.session.flush()

    async def list_decisions(
        self, filters: DecisionFilters, limit: int = 50, offset: int = 0
    ) -> tuple[list[Decision], int]:
        conditions = [Decision.organization_id == filters.organization_id]
        if filters.status:
            conditions.append(Decision.status.in_([s.value for s in filters.status]))
        if filters.decision_type:
            conditions.append(Decision.decision_type == filters.decision_type.value)
        if filters.content_item_id:
            conditions.append(Decision.content_item_id == filters.content_item_id)
        if filters.created_after:
            conditions.append(Decision.created_at >= filters.created_after)
        if filters.created_before:
            conditions.append(Decision.created_at <= filters.created_before)

        stmt = select(Decision).where(*conditions).order_by(
            Decision.created_at.desc(), Decision.id.asc()
        )
        total_stmt = select(func.count()).select_from(Decision).where(*conditions)

        if filters.tag:
            # JSON array containment is dialect specific; tags are filtered in Python
            result = await self.session.scalars(stmt)
            matching = [d for d in result if filters.tag in (d.tags or [])]
            return matching[offset : offset + limit], len(matching)

        total = await self.session.scalar(total_stmt) or 0
        result = await self.session.scalars(stmt.offset(offset).limit(limit))
        return list(result), total

    async def list_by_status(
        self,
        organization_id: str,
        statuses: Sequence[str],
        limit: int | None = None,
        embedded_only: bool = False,
    ) -> list[Decision]:
        """Decisions in the given statuses, most recent first."""
        stmt = (
            select(Decision)
            .where(
                Decision.organization_id == organization_id,
                Decision.status.in_(list(statuses)),
            )
            .order_by(Decision.created_at.desc(), Decision.id.asc())
        )
        if embedded_only:
            stmt = stmt.where(Decision.embedding_vector.is_not(None))
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self.session.scalars(stmt)
        decisions = list(result)
        if embedded_only:
            decisions = [d for d in decisions if d.embedding_vector]
        return decisions

    async def list_in_range(
        self,
        organization_id: str,
        start=None,
        end=None,
        limit: int = 50,
    ) -> list[Decision]:
        """Decisions ordered newest first, bounded by creation time."""
        stmt = select(Decision).where(Decision.organization_id == organization_id)
        if start is not None:
            stmt = stmt.where(Decision.created_at >= start)
        if end is not None:
            stmt = stmt.where(Decision.created_at <= end)
        result = await self.session.scalars(
            stmt.order_by(Decision.created_at.desc(), Decision.id.asc()).limit(limit)
        )
        return list(result)

    async def get_evidence_for_decisions(
        self, decision_ids: Sequence[str]
    ) -> dict[str, list[DecisionEvidence]]:
        if not decision_ids:
            return {}
        result = await self.session.scalars(
            select(DecisionEvidence)
            .where(DecisionEvidence.decision_id.in_(list(decision_ids)))
            .order_by(DecisionEvidence.created_at.asc(), DecisionEvidence.id.asc())
        )
        grouped: dict[str, list[DecisionEvidence]] = {d: [] for d in decision_ids}
        for evidence in result:
            grouped.setdefault(evidence.decision_id, []).append(evidence)
        return grouped

    async def upsert_evidence(self, values: dict) -> DecisionEvidence:
        """Insert evidence or refresh the row for (decision, content item, type)."""
        table = DecisionEvidence.__table__
        stmt = pg_insert(table).values(
            id=generate_uuid(), created_at=utc_now(), **values
        )
        stmt = stmt.on_conflict_do_update(
            constraint="uq_decision_evidence",
            set_={
                "stage": stmt.excluded.stage,
                "confidence": stmt.excluded.confidence,
                "excerpt": stmt.excluded.excerpt,
            },
        ).returning(table.c.id)
        evidence_id = (await self.session.execute(stmt)).scalar_one()
        return await self.session.get(
            DecisionEvidence, evidence_id, populate_existing=True
        )

    async def insert_link(self, values: dict) -> DecisionLink:
        """Insert a link, or return the existing one for the same key."""
        table = DecisionLink.__table__
        stmt = (
            pg_insert(table)
            .values(id=generate_uuid(), created_at=utc_now(), **values)
            .on_conflict_do_nothing(constraint="uq_decision_link")
            .returning(table.c.id)
        )
        link_id = (await self.session.execute(stmt)).scalar_one_or_none()
        if link_id is not None:
            return await self.session.get(DecisionLink, link_id)

        result = await self.session.scalars(
            select(DecisionLink).where(
                DecisionLink.decision_id == values["decision_id"],
                DecisionLink.entity_type == values["entity_type"],
                DecisionLink.entity_id == values["entity_id"],
                DecisionLink.link_type == values["link_type"],
            )
        )
        return result.one()

    async def list_with_embeddings(
        self, organization_id: str, exclude_id: str | None = None
    ) -> list[Decision]:
        stmt = select(Decision).where(
            Decision.organization_id == organization_id,
            Decision.embedding_vector.is_not(None),
        )
        if exclude_id:
            stmt = stmt.where(Decision.id != exclude_id)
        result = await self.session.scalars(stmt.order_by(Decision.id.asc()))
        return [d for d in result if d.embedding_vector]
