"""
Deterministic savings recommendations over the current resource snapshot.

Three independent heuristics run per resource and may all fire for the same
resource:
- right-sizing: known oversized compute class -> next smaller class
- reserved capacity: always-on compute/database -> 1-year reservation
- termination: stopped resource still billing for storage
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional
from uuid import UUID

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.recommendation import (
    Recommendation,
    RecommendationStatus,
    RecommendationType,
)
from app.models.resource import Resource
from app.modules.inventory.domain.pricing import round_money
from app.shared.core.cache import CacheService
from app.shared.core.constants import ResourceType
from app.shared.core.exceptions import ResourceNotFoundError, ValidationError
from app.shared.db.base import utcnow
from app.shared.db.session import upsert_insert

logger = structlog.get_logger()

RIGHT_SIZING_CONFIDENCE = Decimal("0.85")
RESERVED_CONFIDENCE = Decimal("0.90")
TERMINATION_CONFIDENCE = Decimal("0.75")

RESERVED_PRICE_RATIO = Decimal("0.60")
MIN_RESERVED_SAVINGS = Decimal("10")

# Oversized class -> next smaller class in the same family (roughly half the price).
DOWNSIZE_TARGETS: dict[str, str] = {
    "t3.large": "t3.medium",
    "t3.xlarge": "t3.large",
    "t3.2xlarge": "t3.xlarge",
    "m5.xlarge": "m5.large",
    "m5.2xlarge": "m5.xlarge",
    "m5.4xlarge": "m5.2xlarge",
    "c5.xlarge": "c5.large",
    "c5.2xlarge": "c5.xlarge",
    "r5.xlarge": "r5.large",
}


@dataclass(frozen=True)
class RecommendationDraft:
    resource_id: UUID
    recommendation_type: RecommendationType
    title: str
    description: str
    action: str
    current_cost: Decimal
    recommended_cost: Decimal
    confidence: Decimal

    @property
    def savings(self) -> Decimal:
        return self.current_cost - self.recommended_cost


def _always_on(resource: Resource) -> bool:
    if resource.resource_type == ResourceType.COMPUTE.value:
        return resource.state == "running"
    if resource.resource_type == ResourceType.DATABASE.value:
        return resource.state == "available"
    return False


def right_sizing(resource: Resource) -> Optional[RecommendationDraft]:
    if resource.resource_type != ResourceType.COMPUTE.value or resource.state != "running":
        return None
    target = DOWNSIZE_TARGETS.get(resource.instance_class or "")
    if target is None:
        return None
    current = round_money(resource.monthly_cost)
    recommended = round_money(current / 2)
    return RecommendationDraft(
        resource_id=resource.id,
        recommendation_type=RecommendationType.RIGHT_SIZING,
        title=f"Right-size {resource.name}",
        description=(
            f"{resource.instance_class} appears oversized; {target} offers "
            "the same family at roughly half the cost."
        ),
        action=f"Downgrade from {resource.instance_class} to {target}",
        current_cost=current,
        recommended_cost=recommended,
        confidence=RIGHT_SIZING_CONFIDENCE,
    )


def reserved_capacity(resource: Resource) -> Optional[RecommendationDraft]:
    if not _always_on(resource):
        return None
    current = round_money(resource.monthly_cost)
    recommended = round_money(current * RESERVED_PRICE_RATIO)
    if current - recommended <= MIN_RESERVED_SAVINGS:
        return None
    return RecommendationDraft(
        resource_id=resource.id,
        recommendation_type=RecommendationType.RESERVED_INSTANCE,
        title=f"Reserve capacity for {resource.name}",
        description="Always-on workload; a 1-year reservation costs about 60% of on-demand.",
        action="Purchase a 1-year reserved instance",
        current_cost=current,
        recommended_cost=recommended,
        confidence=RESERVED_CONFIDENCE,
    )


def termination(resource: Resource) -> Optional[RecommendationDraft]:
    if resource.state != "stopped":
        return None
    current = round_money(resource.monthly_cost)
    return RecommendationDraft(
        resource_id=resource.id,
        recommendation_type=RecommendationType.TERMINATION,
        title=f"Terminate stopped {resource.name}",
        description="Stopped resource is still billing for attached storage.",
        action="Snapshot if needed, then terminate",
        current_cost=current,
        recommended_cost=Decimal("0.00"),
        confidence=TERMINATION_CONFIDENCE,
    )


HEURISTICS: tuple[Callable[[Resource], Optional[RecommendationDraft]], ...] = (
    right_sizing,
    reserved_capacity,
    termination,
)


def evaluate_resource(resource: Resource) -> list[RecommendationDraft]:
    drafts = []
    for heuristic in HEURISTICS:
        draft = heuristic(resource)
        if draft is not None and draft.savings >= 0:
            drafts.append(draft)
    return drafts


class RecommendationEngine:
    """
    Regenerates advisories for an owner.

    Upserts on (owner, resource, type) and only overwrites rows still pending;
    dismissed and applied rows are left untouched.
    """

    def __init__(self, db: AsyncSession, cache: Optional[CacheService] = None):
        self.db = db
        self.cache = cache or CacheService()

    async def generate(self, owner_id: UUID) -> list[Recommendation]:
        result = await self.db.execute(
            select(Resource).where(Resource.owner_id == owner_id)
        )
        drafts: list[RecommendationDraft] = []
        for resource in result.scalars().all():
            drafts.extend(evaluate_resource(resource))

        now = utcnow()
        for draft in drafts:
            await self._upsert(owner_id, draft, now)
        await self.db.commit()
        await self.cache.invalidate_owner(owner_id)

        if not drafts:
            logger.info("recommendations_generated", owner_id=str(owner_id), count=0)
            return []

        keys = {(d.resource_id, d.recommendation_type.value) for d in drafts}
        rows = await self.db.execute(
            select(Recommendation)
            .where(
                Recommendation.owner_id == owner_id,
                Recommendation.status == RecommendationStatus.PENDING.value,
                Recommendation.resource_id.in_({d.resource_id for d in drafts}),
            )
            .order_by(Recommendation.savings.desc())
            .execution_options(populate_existing=True)
        )
        recommendations = [
            r
            for r in rows.scalars().all()
            if (r.resource_id, r.recommendation_type) in keys
        ]
        logger.info(
            "recommendations_generated",
            owner_id=str(owner_id),
            count=len(recommendations),
            frozen=len(drafts) - len(recommendations),
        )
        return recommendations

    async def list_pending(self, owner_id: UUID) -> list[Recommendation]:
        result = await self.db.execute(
            select(Recommendation)
            .where(
                Recommendation.owner_id == owner_id,
                Recommendation.status == RecommendationStatus.PENDING.value,
            )
            .order_by(Recommendation.savings.desc())
        )
        return list(result.scalars().all())

    async def dismiss(self, owner_id: UUID, recommendation_id: UUID) -> Recommendation:
        return await self._transition(owner_id, recommendation_id, RecommendationStatus.DISMISSED)

    async def mark_applied(self, owner_id: UUID, recommendation_id: UUID) -> Recommendation:
        return await self._transition(owner_id, recommendation_id, RecommendationStatus.APPLIED)

    async def _transition(
        self, owner_id: UUID, recommendation_id: UUID, target: RecommendationStatus
    ) -> Recommendation:
        result = await self.db.execute(
            update(Recommendation)
            .where(
                Recommendation.id == recommendation_id,
                Recommendation.owner_id == owner_id,
                Recommendation.status == RecommendationStatus.PENDING.value,
            )
            .values(status=target.value, updated_at=utcnow())
        )
        if result.rowcount != 1:
            await self.db.rollback()
            existing = await self.db.get(Recommendation, recommendation_id)
            if existing is None or existing.owner_id != owner_id:
                raise ResourceNotFoundError("Recommendation not found")
            raise ValidationError(
                f"Recommendation is already {existing.status}",
                details={"recommendation_id": str(recommendation_id)},
            )
        await self.db.commit()
        await self.cache.invalidate_owner(owner_id)
        recommendation = await self.db.get(
            Recommendation, recommendation_id, populate_existing=True
        )
        if recommendation is None:
            raise ResourceNotFoundError("Recommendation not found")
        return recommendation

    async def _upsert(self, owner_id: UUID, draft: RecommendationDraft, now: datetime) -> None:
        table = Recommendation.__table__
        stmt = upsert_insert(self.db, table).values(
            owner_id=owner_id,
            resource_id=draft.resource_id,
            recommendation_type=draft.recommendation_type.value,
            title=draft.title,
            description=draft.description,
            action=draft.action,
            current_cost=draft.current_cost,
            recommended_cost=draft.recommended_cost,
            savings=draft.savings,
            confidence=draft.confidence,
            status=RecommendationStatus.PENDING.value,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.owner_id, table.c.resource_id, table.c.recommendation_type],
            set_={
                "title": stmt.excluded.title,
                "description": stmt.excluded.description,
                "action": stmt.excluded.action,
                "current_cost": stmt.excluded.current_cost,
                "recommended_cost": stmt.excluded.recommended_cost,
                "savings": stmt.excluded.savings,
                "confidence": stmt.excluded.confidence,
                "updated_at": stmt.excluded.updated_at,
            },
            where=table.c.status == RecommendationStatus.PENDING.value,
        )
        await self.db.execute(stmt)
