from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Optional
from uuid import UUID

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.account import Account
from app.models.cost_history import CostHistory
from app.models.resource import Resource
from app.modules.inventory.domain.pricing import round_money
from app.shared.core.cache import CacheService
from app.shared.core.config import get_settings
from app.shared.db.base import utcnow
from app.shared.db.session import upsert_insert

logger = structlog.get_logger()

# Flat monthly growth used by the placeholder forecast.
FORECAST_MONTHLY_GROWTH = Decimal("1.05")

# Databases report "available" where compute reports "running".
BILLABLE_RUNNING_STATES = ("running", "available")


def period_key(moment: Optional[datetime] = None) -> str:
    moment = moment or utcnow()
    return f"{moment.year:04d}-{moment.month:02d}"


@dataclass(frozen=True, slots=True)
class CostForecast:
    next_month: Decimal
    three_months: Decimal


def forecast(current_total: Decimal) -> CostForecast:
    """Linear +5%/month projection; not a statistical model."""
    current = Decimal(current_total)
    return CostForecast(
        next_month=round_money(current * FORECAST_MONTHLY_GROWTH),
        three_months=round_money(current * 3 * FORECAST_MONTHLY_GROWTH),
    )


@dataclass(frozen=True, slots=True)
class CostSnapshot:
    owner_id: UUID
    period: str
    total: Decimal
    by_service: Dict[str, Decimal] = field(default_factory=dict)
    by_region: Dict[str, Decimal] = field(default_factory=dict)
    source: str = "estimate"

    def rounded(self) -> "CostSnapshot":
        return CostSnapshot(
            owner_id=self.owner_id,
            period=self.period,
            total=round_money(self.total),
            by_service={k: round_money(v) for k, v in self.by_service.items()},
            by_region={k: round_money(v) for k, v in self.by_region.items()},
            source=self.source,
        )

    def to_cache(self) -> dict[str, Any]:
        return {
            "owner_id": str(self.owner_id),
            "period": self.period,
            "total": str(self.total),
            "by_service": {k: str(v) for k, v in self.by_service.items()},
            "by_region": {k: str(v) for k, v in self.by_region.items()},
            "source": self.source,
        }

    @classmethod
    def from_cache(cls, data: dict[str, Any]) -> "CostSnapshot":
        return cls(
            owner_id=UUID(str(data["owner_id"])),
            period=str(data["period"]),
            total=Decimal(str(data["total"])),
            by_service={k: Decimal(str(v)) for k, v in (data.get("by_service") or {}).items()},
            by_region={k: Decimal(str(v)) for k, v in (data.get("by_region") or {}).items()},
            source=str(data.get("source") or "cache"),
        )


class CostAggregator:
    """
    Rolls resource and billing data up into monthly CostSnapshots.

    Preferred source is the persisted billing snapshot (cost_history); without
    one, running resources are summed by type. Redis only accelerates reads.
    """

    def __init__(
        self,
        db: AsyncSession,
        cache: Optional[CacheService] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.cache = cache or CacheService()
        self._clock = clock

    async def get_monthly_cost(
        self, owner_id: UUID, period: Optional[str] = None
    ) -> CostSnapshot:
        period = period or period_key(self._clock())

        cached = await self.cache.get_cost_snapshot(owner_id, period)
        if cached:
            try:
                return CostSnapshot.from_cache(cached).rounded()
            except (KeyError, ValueError, ArithmeticError) as exc:
                logger.warning("cost_cache_entry_invalid", owner_id=str(owner_id), error=str(exc))

        snapshot = await self._load_billing_snapshot(owner_id, period)
        if snapshot is None:
            snapshot = await self._estimate_from_resources(owner_id, period)

        await self.cache.set_cost_snapshot(owner_id, period, snapshot.to_cache())
        return snapshot.rounded()

    async def record_snapshot(
        self,
        owner_id: UUID,
        period: str,
        by_service: Dict[str, Decimal],
        region: str,
    ) -> CostSnapshot:
        """Persist billing data for a period; replaces any earlier snapshot."""
        total = sum((Decimal(v) for v in by_service.values()), Decimal("0"))
        table = CostHistory.__table__
        stmt = upsert_insert(self.db, table).values(
            owner_id=owner_id,
            period=period,
            total_cost=total,
            cost_by_service={k: str(v) for k, v in by_service.items()},
            cost_by_region={region: str(total)},
            updated_at=utcnow(),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.owner_id, table.c.period],
            set_={
                "total_cost": stmt.excluded.total_cost,
                "cost_by_service": stmt.excluded.cost_by_service,
                "cost_by_region": stmt.excluded.cost_by_region,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        await self.db.execute(stmt)
        await self.db.commit()
        await self.invalidate(owner_id)

        logger.info(
            "cost_snapshot_recorded", owner_id=str(owner_id), period=period, total=str(total)
        )
        return CostSnapshot(
            owner_id=owner_id,
            period=period,
            total=total,
            by_service=dict(by_service),
            by_region={region: total},
            source="billing",
        ).rounded()

    async def list_resources(self, owner_id: UUID) -> list[dict[str, Any]]:
        """Resource-list view, cached for a shorter window than cost totals."""
        cached = await self.cache.get_resource_view(owner_id)
        if cached is not None:
            return cached

        result = await self.db.execute(
            select(Resource)
            .where(Resource.owner_id == owner_id)
            .order_by(Resource.monthly_cost.desc())
        )
        rows = [
            {
                "id": str(r.id),
                "resource_type": r.resource_type,
                "provider_id": r.provider_id,
                "name": r.name,
                "region": r.region,
                "instance_class": r.instance_class,
                "state": r.state,
                "monthly_cost": str(round_money(r.monthly_cost)),
            }
            for r in result.scalars().all()
        ]
        await self.cache.set_resource_view(owner_id, rows)
        return rows

    async def invalidate(self, owner_id: UUID) -> bool:
        return await self.cache.invalidate_owner(owner_id)

    @staticmethod
    def forecast(current_total: Decimal) -> CostForecast:
        return forecast(current_total)

    async def _load_billing_snapshot(
        self, owner_id: UUID, period: str
    ) -> Optional[CostSnapshot]:
        result = await self.db.execute(
            select(CostHistory).where(
                CostHistory.owner_id == owner_id, CostHistory.period == period
            )
        )
        row = result.scalar_one_or_none()
        if row is None:
            return None
        return CostSnapshot(
            owner_id=owner_id,
            period=period,
            total=Decimal(str(row.total_cost)),
            by_service={k: Decimal(str(v)) for k, v in (row.cost_by_service or {}).items()},
            by_region={k: Decimal(str(v)) for k, v in (row.cost_by_region or {}).items()},
            source="billing",
        )

    async def _estimate_from_resources(self, owner_id: UUID, period: str) -> CostSnapshot:
        result = await self.db.execute(
            select(Resource.resource_type, func.sum(Resource.monthly_cost))
            .where(
                Resource.owner_id == owner_id,
                Resource.state.in_(BILLABLE_RUNNING_STATES),
            )
            .group_by(Resource.resource_type)
        )
        by_type = {
            resource_type: Decimal(str(amount or 0))
            for resource_type, amount in result.all()
        }
        total = sum(by_type.values(), Decimal("0"))
        region = await self._owner_region(owner_id)
        return CostSnapshot(
            owner_id=owner_id,
            period=period,
            total=total,
            by_service=by_type,
            by_region={region: total},
            source="estimate",
        )

    async def _owner_region(self, owner_id: UUID) -> str:
        result = await self.db.execute(
            select(Account.region)
            .where(Account.owner_id == owner_id, Account.is_active.is_(True))
            .order_by(Account.created_at)
            .limit(1)
        )
        return result.scalar_one_or_none() or get_settings().AWS_DEFAULT_REGION
