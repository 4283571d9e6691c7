"""
Alert Evaluator

Runs after every successful scan. Compares the current month's total with
the owner's budget and flags individually expensive resources. Every alert
is persisted before it is fanned out; the Alert row is the dashboard record.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable, Optional
from uuid import UUID

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.account import Account
from app.models.alert import Alert
from app.models.resource import Resource
from app.modules.governance.domain.jobs.payloads import AlertTaskPayload
from app.modules.governance.domain.jobs.queue import QueueClient
from app.modules.inventory.domain.pricing import round_money
from app.modules.reporting.domain.aggregator import CostAggregator
from app.shared.core.config import get_settings
from app.shared.core.constants import Channel, PricingTier, Severity, normalize_tier
from app.shared.core.ops_metrics import ALERTS_EMITTED
from app.shared.db.base import utcnow

logger = structlog.get_logger()

CRITICAL_PERCENT_OVER = Decimal("30")
WARNING_PERCENT_OVER = Decimal("10")


@dataclass(frozen=True, slots=True)
class ResourceCostThreshold:
    critical: Decimal
    warning: Decimal


# Monthly cost cutoffs (USD) for a single resource, per tier.
EXPENSIVE_RESOURCE_THRESHOLDS: dict[PricingTier, ResourceCostThreshold] = {
    PricingTier.FREE: ResourceCostThreshold(critical=Decimal("100"), warning=Decimal("50")),
    PricingTier.PROFESSIONAL: ResourceCostThreshold(
        critical=Decimal("500"), warning=Decimal("200")
    ),
    PricingTier.ENTERPRISE: ResourceCostThreshold(
        critical=Decimal("2000"), warning=Decimal("1000")
    ),
}

# Delivery channels per severity, before the owner's preferences are applied.
SEVERITY_CHANNELS: dict[Severity, tuple[Channel, ...]] = {
    Severity.CRITICAL: (Channel.EMAIL, Channel.CHAT, Channel.SMS),
    Severity.WARNING: (Channel.EMAIL, Channel.CHAT),
    Severity.INFO: (),
}


class AlertType:
    BUDGET_EXCEEDED = "budget_exceeded"
    EXPENSIVE_RESOURCE = "expensive_resource"


@dataclass(frozen=True, slots=True)
class AlertIntent:
    alert_id: UUID
    owner_id: UUID
    alert_type: str
    severity: Severity
    title: str
    message: str
    channels: tuple[Channel, ...]
    data: dict[str, Any] = field(default_factory=dict)


def channels_for(severity: Severity, account: Account) -> tuple[Channel, ...]:
    """Dashboard first, then the severity policy filtered by the account's opt-ins."""
    enabled = {
        Channel.EMAIL: bool(account.notify_email),
        Channel.CHAT: bool(account.notify_chat),
        Channel.SMS: bool(account.notify_sms),
    }
    return (Channel.DASHBOARD,) + tuple(
        channel for channel in SEVERITY_CHANNELS[severity] if enabled.get(channel)
    )


def percent_over_budget(current: Decimal, budget: Decimal) -> Decimal:
    return (Decimal(current) - Decimal(budget)) / Decimal(budget) * 100


def _pct(value: Decimal) -> Decimal:
    return value.quantize(Decimal("0.1"), rounding=ROUND_HALF_UP)


class AlertEvaluator:
    def __init__(
        self,
        db: AsyncSession,
        aggregator: CostAggregator,
        queue: QueueClient,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.aggregator = aggregator
        self.queue = queue
        self._clock = clock
        settings = get_settings()
        self._cooldown = timedelta(hours=settings.ALERT_WARNING_COOLDOWN_HOURS)
        self._resource_limit = settings.EXPENSIVE_RESOURCE_ALERT_LIMIT

    async def evaluate(self, owner_id: UUID) -> list[AlertIntent]:
        account = await self._primary_account(owner_id)
        if account is None:
            logger.info("alert_evaluation_skipped", owner_id=str(owner_id), reason="no_active_account")
            return []

        intents: list[AlertIntent] = []
        budget_intent = await self._check_budget(account)
        if budget_intent is not None:
            intents.append(budget_intent)
        intents.extend(await self._check_expensive_resources(account))

        logger.info(
            "alert_evaluation_complete",
            owner_id=str(owner_id),
            alerts=len(intents),
            severities=[i.severity.value for i in intents],
        )
        return intents

    async def mark_read(self, owner_id: UUID, alert_id: UUID) -> bool:
        result = await self.db.execute(
            update(Alert)
            .where(Alert.id == alert_id, Alert.owner_id == owner_id)
            .values(is_read=True)
        )
        await self.db.commit()
        return result.rowcount == 1

    async def list_unread(self, owner_id: UUID, limit: int = 20) -> list[Alert]:
        result = await self.db.execute(
            select(Alert)
            .where(Alert.owner_id == owner_id, Alert.is_read.is_(False))
            .order_by(Alert.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def _check_budget(self, account: Account) -> Optional[AlertIntent]:
        budget = Decimal(str(account.budget_amount or 0))
        if budget <= 0:
            return None

        snapshot = await self.aggregator.get_monthly_cost(account.owner_id)
        current = round_money(snapshot.total)
        percent_over = percent_over_budget(current, budget)
        data = {
            "current_cost": str(current),
            "budget": str(round_money(budget)),
            "percent_over": str(_pct(percent_over)),
            "period": snapshot.period,
        }

        if percent_over >= CRITICAL_PERCENT_OVER:
            return await self._emit(
                account,
                alert_type=AlertType.BUDGET_EXCEEDED,
                severity=Severity.CRITICAL,
                title="🚨 CRITICAL: Budget Exceeded by 30%+",
                message=(
                    f"Your AWS spending is ${current:.2f}, which is "
                    f"{_pct(percent_over)}% over your budget of ${round_money(budget):.2f}."
                ),
                data=data,
            )
        if percent_over >= WARNING_PERCENT_OVER:
            if await self._recent_alert_exists(account.owner_id, Severity.WARNING):
                logger.info(
                    "warning_alert_suppressed",
                    owner_id=str(account.owner_id),
                    cooldown_hours=self._cooldown.total_seconds() / 3600,
                )
                return None
            return await self._emit(
                account,
                alert_type=AlertType.BUDGET_EXCEEDED,
                severity=Severity.WARNING,
                title="⚠️ WARNING: Budget Exceeded",
                message=f"Your AWS spending is ${current:.2f}, {_pct(percent_over)}% over budget.",
                data=data,
            )
        return None

    async def _check_expensive_resources(self, account: Account) -> list[AlertIntent]:
        threshold = EXPENSIVE_RESOURCE_THRESHOLDS[normalize_tier(account.tier)]
        result = await self.db.execute(
            select(
                Resource.id,
                Resource.name,
                Resource.resource_type,
                Resource.provider_id,
                Resource.monthly_cost,
            )
            .where(
                Resource.owner_id == account.owner_id,
                Resource.monthly_cost >= threshold.critical,
            )
            .order_by(Resource.monthly_cost.desc())
            .limit(self._resource_limit)
        )
        intents = []
        # Plain rows, so a rollback inside _emit cannot expire them.
        for resource in result.all():
            cost = round_money(Decimal(str(resource.monthly_cost)))
            intents.append(
                await self._emit(
                    account,
                    alert_type=AlertType.EXPENSIVE_RESOURCE,
                    severity=Severity.CRITICAL,
                    title="💸 Expensive Resource Detected",
                    message=(
                        f"Resource {resource.name} ({resource.resource_type}) "
                        f"costs ${cost:.2f}/month"
                    ),
                    data={
                        "resource_id": str(resource.id),
                        "provider_id": resource.provider_id,
                        "cost": str(cost),
                        "threshold": str(threshold.critical),
                    },
                )
            )
        return intents

    async def _emit(
        self,
        account: Account,
        *,
        alert_type: str,
        severity: Severity,
        title: str,
        message: str,
        data: dict[str, Any],
    ) -> AlertIntent:
        owner_id = account.owner_id
        channels = channels_for(severity, account)
        alert = Alert(
            owner_id=owner_id,
            alert_type=alert_type,
            title=title,
            message=message,
            severity=severity.value,
            data=data,
            channels=[c.value for c in channels],
            is_read=False,
            created_at=self._clock(),
        )
        self.db.add(alert)
        await self.db.commit()
        alert_id = alert.id
        ALERTS_EMITTED.labels(severity=severity.value, alert_type=alert_type).inc()

        for channel in channels:
            if channel == Channel.DASHBOARD:
                continue
            payload = AlertTaskPayload(
                owner_id=owner_id,
                alert_id=alert_id,
                channel=channel,
                severity=severity,
                title=title,
                message=message,
                data=data,
            )
            try:
                await self.queue.add_alert_job(payload, db=self.db)
            except SQLAlchemyError as exc:
                await self.db.rollback()
                await self.db.refresh(account)
                logger.error(
                    "alert_delivery_enqueue_failed",
                    owner_id=str(owner_id),
                    alert_id=str(alert_id),
                    channel=channel.value,
                    error=str(exc),
                )

        logger.info(
            "alert_emitted",
            owner_id=str(owner_id),
            alert_id=str(alert_id),
            severity=severity.value,
            alert_type=alert_type,
            channels=[c.value for c in channels],
        )
        return AlertIntent(
            alert_id=alert_id,
            owner_id=owner_id,
            alert_type=alert_type,
            severity=severity,
            title=title,
            message=message,
            channels=channels,
            data=data,
        )

    async def _recent_alert_exists(self, owner_id: UUID, severity: Severity) -> bool:
        since = self._clock() - self._cooldown
        result = await self.db.execute(
            select(Alert.id)
            .where(
                Alert.owner_id == owner_id,
                Alert.severity == severity.value,
                Alert.created_at > since,
            )
            .limit(1)
        )
        return result.first() is not None

    async def _primary_account(self, owner_id: UUID) -> Optional[Account]:
        """Budget, tier and notification preferences come from the oldest active account."""
        result = await self.db.execute(
            select(Account)
            .where(Account.owner_id == owner_id, Account.is_active.is_(True))
            .order_by(Account.created_at)
            .limit(1)
        )
        return result.scalar_one_or_none()
