"""
Scan Job Handler

decrypt (10) -> inventory (50) -> cost (70) -> recommendations (85) ->
alert check (95). The alert check is detached onto the worker's
TaskSupervisor; the processor marks the task done (100).
"""

import asyncio
import time
from datetime import date, datetime, timedelta
from typing import Any, Dict
from uuid import UUID

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.account import Account
from app.models.background_job import BackgroundJob
from app.models.scan_job import ScanJob, ScanStatus
from app.modules.governance.domain.alerts import AlertEvaluator
from app.modules.governance.domain.jobs.handlers.base import BaseJobHandler
from app.modules.governance.domain.jobs.payloads import ScanTaskPayload, parse_task_payload
from app.modules.inventory.domain.collector import (
    ResourceInventoryCollector,
    open_account_credentials,
)
from app.modules.optimization.domain.recommendations import RecommendationEngine
from app.modules.reporting.domain.aggregator import CostAggregator, period_key
from app.shared.core.constants import normalize_tier
from app.shared.core.exceptions import CostwatchException, ValidationError
from app.shared.core.ops_metrics import ACTIVE_SCANS, SCAN_JOB_DURATION, TOTAL_TRACKED_COST

logger = structlog.get_logger()

PROGRESS_DECRYPTED = 10
PROGRESS_INVENTORY = 50
PROGRESS_COST = 70
PROGRESS_RECOMMENDATIONS = 85
PROGRESS_ALERTS = 95


def record_scan_failure(
    scan_job: ScanJob, *, attempt: int, error: str, code: str, at: datetime
) -> None:
    """Mark a ScanJob failed and append the error; the caller commits."""
    scan_job.status = ScanStatus.FAILED.value
    scan_job.completed_at = at
    scan_job.errors = [
        *(scan_job.errors or []),
        {"attempt": attempt, "error": error, "code": code, "at": at.isoformat()},
    ]


class ScanHandler(BaseJobHandler):
    async def execute(self, job: BackgroundJob, db: AsyncSession) -> Dict[str, Any]:
        payload = parse_task_payload(job.payload)
        if not isinstance(payload, ScanTaskPayload):
            raise ValidationError(
                "Scan handler received a non-scan payload", details={"kind": payload.kind}
            )
        job_id, attempt = job.id, job.attempts

        try:
            account = await self._load_account(db, payload)
        except ValidationError as exc:
            # A requested scan must still end in a terminal state.
            if payload.scan_job_id is not None:
                await self._mark_failed(db, payload.scan_job_id, attempt, exc)
            raise

        scan_job = await self._start_scan_job(db, job, payload)
        scan_job_id = scan_job.id
        log = logger.bind(
            job_id=str(job_id),
            scan_job_id=str(scan_job_id),
            owner_id=str(payload.owner_id),
            attempt=attempt,
        )
        log.info("scan_started", account_id=str(account.id))

        started = time.perf_counter()
        ACTIVE_SCANS.inc()
        try:
            result = await self._run_pipeline(job, db, account, scan_job, payload)
        except (Exception, asyncio.CancelledError) as exc:
            # Cancellation comes from the processor timeout; the ScanJob still records it.
            SCAN_JOB_DURATION.labels(status="failed").observe(time.perf_counter() - started)
            log.error("scan_failed", error=str(exc), error_type=type(exc).__name__)
            await self._mark_failed(db, scan_job_id, attempt, exc)
            raise
        finally:
            ACTIVE_SCANS.dec()

        SCAN_JOB_DURATION.labels(status="completed").observe(time.perf_counter() - started)
        log.info("scan_completed", **result)
        return result

    async def _run_pipeline(
        self,
        job: BackgroundJob,
        db: AsyncSession,
        account: Account,
        scan_job: ScanJob,
        payload: ScanTaskPayload,
    ) -> Dict[str, Any]:
        ctx = self.context
        owner_id = account.owner_id

        credentials = open_account_credentials(ctx.vault, account)
        await self.report_progress(job, db, PROGRESS_DECRYPTED)

        collector = ResourceInventoryCollector(
            db, credentials, adapter_factory=ctx.adapter_factory
        )
        resources = await collector.scan(account, payload.region)
        await self.report_progress(job, db, PROGRESS_INVENTORY)

        now = ctx.clock()
        period = period_key(now)
        aggregator = CostAggregator(db, ctx.cache, clock=ctx.clock)
        by_service = await collector.fetch_costs(
            account, date(now.year, now.month, 1), now.date() + timedelta(days=1)
        )
        if by_service is not None:
            snapshot = await aggregator.record_snapshot(
                owner_id, period, by_service, account.region
            )
        else:
            await aggregator.invalidate(owner_id)
            snapshot = await aggregator.get_monthly_cost(owner_id, period)
        TOTAL_TRACKED_COST.labels(tier=normalize_tier(account.tier).value).set(
            float(snapshot.total)
        )
        await self.report_progress(job, db, PROGRESS_COST)

        recommendations = await RecommendationEngine(db, ctx.cache).generate(owner_id)
        await self.report_progress(job, db, PROGRESS_RECOMMENDATIONS)

        scan_job.status = ScanStatus.COMPLETED.value
        scan_job.resource_count = len(resources)
        scan_job.total_cost = snapshot.total
        scan_job.completed_at = ctx.clock()
        await self.report_progress(job, db, PROGRESS_ALERTS)

        # Only a committed scan is evaluated for alerts.
        ctx.supervisor.spawn(
            self.check_alerts(owner_id),
            name="alert_check",
            owner_id=str(owner_id),
            job_id=str(job.id),
        )

        return {
            "scan_job_id": str(scan_job.id),
            "resource_count": len(resources),
            "total_cost": str(snapshot.total),
            "cost_source": snapshot.source,
            "recommendations": len(recommendations),
        }

    async def check_alerts(self, owner_id: UUID) -> int:
        """Runs detached, in its own session."""
        ctx = self.context
        async with ctx.session_factory() as session:
            evaluator = AlertEvaluator(
                session,
                CostAggregator(session, ctx.cache, clock=ctx.clock),
                ctx.queue,
                clock=ctx.clock,
            )
            intents = await evaluator.evaluate(owner_id)
        return len(intents)

    @staticmethod
    async def _load_account(db: AsyncSession, payload: ScanTaskPayload) -> Account:
        account = await db.get(Account, payload.account_id)
        if account is None or not account.is_active or account.owner_id != payload.owner_id:
            raise ValidationError(
                "Scan target account not found or inactive",
                details={"account_id": str(payload.account_id)},
            )
        return account

    async def _start_scan_job(
        self, db: AsyncSession, job: BackgroundJob, payload: ScanTaskPayload
    ) -> ScanJob:
        if payload.scan_job_id is not None:
            scan_job = await db.get(ScanJob, payload.scan_job_id)
            if scan_job is None:
                raise ValidationError(
                    "ScanJob not found", details={"scan_job_id": str(payload.scan_job_id)}
                )
        else:
            # Recurring runs get a fresh ScanJob each time.
            scan_job = ScanJob(
                owner_id=payload.owner_id,
                account_id=payload.account_id,
                queue_job_id=job.id,
                status=ScanStatus.PENDING.value,
                errors=[],
            )
            db.add(scan_job)

        # A ScanJob already marked failed stays failed until a retry completes it.
        if scan_job.status == ScanStatus.PENDING.value:
            scan_job.status = ScanStatus.RUNNING.value
            scan_job.started_at = self.context.clock()
        await db.commit()
        return scan_job

    async def _mark_failed(
        self, db: AsyncSession, scan_job_id: UUID, attempt: int, exc: BaseException
    ) -> None:
        """Record the failure once; a failure here is logged, never retried."""
        try:
            await db.rollback()
            scan_job = await db.get(ScanJob, scan_job_id, populate_existing=True)
            if scan_job is None:
                return
            record_scan_failure(
                scan_job,
                attempt=attempt,
                error=str(exc) or type(exc).__name__,
                code=exc.code if isinstance(exc, CostwatchException) else type(exc).__name__,
                at=self.context.clock(),
            )
            await db.commit()
        except SQLAlchemyError as persist_exc:
            logger.error(
                "scan_job_failure_not_persisted",
                scan_job_id=str(scan_job_id),
                error=str(persist_exc),
                original_error=str(exc),
            )
            await db.rollback()
