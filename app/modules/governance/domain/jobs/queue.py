"""
Queue client for the durable scan and alert-delivery queues.

Tasks live in ``background_jobs``; the relational store is the only
coordination point between workers. One ``QueueClient`` is built per process
(see ``app.worker``) and passed to every component that enqueues work.

Usage:
    queue = QueueClient(get_session_maker())
    request = await queue.request_scan(account_id)
    snapshot = await queue.get_job(request.job.id)
"""

from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Callable, Dict, Optional
from uuid import UUID

import structlog
from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models.account import Account
from app.models.background_job import BackgroundJob, JobStatus, JobType, QueueName
from app.models.scan_job import ScanJob, ScanStatus
from app.modules.governance.domain.jobs.payloads import (
    AlertTaskPayload,
    ScanTaskPayload,
    dump_task_payload,
)
from app.shared.core.config import get_settings
from app.shared.core.exceptions import ValidationError
from app.shared.core.ops_metrics import BACKGROUND_JOBS_ENQUEUED
from app.shared.core.retry import BackoffKind
from app.shared.db.base import utcnow

__all__ = [
    "JobSnapshot",
    "QUEUE_POLICIES",
    "QueueClient",
    "QueuePolicy",
    "ScanRequest",
    "recurring_scan_key",
]

logger = structlog.get_logger()


@dataclass(frozen=True, slots=True)
class QueuePolicy:
    queue: QueueName
    job_type: JobType
    max_attempts: int
    backoff: BackoffKind
    backoff_base_seconds: float
    keep_completed: int
    timeout_setting: str

    def timeout_seconds(self) -> float:
        return float(getattr(get_settings(), self.timeout_setting))


QUEUE_POLICIES: Dict[str, QueuePolicy] = {
    QueueName.SCAN.value: QueuePolicy(
        queue=QueueName.SCAN,
        job_type=JobType.SCAN,
        max_attempts=3,
        backoff=BackoffKind.EXPONENTIAL,
        backoff_base_seconds=2.0,
        keep_completed=100,
        timeout_setting="SCAN_JOB_TIMEOUT_SECONDS",
    ),
    QueueName.ALERTS.value: QueuePolicy(
        queue=QueueName.ALERTS,
        job_type=JobType.ALERT_DELIVERY,
        max_attempts=2,
        backoff=BackoffKind.LINEAR,
        backoff_base_seconds=1.0,
        keep_completed=1000,
        timeout_setting="ALERT_JOB_TIMEOUT_SECONDS",
    ),
}


def get_queue_policy(queue: str) -> QueuePolicy:
    try:
        return QUEUE_POLICIES[str(queue)]
    except KeyError:
        raise ValidationError(f"Unknown queue: {queue}") from None


def recurring_scan_key(account_id: UUID) -> str:
    return f"recurring-scan-{account_id}"


@dataclass(frozen=True, slots=True)
class JobSnapshot:
    """Read-only view of a queue task, detached from any session."""

    id: UUID
    queue: str
    job_type: str
    status: str
    attempts: int
    max_attempts: int
    progress: int
    payload: Dict[str, Any]
    scheduled_for: datetime
    started_at: Optional[datetime]
    completed_at: Optional[datetime]
    error_message: Optional[str]
    result: Optional[Dict[str, Any]]
    deduplication_key: Optional[str]
    repeat_every_seconds: Optional[int]

    @classmethod
    def from_model(cls, job: BackgroundJob) -> "JobSnapshot":
        return cls(
            id=job.id,
            queue=job.queue,
            job_type=job.job_type,
            status=job.status,
            attempts=job.attempts,
            max_attempts=job.max_attempts,
            progress=job.progress,
            payload=dict(job.payload or {}),
            scheduled_for=job.scheduled_for,
            started_at=job.started_at,
            completed_at=job.completed_at,
            error_message=job.error_message,
            result=dict(job.result) if job.result is not None else None,
            deduplication_key=job.deduplication_key,
            repeat_every_seconds=job.repeat_every_seconds,
        )


@dataclass(frozen=True, slots=True)
class ScanRequest:
    scan_job_id: UUID
    job: JobSnapshot


class QueueClient:
    """
    Explicit queue handle.

    Every method accepts an optional ``db`` session; without one it opens its
    own session from the injected factory.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self._clock = clock

    @asynccontextmanager
    async def _session(self, db: Optional[AsyncSession]) -> AsyncIterator[AsyncSession]:
        if db is not None:
            yield db
            return
        async with self._session_factory() as session:
            yield session

    # ==================== Enqueue ====================

    async def add_scan_job(
        self,
        payload: ScanTaskPayload,
        *,
        delay_seconds: float = 0,
        db: Optional[AsyncSession] = None,
    ) -> JobSnapshot:
        async with self._session(db) as session:
            job = self._build_job(
                QUEUE_POLICIES[QueueName.SCAN.value],
                payload,
                scheduled_for=self._clock() + timedelta(seconds=delay_seconds),
            )
            session.add(job)
            await session.commit()
            self._log_enqueued(job)
            return JobSnapshot.from_model(job)

    async def add_alert_job(
        self, payload: AlertTaskPayload, *, db: Optional[AsyncSession] = None
    ) -> JobSnapshot:
        async with self._session(db) as session:
            job = self._build_job(
                QUEUE_POLICIES[QueueName.ALERTS.value],
                payload,
                scheduled_for=self._clock(),
            )
            session.add(job)
            await session.commit()
            self._log_enqueued(job)
            return JobSnapshot.from_model(job)

    async def request_scan(
        self,
        account_id: UUID,
        *,
        region: Optional[str] = None,
        db: Optional[AsyncSession] = None,
    ) -> ScanRequest:
        """Create a ScanJob and its queue task atomically.

        Invalid requests raise ValidationError before anything is written.
        """
        settings = get_settings()
        if region is not None and region not in settings.AWS_SUPPORTED_REGIONS:
            raise ValidationError(
                f"Unsupported region: {region}", details={"region": region}
            )

        async with self._session(db) as session:
            account = await self._active_account(session, account_id)
            scan_job = ScanJob(
                owner_id=account.owner_id,
                account_id=account.id,
                status=ScanStatus.PENDING.value,
                errors=[],
            )
            session.add(scan_job)
            await session.flush()

            payload = ScanTaskPayload(
                owner_id=account.owner_id,
                account_id=account.id,
                scan_job_id=scan_job.id,
                region=region,
            )
            job = self._build_job(
                QUEUE_POLICIES[QueueName.SCAN.value], payload, scheduled_for=self._clock()
            )
            session.add(job)
            await session.flush()
            scan_job.queue_job_id = job.id
            await session.commit()

            self._log_enqueued(job, scan_job_id=str(scan_job.id))
            return ScanRequest(scan_job_id=scan_job.id, job=JobSnapshot.from_model(job))

    # ==================== Recurring schedules ====================

    async def schedule_recurring_scan(
        self,
        account_id: UUID,
        interval_minutes: int,
        *,
        db: Optional[AsyncSession] = None,
    ) -> JobSnapshot:
        """Create or update the single recurring scan entry for an account."""
        if int(interval_minutes) < 1:
            raise ValidationError(
                "interval_minutes must be at least 1",
                details={"interval_minutes": interval_minutes},
            )
        repeat_every = int(interval_minutes) * 60
        key = recurring_scan_key(account_id)

        async with self._session(db) as session:
            account = await self._active_account(session, account_id)
            payload = ScanTaskPayload(owner_id=account.owner_id, account_id=account.id)
            next_run = self._clock() + timedelta(seconds=repeat_every)
            job = self._build_job(
                QUEUE_POLICIES[QueueName.SCAN.value],
                payload,
                scheduled_for=next_run,
                deduplication_key=key,
                repeat_every_seconds=repeat_every,
            )
            session.add(job)
            try:
                await session.commit()
                self._log_enqueued(job, deduplication_key=key)
                return JobSnapshot.from_model(job)
            except IntegrityError as exc:
                await session.rollback()
                conflict = exc

            existing = (
                await session.execute(
                    select(BackgroundJob).where(BackgroundJob.deduplication_key == key)
                )
            ).scalar_one_or_none()
            if existing is None:
                raise conflict
            existing.repeat_every_seconds = repeat_every
            if existing.status != JobStatus.ACTIVE.value:
                existing.status = JobStatus.PENDING.value
                existing.attempts = 0
                existing.scheduled_for = next_run
            await session.commit()
            logger.info(
                "recurring_scan_rescheduled",
                job_id=str(existing.id),
                account_id=str(account_id),
                repeat_every_seconds=repeat_every,
            )
            return JobSnapshot.from_model(existing)

    async def remove_recurring_scan(
        self, account_id: UUID, *, db: Optional[AsyncSession] = None
    ) -> bool:
        """Drop the account's recurring entry.

        An entry that is running right now finishes as a one-off task.
        """
        key = recurring_scan_key(account_id)
        async with self._session(db) as session:
            existing = (
                await session.execute(
                    select(BackgroundJob).where(BackgroundJob.deduplication_key == key)
                )
            ).scalar_one_or_none()
            if existing is None:
                return False
            if existing.status == JobStatus.ACTIVE.value:
                existing.repeat_every_seconds = None
                existing.deduplication_key = None
            else:
                await session.delete(existing)
            await session.commit()
            logger.info("recurring_scan_removed", account_id=str(account_id), job_id=str(existing.id))
            return True

    # ==================== Inspection ====================

    async def get_job(
        self, job_id: UUID, *, db: Optional[AsyncSession] = None
    ) -> Optional[JobSnapshot]:
        async with self._session(db) as session:
            job = await session.get(BackgroundJob, job_id, populate_existing=True)
            return JobSnapshot.from_model(job) if job is not None else None

    async def get_job_counts(
        self, queue: str, *, db: Optional[AsyncSession] = None
    ) -> Dict[str, int]:
        get_queue_policy(queue)
        counts = {status.value: 0 for status in JobStatus}
        async with self._session(db) as session:
            result = await session.execute(
                select(BackgroundJob.status, func.count(BackgroundJob.id))
                .where(BackgroundJob.queue == str(queue))
                .group_by(BackgroundJob.status)
            )
            for status, count in result.all():
                counts[status] = int(count)
        return counts

    async def prune(self, queue: str, *, db: Optional[AsyncSession] = None) -> int:
        """Delete completed one-off tasks beyond the queue's retention count.

        Failed tasks and recurring entries are never pruned.
        """
        policy = get_queue_policy(queue)
        async with self._session(db) as session:
            stale_ids = (
                await session.execute(
                    select(BackgroundJob.id)
                    .where(
                        BackgroundJob.queue == policy.queue.value,
                        BackgroundJob.status == JobStatus.COMPLETED.value,
                        BackgroundJob.repeat_every_seconds.is_(None),
                    )
                    .order_by(BackgroundJob.completed_at.desc(), BackgroundJob.created_at.desc())
                    .offset(policy.keep_completed)
                )
            ).scalars().all()
            if not stale_ids:
                return 0
            await session.execute(
                delete(BackgroundJob).where(BackgroundJob.id.in_(list(stale_ids)))
            )
            await session.commit()
            logger.info("queue_pruned", queue=policy.queue.value, deleted=len(stale_ids))
            return len(stale_ids)

    # ==================== Internals ====================

    async def _active_account(self, session: AsyncSession, account_id: UUID) -> Account:
        account = await session.get(Account, account_id)
        if account is None or not account.is_active:
            raise ValidationError(
                "Account not found or inactive", details={"account_id": str(account_id)}
            )
        return account

    def _build_job(
        self,
        policy: QueuePolicy,
        payload: ScanTaskPayload | AlertTaskPayload,
        *,
        scheduled_for: datetime,
        deduplication_key: Optional[str] = None,
        repeat_every_seconds: Optional[int] = None,
    ) -> BackgroundJob:
        return BackgroundJob(
            queue=policy.queue.value,
            job_type=policy.job_type.value,
            owner_id=payload.owner_id,
            payload=dump_task_payload(payload),
            status=JobStatus.PENDING.value,
            attempts=0,
            max_attempts=policy.max_attempts,
            backoff_type=policy.backoff.value,
            backoff_delay_seconds=policy.backoff_base_seconds,
            progress=0,
            scheduled_for=scheduled_for,
            deduplication_key=deduplication_key,
            repeat_every_seconds=repeat_every_seconds,
            created_at=self._clock(),
        )

    def _log_enqueued(self, job: BackgroundJob, **context: Any) -> None:
        BACKGROUND_JOBS_ENQUEUED.labels(queue=job.queue, job_type=job.job_type).inc()
        logger.info(
            "job_enqueued",
            job_id=str(job.id),
            queue=job.queue,
            job_type=job.job_type,
            owner_id=str(job.owner_id) if job.owner_id else None,
            **context,
        )
