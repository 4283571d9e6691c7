"""
Job Processor Service

Drains one durable queue (``scan`` or ``alerts``) from the database.

Key Features:
- Survives worker restarts (tasks live in ``background_jobs``)
- Per-queue retry policy: attempt ceiling plus exponential or linear backoff
- Claims one task at a time with a conditional UPDATE on the status
- Stalled-task recovery once the lock timeout passes

Usage:
    processor = JobProcessor(db, context)
    await processor.process_pending_jobs("scan")
"""

import asyncio
import os
import socket
import time
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Dict, Optional
from uuid import UUID

import sqlalchemy as sa
import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.background_job import BackgroundJob, JobStatus, JobType
from app.models.scan_job import ScanJob, ScanStatus
from app.modules.governance.domain.jobs.handlers import get_handler_factory
from app.modules.governance.domain.jobs.handlers.scan import record_scan_failure
from app.modules.governance.domain.jobs.queue import (
    JobSnapshot,
    QueuePolicy,
    get_queue_policy,
)
from app.shared.core.config import get_settings
from app.shared.core.exceptions import CostwatchException, is_retryable
from app.shared.core.ops_metrics import (
    BACKGROUND_JOB_DURATION,
    BACKGROUND_JOBS_PROCESSED,
    STALLED_JOBS_RECOVERED,
)
from app.shared.core.retry import compute_backoff_seconds

if TYPE_CHECKING:
    from app.worker import WorkerContext

__all__ = ["JobProcessor", "JobStatus"]

logger = structlog.get_logger()

# Pending rows inspected per claim; losing a race moves on to the next one.
CLAIM_CANDIDATES = 5
MAX_ERROR_MESSAGE_CHARS = 2000

OUTCOME_COMPLETED = "completed"
OUTCOME_RETRYING = "retrying"
OUTCOME_FAILED = "failed"


class JobProcessor:
    """
    Processes queue tasks for one worker.

    Designed to be called by:
    1. The Celery beat ``drain_queue`` task
    2. Scripts and tests, with an injected WorkerContext
    """

    def __init__(
        self,
        db: AsyncSession,
        context: "WorkerContext",
        worker_id: Optional[str] = None,
    ):
        self.db = db
        self.context = context
        self.worker_id = worker_id or f"{socket.gethostname()}:{os.getpid()}"

    async def process_pending_jobs(
        self, queue: str, limit: Optional[int] = None
    ) -> Dict[str, Any]:
        """Claim and run due tasks one at a time, up to ``limit``."""
        policy = get_queue_policy(queue)
        limit = limit or get_settings().MAX_JOBS_PER_BATCH
        results: Dict[str, Any] = {
            "processed": 0,
            "succeeded": 0,
            "retrying": 0,
            "failed": 0,
            "errors": [],
        }

        try:
            for _ in range(limit):
                job = await self._claim_next(policy)
                if job is None:
                    break
                job_id = job.id
                outcome = await self._process_single_job(job, policy)
                results["processed"] += 1
                if outcome == OUTCOME_COMPLETED:
                    results["succeeded"] += 1
                else:
                    results[outcome] += 1
                    results["errors"].append(
                        {"job_id": str(job_id), "error": job.error_message, "outcome": outcome}
                    )

            await self.context.queue.prune(policy.queue.value, db=self.db)

        except sa.exc.SQLAlchemyError as e:
            await self.db.rollback()
            logger.error("job_processor_batch_db_error", queue=policy.queue.value, error=str(e))
            results["errors"].append({"batch_error": str(e)})
        finally:
            # Detached side effects (alert checks) finish before the batch reports.
            await self.context.supervisor.drain(timeout=policy.timeout_seconds())

        logger.info(
            "job_processor_batch_complete",
            queue=policy.queue.value,
            processed=results["processed"],
            succeeded=results["succeeded"],
            retrying=results["retrying"],
            failed=results["failed"],
        )
        return results

    async def process_next(self, queue: str) -> Optional[JobSnapshot]:
        """Claim and run a single task; None when nothing is due."""
        policy = get_queue_policy(queue)
        job = await self._claim_next(policy)
        if job is None:
            return None
        await self._process_single_job(job, policy)
        return JobSnapshot.from_model(job)

    async def recover_stalled_jobs(self, queue: Optional[str] = None) -> int:
        """Return active tasks whose lock expired to pending (or fail them if exhausted)."""
        now = self.context.clock()
        cutoff = now - timedelta(minutes=get_settings().JOB_LOCK_TIMEOUT_MINUTES)
        filters = [
            BackgroundJob.status == JobStatus.ACTIVE.value,
            BackgroundJob.started_at < cutoff,
        ]
        if queue is not None:
            filters.append(BackgroundJob.queue == get_queue_policy(queue).queue.value)

        result = await self.db.execute(select(BackgroundJob).where(*filters))
        stalled = list(result.scalars().all())
        for job in stalled:
            job.worker_id = None
            if job.attempts >= job.max_attempts:
                job.error_message = f"Task lock expired on final attempt {job.attempts}"
                if job.job_type == JobType.SCAN.value:
                    await self._fail_stalled_scan(job, now)
                self._finish_failed(job, now)
            else:
                job.error_message = "Task lock expired; returned to queue"
                job.status = JobStatus.PENDING.value
                job.scheduled_for = now
            STALLED_JOBS_RECOVERED.labels(queue=job.queue).inc()
            logger.warning(
                "stalled_job_recovered",
                job_id=str(job.id),
                queue=job.queue,
                attempts=job.attempts,
                status=job.status,
            )
        await self.db.commit()
        return len(stalled)

    async def _fail_stalled_scan(self, job: BackgroundJob, now: datetime) -> None:
        """The worker died mid-scan, so nothing else will close its ScanJob."""
        scan_job_id = (job.payload or {}).get("scan_job_id")
        query = select(ScanJob).where(ScanJob.status != ScanStatus.COMPLETED.value)
        if scan_job_id:
            query = query.where(ScanJob.id == UUID(str(scan_job_id)))
        else:
            # Recurring runs link their ScanJob back to the task instead.
            query = query.where(ScanJob.queue_job_id == job.id).order_by(
                ScanJob.created_at.desc()
            )
        scan_job = (await self.db.execute(query.limit(1))).scalar_one_or_none()
        if scan_job is None:
            return
        record_scan_failure(
            scan_job,
            attempt=job.attempts,
            error=job.error_message or "Task lock expired",
            code="lock_expired",
            at=now,
        )
        logger.warning(
            "stalled_scan_marked_failed", job_id=str(job.id), scan_job_id=str(scan_job.id)
        )

    async def _claim_next(self, policy: QueuePolicy) -> Optional[BackgroundJob]:
        """
        Claim the oldest due pending task.

        The UPDATE only matches while the row is still pending, so two workers
        racing for the same row cannot both win.
        """
        now = self.context.clock()
        candidates = (
            await self.db.execute(
                select(BackgroundJob.id)
                .where(
                    BackgroundJob.queue == policy.queue.value,
                    BackgroundJob.status == JobStatus.PENDING.value,
                    BackgroundJob.scheduled_for <= now,
                )
                .order_by(BackgroundJob.scheduled_for, BackgroundJob.created_at)
                .limit(CLAIM_CANDIDATES)
            )
        ).scalars().all()

        for job_id in candidates:
            claimed = await self.db.execute(
                update(BackgroundJob)
                .where(
                    BackgroundJob.id == job_id,
                    BackgroundJob.status == JobStatus.PENDING.value,
                )
                .values(
                    status=JobStatus.ACTIVE.value,
                    started_at=now,
                    worker_id=self.worker_id,
                    attempts=BackgroundJob.attempts + 1,
                )
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount == 1:
                await self.db.commit()
                return await self.db.get(BackgroundJob, job_id, populate_existing=True)

        await self.db.commit()
        return None

    async def _process_single_job(self, job: BackgroundJob, policy: QueuePolicy) -> str:
        job_id = job.id
        log = logger.bind(
            job_id=str(job_id),
            queue=job.queue,
            job_type=job.job_type,
            owner_id=str(job.owner_id) if job.owner_id else None,
            attempt=job.attempts,
        )
        log.info("job_processing_start")
        timeout = policy.timeout_seconds()
        started = time.perf_counter()

        try:
            handler_cls = get_handler_factory(job.job_type)
            handler = handler_cls(self.context)
            result = await asyncio.wait_for(handler.execute(job, self.db), timeout=timeout)
        except asyncio.TimeoutError:
            log.error("job_processing_timeout", timeout_seconds=timeout)
            outcome = await self._record_failure(
                job_id,
                CostwatchException(
                    f"Job timed out after {timeout:g}s", code="job_timeout", retryable=True
                ),
            )
        except Exception as e:  # noqa: BLE001 - only the task fails, never the worker
            outcome = await self._record_failure(job_id, e)
        else:
            outcome = await self._record_success(job, result)

        duration = time.perf_counter() - started
        BACKGROUND_JOBS_PROCESSED.labels(queue=policy.queue.value, status=outcome).inc()
        BACKGROUND_JOB_DURATION.labels(queue=policy.queue.value, status=outcome).observe(duration)
        return outcome

    async def _record_success(self, job: BackgroundJob, result: Any) -> str:
        # Picks up a recurring schedule removed while this run was active.
        await self.db.refresh(job)
        now = self.context.clock()
        job.status = JobStatus.COMPLETED.value
        job.progress = 100
        job.completed_at = now
        job.result = result
        job.error_message = None
        if job.repeat_every_seconds:
            self._rearm(job, now)
        await self.db.commit()
        logger.info(
            "job_processing_success",
            job_id=str(job.id),
            job_type=job.job_type,
            rearmed=job.status == JobStatus.PENDING.value,
        )
        return OUTCOME_COMPLETED

    async def _record_failure(self, job_id: UUID, error: BaseException) -> str:
        await self.db.rollback()
        job = await self.db.get(BackgroundJob, job_id, populate_existing=True)
        if job is None:
            logger.error("job_vanished_during_processing", job_id=str(job_id), error=str(error))
            return OUTCOME_FAILED

        now = self.context.clock()
        retryable = is_retryable(error)
        job.error_message = str(error)[:MAX_ERROR_MESSAGE_CHARS]
        job.worker_id = None
        context = {
            "job_id": str(job.id),
            "queue": job.queue,
            "job_type": job.job_type,
            "owner_id": str(job.owner_id) if job.owner_id else None,
            "attempt": job.attempts,
            "max_attempts": job.max_attempts,
            "error": str(error),
            "error_type": type(error).__name__,
        }

        if retryable and job.attempts < job.max_attempts:
            delay = compute_backoff_seconds(
                job.backoff_type, job.backoff_delay_seconds, job.attempts
            )
            job.status = JobStatus.PENDING.value
            job.scheduled_for = now + timedelta(seconds=delay)
            await self.db.commit()
            logger.warning("job_processing_retry_scheduled", delay_seconds=delay, **context)
            return OUTCOME_RETRYING

        self._finish_failed(job, now)
        await self.db.commit()
        logger.error("job_processing_failed", retryable=retryable, **context)
        return OUTCOME_FAILED

    def _finish_failed(self, job: BackgroundJob, now: datetime) -> None:
        job.status = JobStatus.FAILED.value
        job.completed_at = now
        # A recurring schedule outlives a failed run.
        if job.repeat_every_seconds:
            self._rearm(job, now)

    @staticmethod
    def _rearm(job: BackgroundJob, now: datetime) -> None:
        job.status = JobStatus.PENDING.value
        job.attempts = 0
        job.progress = 0
        job.started_at = None
        job.worker_id = None
        job.scheduled_for = now + timedelta(seconds=int(job.repeat_every_seconds or 0))
