from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from app.models.alert import Alert
from app.models.background_job import BackgroundJob, JobStatus
from app.models.recommendation import Recommendation
from app.models.resource import Resource
from app.models.scan_job import ScanJob, ScanStatus
from app.modules.governance.domain.jobs.handlers.base import BaseJobHandler
from app.modules.governance.domain.jobs.handlers.scan import PROGRESS_ALERTS, ScanHandler
from app.modules.governance.domain.jobs.processor import JobProcessor
from app.shared.core.exceptions import ProviderTransientError


def _instance():
    return {
        "InstanceId": "i-0abc",
        "InstanceType": "t3.large",
        "State": {"Name": "running"},
        "Tags": [{"Key": "Name", "Value": "web-1"}],
        "Placement": {"AvailabilityZone": "us-east-1a"},
    }


@pytest.mark.asyncio
async def test_scan_pipeline_end_to_end(
    db, make_account, queue_client, worker_context, fake_adapter
):
    account = await make_account(db)
    fake_adapter.list_instances.return_value = [_instance()]
    fake_adapter.get_cost_and_usage.side_effect = None
    fake_adapter.get_cost_and_usage.return_value = {
        "Amazon Elastic Compute Cloud - Compute": Decimal("135.00")
    }
    request = await queue_client.request_scan(account.id)

    results = await JobProcessor(db, worker_context).process_pending_jobs("scan")

    assert results["succeeded"] == 1
    scan_job = (
        await db.execute(select(ScanJob).where(ScanJob.id == request.scan_job_id))
    ).scalar_one()
    assert scan_job.status == ScanStatus.COMPLETED.value
    assert scan_job.resource_count == 1
    assert scan_job.total_cost == Decimal("135.00")
    assert scan_job.started_at is not None and scan_job.completed_at is not None

    job = await queue_client.get_job(request.job.id)
    assert job.status == JobStatus.COMPLETED.value
    assert job.progress == 100
    assert job.result["cost_source"] == "billing"
    assert job.result["recommendations"] == 2

    resource = (await db.execute(select(Resource))).scalar_one()
    assert resource.monthly_cost == Decimal("60.74")
    recommendations = (await db.execute(select(Recommendation))).scalars().all()
    assert len(recommendations) == 2

    # The detached alert check ran to completion before the batch returned.
    alert = (await db.execute(select(Alert))).scalar_one()
    assert alert.severity == "critical"
    assert alert.message == (
        "Your AWS spending is $135.00, which is 35.0% over your budget of $100.00."
    )
    assert alert.channels == ["dashboard", "email"]
    delivery = (
        await db.execute(select(BackgroundJob).where(BackgroundJob.queue == "alerts"))
    ).scalar_one()
    assert delivery.status == JobStatus.PENDING.value
    assert delivery.payload["channel"] == "email"
    assert delivery.payload["alert_id"] == str(alert.id)
    assert worker_context.supervisor.failures == 0


@pytest.mark.asyncio
async def test_scan_without_billing_falls_back_to_estimate(
    db, make_account, queue_client, worker_context, fake_adapter
):
    account = await make_account(db)
    fake_adapter.list_instances.return_value = [_instance()]
    request = await queue_client.request_scan(account.id)

    await JobProcessor(db, worker_context).process_pending_jobs("scan")

    job = await queue_client.get_job(request.job.id)
    assert job.result["cost_source"] == "estimate"
    assert job.result["total_cost"] == "60.74"
    # Under budget: nothing to alert on.
    assert (await db.execute(select(Alert))).scalars().all() == []


@pytest.mark.asyncio
async def test_failed_scan_marks_scan_job_failed_and_retries_task(
    db, make_account, queue_client, worker_context, fake_adapter
):
    account = await make_account(db)
    fake_adapter.list_instances.side_effect = ProviderTransientError("Rate exceeded")
    request = await queue_client.request_scan(account.id)

    results = await JobProcessor(db, worker_context).process_pending_jobs("scan")

    assert results["retrying"] == 1
    scan_job = (
        await db.execute(select(ScanJob).where(ScanJob.id == request.scan_job_id))
    ).scalar_one()
    assert scan_job.status == ScanStatus.FAILED.value
    assert scan_job.errors[0]["code"] == "provider_transient_error"
    assert scan_job.errors[0]["attempt"] == 1

    job = await queue_client.get_job(request.job.id)
    assert job.status == JobStatus.PENDING.value
    assert job.attempts == 1


@pytest.mark.asyncio
async def test_scan_for_deactivated_account_fails_without_retry(
    db, make_account, queue_client, worker_context
):
    account = await make_account(db)
    request = await queue_client.request_scan(account.id)
    account.is_active = False
    await db.commit()

    results = await JobProcessor(db, worker_context).process_pending_jobs("scan")

    assert results["failed"] == 1
    job = await queue_client.get_job(request.job.id)
    assert job.status == JobStatus.FAILED.value
    assert job.attempts == 1

    scan_job = (
        await db.execute(select(ScanJob).where(ScanJob.id == request.scan_job_id))
    ).scalar_one()
    assert scan_job.status == ScanStatus.FAILED.value
    assert scan_job.errors[0]["code"] == "validation_error"
    assert scan_job.errors[0]["error"] == "Scan target account not found or inactive"


@pytest.mark.asyncio
async def test_no_alert_check_when_completion_commit_fails(
    db, make_account, queue_client, worker_context, fake_adapter, monkeypatch
):
    account = await make_account(db)
    fake_adapter.list_instances.return_value = [_instance()]
    fake_adapter.get_cost_and_usage.side_effect = None
    fake_adapter.get_cost_and_usage.return_value = {
        "Amazon Elastic Compute Cloud - Compute": Decimal("135.00")
    }
    request = await queue_client.request_scan(account.id)

    async def report_progress(self, job, session, progress):
        if progress == PROGRESS_ALERTS:
            raise OperationalError("COMMIT", {}, Exception("database is locked"))
        await BaseJobHandler.report_progress(self, job, session, progress)

    monkeypatch.setattr(ScanHandler, "report_progress", report_progress)

    results = await JobProcessor(db, worker_context).process_pending_jobs("scan")

    assert results["retrying"] == 1
    scan_job = (
        await db.execute(select(ScanJob).where(ScanJob.id == request.scan_job_id))
    ).scalar_one()
    assert scan_job.status == ScanStatus.FAILED.value
    assert scan_job.errors[0]["code"] == "OperationalError"
    # Over budget, yet nothing was evaluated for a scan that never committed.
    assert (await db.execute(select(Alert))).scalars().all() == []
    assert (
        await db.execute(select(BackgroundJob).where(BackgroundJob.queue == "alerts"))
    ).scalars().all() == []


@pytest.mark.asyncio
async def test_stalled_final_attempt_fails_its_scan_job(
    db, make_account, queue_client, worker_context, clock
):
    account = await make_account(db)
    request = await queue_client.request_scan(account.id)
    job = await db.get(BackgroundJob, request.job.id)
    job.status = JobStatus.ACTIVE.value
    job.attempts = job.max_attempts
    job.started_at = clock() - timedelta(minutes=45)
    job.worker_id = "dead-worker"
    scan_job = await db.get(ScanJob, request.scan_job_id)
    scan_job.status = ScanStatus.RUNNING.value
    scan_job.started_at = clock() - timedelta(minutes=45)
    await db.commit()

    assert await JobProcessor(db, worker_context).recover_stalled_jobs("scan") == 1

    assert (await queue_client.get_job(request.job.id)).status == JobStatus.FAILED.value
    scan_job = (
        await db.execute(
            select(ScanJob)
            .where(ScanJob.id == request.scan_job_id)
            .execution_options(populate_existing=True)
        )
    ).scalar_one()
    assert scan_job.status == ScanStatus.FAILED.value
    assert scan_job.errors[-1]["code"] == "lock_expired"
    assert scan_job.errors[-1]["attempt"] == job.max_attempts


@pytest.mark.asyncio
async def test_stalled_retryable_attempt_leaves_scan_job_running(
    db, make_account, queue_client, worker_context, clock
):
    account = await make_account(db)
    request = await queue_client.request_scan(account.id)
    job = await db.get(BackgroundJob, request.job.id)
    job.status = JobStatus.ACTIVE.value
    job.attempts = 1
    job.started_at = clock() - timedelta(minutes=45)
    scan_job = await db.get(ScanJob, request.scan_job_id)
    scan_job.status = ScanStatus.RUNNING.value
    await db.commit()

    await JobProcessor(db, worker_context).recover_stalled_jobs("scan")

    assert (await queue_client.get_job(request.job.id)).status == JobStatus.PENDING.value
    assert (await db.get(ScanJob, request.scan_job_id)).status == ScanStatus.RUNNING.value
