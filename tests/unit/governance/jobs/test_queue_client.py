import dataclasses
from datetime import timedelta
from uuid import uuid4

import pytest
from sqlalchemy import func, select

from app.models.background_job import BackgroundJob, JobStatus
from app.models.scan_job import ScanJob, ScanStatus
from app.modules.governance.domain.jobs import queue as queue_module
from app.modules.governance.domain.jobs.payloads import AlertTaskPayload, ScanTaskPayload
from app.modules.governance.domain.jobs.queue import get_queue_policy, recurring_scan_key
from app.shared.core.constants import Channel, Severity
from app.shared.core.exceptions import ValidationError


def test_queue_policies():
    scan = get_queue_policy("scan")
    assert (scan.max_attempts, scan.backoff.value, scan.backoff_base_seconds) == (3, "exponential", 2.0)
    assert scan.timeout_seconds() == 300

    alerts = get_queue_policy("alerts")
    assert (alerts.max_attempts, alerts.backoff.value, alerts.backoff_base_seconds) == (2, "linear", 1.0)
    assert alerts.keep_completed == 1000

    with pytest.raises(ValidationError):
        get_queue_policy("reports")


@pytest.mark.asyncio
async def test_request_scan_creates_scan_job_and_task(db, make_account, queue_client, clock):
    account = await make_account(db)

    request = await queue_client.request_scan(account.id, region="eu-west-1")

    scan_job = await db.get(ScanJob, request.scan_job_id)
    assert scan_job.status == ScanStatus.PENDING.value
    assert scan_job.queue_job_id == request.job.id
    assert scan_job.owner_id == account.owner_id

    job = request.job
    assert job.queue == "scan"
    assert job.job_type == "scan"
    assert job.status == JobStatus.PENDING.value
    assert job.attempts == 0
    assert job.max_attempts == 3
    assert job.payload["scan_job_id"] == str(request.scan_job_id)
    assert job.payload["region"] == "eu-west-1"
    assert job.scheduled_for == clock()


@pytest.mark.asyncio
async def test_request_scan_rejects_bad_input_without_writing(db, make_account, queue_client):
    inactive = await make_account(db, is_active=False)

    with pytest.raises(ValidationError):
        await queue_client.request_scan(inactive.id)
    with pytest.raises(ValidationError):
        await queue_client.request_scan(uuid4())
    with pytest.raises(ValidationError):
        await queue_client.request_scan(inactive.id, region="mars-north-1")

    assert (await db.execute(select(func.count(ScanJob.id)))).scalar_one() == 0
    assert (await db.execute(select(func.count(BackgroundJob.id)))).scalar_one() == 0


@pytest.mark.asyncio
async def test_add_scan_job_honours_delay(queue_client, clock):
    payload = ScanTaskPayload(owner_id=uuid4(), account_id=uuid4())

    job = await queue_client.add_scan_job(payload, delay_seconds=30)

    assert job.scheduled_for == clock() + timedelta(seconds=30)


@pytest.mark.asyncio
async def test_add_alert_job_uses_alert_queue_policy(queue_client):
    payload = AlertTaskPayload(
        owner_id=uuid4(),
        alert_id=uuid4(),
        channel=Channel.EMAIL,
        severity=Severity.WARNING,
        title="⚠️ WARNING: Budget Exceeded",
        message="Your AWS spending is $115.00, 15.0% over budget.",
    )

    job = await queue_client.add_alert_job(payload)

    assert job.queue == "alerts"
    assert job.job_type == "alert_delivery"
    assert job.max_attempts == 2
    assert job.payload["channel"] == "email"


@pytest.mark.asyncio
async def test_recurring_scan_keeps_a_single_entry(db, make_account, queue_client, clock):
    account = await make_account(db)

    first = await queue_client.schedule_recurring_scan(account.id, 60)
    second = await queue_client.schedule_recurring_scan(account.id, 15)

    assert first.id == second.id
    assert second.deduplication_key == recurring_scan_key(account.id)
    assert second.repeat_every_seconds == 900
    assert second.scheduled_for == clock() + timedelta(minutes=15)
    assert "scan_job_id" in second.payload and second.payload["scan_job_id"] is None
    count = await db.execute(
        select(func.count(BackgroundJob.id)).where(
            BackgroundJob.deduplication_key == recurring_scan_key(account.id)
        )
    )
    assert count.scalar_one() == 1


@pytest.mark.asyncio
async def test_recurring_scan_rejects_zero_interval(db, make_account, queue_client):
    account = await make_account(db)
    with pytest.raises(ValidationError):
        await queue_client.schedule_recurring_scan(account.id, 0)


@pytest.mark.asyncio
async def test_remove_recurring_scan(db, make_account, queue_client):
    account = await make_account(db)
    await queue_client.schedule_recurring_scan(account.id, 60)

    assert await queue_client.remove_recurring_scan(account.id) is True
    assert await queue_client.remove_recurring_scan(account.id) is False


@pytest.mark.asyncio
async def test_remove_recurring_scan_while_running_detaches_schedule(
    db, make_account, queue_client
):
    account = await make_account(db)
    entry = await queue_client.schedule_recurring_scan(account.id, 60)
    job = await db.get(BackgroundJob, entry.id)
    job.status = JobStatus.ACTIVE.value
    await db.commit()

    assert await queue_client.remove_recurring_scan(account.id) is True

    snapshot = await queue_client.get_job(entry.id)
    assert snapshot.status == JobStatus.ACTIVE.value
    assert snapshot.repeat_every_seconds is None
    assert snapshot.deduplication_key is None


@pytest.mark.asyncio
async def test_job_counts_are_zero_filled(queue_client):
    await queue_client.add_scan_job(ScanTaskPayload(owner_id=uuid4(), account_id=uuid4()))

    counts = await queue_client.get_job_counts("scan")

    assert counts == {"pending": 1, "active": 0, "completed": 0, "failed": 0}
    assert await queue_client.get_job_counts("alerts") == {
        "pending": 0,
        "active": 0,
        "completed": 0,
        "failed": 0,
    }


@pytest.mark.asyncio
async def test_prune_keeps_newest_completed_and_all_failed(
    db, queue_client, clock, monkeypatch
):
    monkeypatch.setitem(
        queue_module.QUEUE_POLICIES,
        "scan",
        dataclasses.replace(queue_module.QUEUE_POLICIES["scan"], keep_completed=2),
    )
    ids = []
    for offset in range(4):
        snapshot = await queue_client.add_scan_job(
            ScanTaskPayload(owner_id=uuid4(), account_id=uuid4())
        )
        job = await db.get(BackgroundJob, snapshot.id)
        job.status = JobStatus.COMPLETED.value
        job.completed_at = clock() + timedelta(minutes=offset)
        await db.commit()
        ids.append(snapshot.id)
    failed = await queue_client.add_scan_job(ScanTaskPayload(owner_id=uuid4(), account_id=uuid4()))
    failed_job = await db.get(BackgroundJob, failed.id)
    failed_job.status = JobStatus.FAILED.value
    failed_job.completed_at = clock()
    await db.commit()

    deleted = await queue_client.prune("scan")

    assert deleted == 2
    remaining = set(
        (await db.execute(select(BackgroundJob.id))).scalars().all()
    )
    assert remaining == {ids[2], ids[3], failed.id}
