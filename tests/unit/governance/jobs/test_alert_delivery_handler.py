from uuid import uuid4

import pytest

from app.models.background_job import JobStatus
from app.modules.governance.domain.jobs.handlers.alert_delivery import resolve_recipient
from app.modules.governance.domain.jobs.payloads import AlertTaskPayload
from app.modules.governance.domain.jobs.processor import JobProcessor
from app.modules.notifications.domain.base import (
    AlertMessage,
    DeliveryResult,
    DeliveryStatus,
    Recipient,
)
from app.shared.core.constants import Channel, Severity

WEBHOOK = "https://hooks.slack.com/services/T000/B000/XXXX"


def _payload(owner_id, channel=Channel.CHAT):
    return AlertTaskPayload(
        owner_id=owner_id,
        alert_id=uuid4(),
        channel=channel,
        severity=Severity.CRITICAL,
        title="🚨 CRITICAL: Budget Exceeded by 30%+",
        message="Your AWS spending is $135.00, which is 35.0% over your budget of $100.00.",
        data={"current_cost": "135.00"},
    )


@pytest.mark.asyncio
async def test_resolve_recipient_opens_sealed_webhook(db, make_account, vault):
    account = await make_account(db, chat_webhook_url=WEBHOOK, phone_number="+15555550100")

    recipient = await resolve_recipient(db, vault, account.owner_id)

    assert recipient == Recipient(
        email="owner@example.com", chat_webhook_url=WEBHOOK, phone_number="+15555550100"
    )
    assert WEBHOOK not in repr(recipient)


@pytest.mark.asyncio
async def test_resolve_recipient_without_account_is_empty(db, vault):
    assert await resolve_recipient(db, vault, uuid4()) == Recipient()


@pytest.mark.asyncio
async def test_delivery_task_calls_dispatcher(
    db, make_account, queue_client, worker_context, mock_dispatcher
):
    account = await make_account(db, chat_webhook_url=WEBHOOK)
    payload = _payload(account.owner_id)
    queued = await queue_client.add_alert_job(payload)

    results = await JobProcessor(db, worker_context).process_pending_jobs("alerts")

    assert results["succeeded"] == 1
    channel, recipient, alert = mock_dispatcher.deliver.await_args.args
    assert channel is Channel.CHAT
    assert recipient.chat_webhook_url == WEBHOOK
    assert alert == AlertMessage(
        title=payload.title,
        message=payload.message,
        severity=Severity.CRITICAL,
        data={"current_cost": "135.00"},
    )

    job = await queue_client.get_job(queued.id)
    assert job.result["alert_id"] == str(payload.alert_id)
    assert job.result["status"] == "delivered"


@pytest.mark.asyncio
async def test_failed_delivery_is_reported_not_retried(
    db, make_account, queue_client, worker_context, mock_dispatcher
):
    account = await make_account(db)
    mock_dispatcher.deliver.return_value = DeliveryResult(
        channel=Channel.EMAIL,
        status=DeliveryStatus.FAILED,
        attempts=3,
        error="421 Service not available",
        error_code="smtp_error",
    )
    queued = await queue_client.add_alert_job(_payload(account.owner_id, Channel.EMAIL))

    results = await JobProcessor(db, worker_context).process_pending_jobs("alerts")

    assert results["succeeded"] == 1
    job = await queue_client.get_job(queued.id)
    assert job.status == JobStatus.COMPLETED.value
    assert job.attempts == 1
    assert job.result["status"] == "failed"
    assert job.result["attempts"] == 3
