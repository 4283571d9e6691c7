from unittest.mock import AsyncMock, MagicMock

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from app.modules.notifications.domain.base import AlertMessage, DeliveryStatus, Recipient
from app.modules.notifications.domain.sms_channel import (
    MAX_SMS_CHARS,
    SmsChannel,
    classify_sns_error,
    render_sms,
)
from app.shared.core.config import get_settings
from app.shared.core.constants import Severity
from app.shared.core.retry import RetryPolicy

ALERT = AlertMessage(
    title="🚨 CRITICAL: Budget Exceeded by 30%+",
    message="Your AWS spending is $135.00, which is 35.0% over your budget of $100.00.",
    severity=Severity.CRITICAL,
)
RECIPIENT = Recipient(phone_number="+15555550100")


def _client_error(code, status=400):
    return ClientError(
        {
            "Error": {"Code": code, "Message": f"{code} happened"},
            "ResponseMetadata": {"HTTPStatusCode": status},
        },
        "Publish",
    )


def _session(sns):
    session = MagicMock()
    session.client.return_value.__aenter__ = AsyncMock(return_value=sns)
    session.client.return_value.__aexit__ = AsyncMock(return_value=False)
    return session


def _channel(session, **overrides):
    settings = get_settings().model_copy(update=overrides) if overrides else get_settings()
    return SmsChannel(
        settings,
        policy=RetryPolicy(name="test", max_attempts=3, base_delay=0, max_delay=0),
        session=session,
    )


def test_render_sms_truncates_to_one_segment():
    assert render_sms(AlertMessage(title="T", message="short")) == "T: short"

    long_text = render_sms(AlertMessage(title="T", message="x" * 500))
    assert len(long_text) == MAX_SMS_CHARS
    assert long_text.endswith("...")


def test_sns_error_classification():
    assert classify_sns_error(_client_error("OptedOut")).retryable is False
    assert classify_sns_error(_client_error("ValidationError", status=400)).retryable is False
    throttled = classify_sns_error(_client_error("Throttling", status=400))
    assert (throttled.code, throttled.retryable) == ("sns_Throttling", True)
    unavailable = classify_sns_error(EndpointConnectionError(endpoint_url="https://sns"))
    assert (unavailable.code, unavailable.retryable) == ("sns_unavailable", True)


@pytest.mark.asyncio
async def test_sms_published():
    sns = AsyncMock()
    sns.publish.return_value = {"MessageId": "msg-123"}
    session = _session(sns)

    result = await _channel(session, SMS_SENDER_ID="Costwatch").deliver(RECIPIENT, ALERT)

    assert result.status == DeliveryStatus.DELIVERED
    assert result.message_id == "msg-123"
    assert session.client.call_args.args == ("sns",)
    assert session.client.call_args.kwargs["region_name"] == "us-east-1"
    kwargs = sns.publish.await_args.kwargs
    assert kwargs["PhoneNumber"] == "+15555550100"
    assert kwargs["Message"] == render_sms(ALERT)
    assert kwargs["MessageAttributes"]["AWS.SNS.SMS.SenderID"]["StringValue"] == "Costwatch"


@pytest.mark.asyncio
async def test_opted_out_number_is_not_retried():
    sns = AsyncMock()
    sns.publish.side_effect = _client_error("OptedOut")

    result = await _channel(_session(sns)).deliver(RECIPIENT, ALERT)

    assert result.status == DeliveryStatus.FAILED
    assert result.attempts == 1
    assert result.error_code == "sns_OptedOut"


@pytest.mark.asyncio
async def test_throttled_publish_is_retried():
    sns = AsyncMock()
    sns.publish.side_effect = [_client_error("Throttling", status=429), {"MessageId": "m-2"}]

    result = await _channel(_session(sns)).deliver(RECIPIENT, ALERT)

    assert result.status == DeliveryStatus.DELIVERED
    assert result.attempts == 2


@pytest.mark.asyncio
async def test_disabled_or_missing_number_is_skipped():
    session = _session(AsyncMock())

    disabled = await _channel(session, SMS_ENABLED=False).deliver(RECIPIENT, ALERT)
    no_number = await _channel(session).deliver(Recipient(), ALERT)

    assert (disabled.status, disabled.error_code) == (DeliveryStatus.SKIPPED, "sms_disabled")
    assert (no_number.status, no_number.error_code) == (DeliveryStatus.SKIPPED, "no_destination")
    session.client.assert_not_called()
