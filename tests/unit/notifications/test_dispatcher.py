from unittest.mock import AsyncMock, MagicMock

import pytest

from app.modules.notifications.domain.base import (
    AlertMessage,
    DeliveryResult,
    DeliveryStatus,
    Recipient,
)
from app.modules.notifications.domain.dispatcher import NotificationDispatcher
from app.modules.notifications.domain.email_channel import EmailChannel
from app.shared.core.constants import Channel

ALERT = AlertMessage(title="Budget", message="Over budget")
RECIPIENT = Recipient(email="owner@example.com")


def _adapter(channel, result=None, error=None):
    adapter = MagicMock()
    adapter.deliver = AsyncMock(
        return_value=result or DeliveryResult(channel=channel, status=DeliveryStatus.DELIVERED, attempts=1),
        side_effect=error,
    )
    return adapter


def test_from_settings_wires_every_external_channel():
    dispatcher = NotificationDispatcher.from_settings()

    assert isinstance(dispatcher.adapter(Channel.EMAIL), EmailChannel)
    assert dispatcher.adapter(Channel.CHAT) is not None
    assert dispatcher.adapter(Channel.SMS) is not None
    assert dispatcher.adapter(Channel.DASHBOARD) is None


@pytest.mark.asyncio
async def test_dashboard_is_a_no_op():
    result = await NotificationDispatcher({}).deliver("dashboard", RECIPIENT, ALERT)

    assert result.status == DeliveryStatus.DELIVERED
    assert result.attempts == 0


@pytest.mark.asyncio
async def test_routes_to_channel_adapter():
    email = _adapter(Channel.EMAIL)

    result = await NotificationDispatcher({Channel.EMAIL: email}).deliver("email", RECIPIENT, ALERT)

    assert result.delivered
    email.deliver.assert_awaited_once_with(RECIPIENT, ALERT)


@pytest.mark.asyncio
async def test_unconfigured_channel_is_skipped():
    result = await NotificationDispatcher({}).deliver(Channel.SMS, RECIPIENT, ALERT)

    assert (result.status, result.error_code) == (DeliveryStatus.SKIPPED, "channel_not_configured")


@pytest.mark.asyncio
async def test_deliver_all_isolates_channel_crashes():
    chat = _adapter(Channel.CHAT, error=RuntimeError("boom"))
    email = _adapter(Channel.EMAIL)
    dispatcher = NotificationDispatcher({Channel.CHAT: chat, Channel.EMAIL: email})

    results = await dispatcher.deliver_all(
        [Channel.DASHBOARD, Channel.CHAT, Channel.EMAIL], RECIPIENT, ALERT
    )

    assert [r.status for r in results] == [
        DeliveryStatus.DELIVERED,
        DeliveryStatus.FAILED,
        DeliveryStatus.DELIVERED,
    ]
    assert results[1].error_code == "RuntimeError"
    email.deliver.assert_awaited_once()
