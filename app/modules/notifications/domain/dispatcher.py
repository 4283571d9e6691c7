"""
Notification Dispatcher

Routes one alert to one channel adapter. The dashboard channel is a no-op:
the persisted Alert row already is the dashboard record.
"""

from typing import Iterable, Mapping, Optional

import structlog

from app.modules.notifications.domain.base import (
    AlertMessage,
    DeliveryResult,
    DeliveryStatus,
    NotificationChannel,
    Recipient,
)
from app.modules.notifications.domain.chat_channel import ChatWebhookChannel
from app.modules.notifications.domain.email_channel import EmailChannel
from app.modules.notifications.domain.sms_channel import SmsChannel
from app.shared.core.constants import Channel

logger = structlog.get_logger()


class NotificationDispatcher:
    def __init__(self, channels: Mapping[Channel, NotificationChannel]):
        self._channels = dict(channels)

    @classmethod
    def from_settings(cls, settings: object = None) -> "NotificationDispatcher":
        return cls(
            {
                Channel.EMAIL: EmailChannel(settings),
                Channel.CHAT: ChatWebhookChannel(settings),
                Channel.SMS: SmsChannel(settings),
            }
        )

    def adapter(self, channel: Channel) -> Optional[NotificationChannel]:
        return self._channels.get(Channel(channel))

    async def deliver(
        self, channel: Channel | str, recipient: Recipient, alert: AlertMessage
    ) -> DeliveryResult:
        channel = Channel(channel)
        if channel == Channel.DASHBOARD:
            return DeliveryResult(channel=channel, status=DeliveryStatus.DELIVERED)

        adapter = self._channels.get(channel)
        if adapter is None:
            logger.warning("notification_channel_not_configured", channel=channel.value)
            return DeliveryResult(
                channel=channel,
                status=DeliveryStatus.SKIPPED,
                error_code="channel_not_configured",
            )
        return await adapter.deliver(recipient, alert)

    async def deliver_all(
        self,
        channels: Iterable[Channel | str],
        recipient: Recipient,
        alert: AlertMessage,
    ) -> list[DeliveryResult]:
        """Deliver to each channel in turn; one channel's failure never blocks the rest."""
        results = []
        for channel in channels:
            try:
                results.append(await self.deliver(channel, recipient, alert))
            except Exception as exc:  # noqa: BLE001 - per-channel isolation
                logger.error(
                    "notification_channel_crashed",
                    channel=str(channel),
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                results.append(
                    DeliveryResult(
                        channel=Channel(channel),
                        status=DeliveryStatus.FAILED,
                        error=str(exc),
                        error_code=type(exc).__name__,
                    )
                )
        return results
