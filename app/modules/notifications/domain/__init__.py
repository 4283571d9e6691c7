from .base import AlertMessage, DeliveryResult, DeliveryStatus, NotificationChannel, Recipient
from .chat_channel import ChatWebhookChannel
from .dispatcher import NotificationDispatcher
from .email_channel import EmailChannel
from .sms_channel import SmsChannel

__all__ = [
    "AlertMessage",
    "ChatWebhookChannel",
    "DeliveryResult",
    "DeliveryStatus",
    "EmailChannel",
    "NotificationChannel",
    "NotificationDispatcher",
    "Recipient",
    "SmsChannel",
]
