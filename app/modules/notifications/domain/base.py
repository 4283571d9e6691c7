"""
Channel adapter contract shared by email, chat and SMS delivery.

Each adapter supplies a destination lookup, a single send attempt and a
retryable-error predicate; the retry loop itself is the generic RetryPolicy.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

import structlog

from app.shared.core.constants import Channel, Severity
from app.shared.core.exceptions import DeliveryError, is_retryable
from app.shared.core.ops_metrics import NOTIFICATION_DELIVERIES
from app.shared.core.retry import RetryPolicy, notification_policy

logger = structlog.get_logger()

# Status codes that mean the request itself is wrong; resending cannot help.
NON_RETRYABLE_HTTP_STATUSES = frozenset({400, 401, 403, 404})


class DeliveryStatus(str, Enum):
    DELIVERED = "delivered"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True, slots=True)
class Recipient:
    """Resolved destinations for one owner; any of them may be missing."""

    email: Optional[str] = None
    chat_webhook_url: Optional[str] = None
    phone_number: Optional[str] = None

    def __repr__(self) -> str:
        return (
            f"Recipient(email={self.email!r}, "
            f"chat_webhook_url={'***' if self.chat_webhook_url else None}, "
            f"phone_number={'***' if self.phone_number else None})"
        )


@dataclass(frozen=True, slots=True)
class AlertMessage:
    title: str
    message: str
    severity: Severity = Severity.WARNING
    data: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class DeliveryResult:
    channel: Channel
    status: DeliveryStatus
    attempts: int = 0
    message_id: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @property
    def delivered(self) -> bool:
        return self.status == DeliveryStatus.DELIVERED

    def to_dict(self) -> dict[str, Any]:
        return {
            "channel": self.channel.value,
            "status": self.status.value,
            "attempts": self.attempts,
            "message_id": self.message_id,
            "error": self.error,
            "error_code": self.error_code,
        }


def http_status_retryable(status_code: int) -> bool:
    if status_code in NON_RETRYABLE_HTTP_STATUSES:
        return False
    return status_code in (408, 429) or status_code >= 500


class NotificationChannel(ABC):
    channel: Channel

    def __init__(self, policy: Optional[RetryPolicy] = None):
        self.policy = (policy or notification_policy(f"notify_{self.channel.value}")).with_predicate(
            self.is_retryable
        )

    @abstractmethod
    def destination(self, recipient: Recipient) -> Optional[str]:
        """Where this channel would send for ``recipient``, or None when unset."""

    @abstractmethod
    async def send(self, destination: str, alert: AlertMessage) -> Optional[str]:
        """One send attempt; returns the provider message id when there is one."""

    def is_retryable(self, exc: BaseException) -> bool:
        return is_retryable(exc)

    def unavailable_reason(self) -> Optional[str]:
        """Non-None when the channel is switched off for this process."""
        return None

    async def deliver(self, recipient: Recipient, alert: AlertMessage) -> DeliveryResult:
        destination = self.destination(recipient)
        if not destination:
            return self._record(
                DeliveryResult(
                    channel=self.channel,
                    status=DeliveryStatus.SKIPPED,
                    error_code="no_destination",
                )
            )
        reason = self.unavailable_reason()
        if reason:
            return self._record(
                DeliveryResult(
                    channel=self.channel, status=DeliveryStatus.SKIPPED, error_code=reason
                )
            )

        outcome = await self.policy.run(lambda: self.send(destination, alert))
        if outcome.succeeded:
            return self._record(
                DeliveryResult(
                    channel=self.channel,
                    status=DeliveryStatus.DELIVERED,
                    attempts=outcome.attempts,
                    message_id=outcome.value,
                )
            )

        error = outcome.error
        code = error.code if isinstance(error, DeliveryError) else type(error).__name__
        return self._record(
            DeliveryResult(
                channel=self.channel,
                status=DeliveryStatus.FAILED,
                attempts=outcome.attempts,
                error=str(error),
                error_code=code,
            )
        )

    def _record(self, result: DeliveryResult) -> DeliveryResult:
        NOTIFICATION_DELIVERIES.labels(
            channel=self.channel.value, status=result.status.value
        ).inc()
        log = logger.info if result.status != DeliveryStatus.FAILED else logger.warning
        log(
            "notification_delivery_finished",
            channel=self.channel.value,
            status=result.status.value,
            attempts=result.attempts,
            error_code=result.error_code,
        )
        return result
