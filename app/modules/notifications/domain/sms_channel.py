"""
SMS delivery through AWS SNS direct publish.

Uses the service's own AWS identity, never an owner's scanned credentials.
"""

from typing import Any, Optional

import aioboto3
import structlog
from botocore.exceptions import BotoCoreError, ClientError

from app.modules.notifications.domain.base import AlertMessage, NotificationChannel, Recipient
from app.shared.adapters.aws import BOTO_CONFIG
from app.shared.core.config import get_settings
from app.shared.core.constants import Channel
from app.shared.core.exceptions import DeliveryError
from app.shared.core.retry import RetryPolicy

logger = structlog.get_logger()

PERMANENT_SNS_ERRORS = {
    "AuthorizationError",
    "InvalidParameter",
    "InvalidParameterValue",
    "OptedOut",
    "EndpointDisabled",
}
THROTTLING_SNS_ERRORS = {"Throttling", "ThrottlingException", "ThrottledException"}

# Single-segment SMS is 160 GSM characters.
MAX_SMS_CHARS = 160


def render_sms(alert: AlertMessage) -> str:
    text = f"{alert.title}: {alert.message}"
    if len(text) <= MAX_SMS_CHARS:
        return text
    return text[: MAX_SMS_CHARS - 3] + "..."


def classify_sns_error(exc: BaseException) -> DeliveryError:
    if isinstance(exc, ClientError):
        error = exc.response.get("Error", {})
        code = str(error.get("Code", "Unknown"))
        status = int(exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode") or 0)
        return DeliveryError(
            f"SNS publish failed ({code}): {error.get('Message', '')}".strip(),
            code=f"sns_{code}",
            retryable=code not in PERMANENT_SNS_ERRORS
            and (code in THROTTLING_SNS_ERRORS or status not in (400, 401, 403, 404)),
            status_code=status or None,
        )
    if isinstance(exc, BotoCoreError):
        return DeliveryError(f"SNS transport error: {exc}", code="sns_unavailable")
    return DeliveryError(f"Unexpected SMS failure: {exc}", code="sms_error")


class SmsChannel(NotificationChannel):
    channel = Channel.SMS

    def __init__(
        self,
        settings: Any = None,
        policy: Optional[RetryPolicy] = None,
        session: Optional[aioboto3.Session] = None,
    ):
        self.settings = settings or get_settings()
        self._session = session or aioboto3.Session()
        super().__init__(policy)

    def destination(self, recipient: Recipient) -> Optional[str]:
        return recipient.phone_number

    def unavailable_reason(self) -> Optional[str]:
        return None if self.settings.SMS_ENABLED else "sms_disabled"

    async def send(self, destination: str, alert: AlertMessage) -> Optional[str]:
        attributes: dict[str, Any] = {
            "AWS.SNS.SMS.SMSType": {"DataType": "String", "StringValue": "Transactional"},
        }
        if self.settings.SMS_SENDER_ID:
            attributes["AWS.SNS.SMS.SenderID"] = {
                "DataType": "String",
                "StringValue": self.settings.SMS_SENDER_ID,
            }
        try:
            async with self._session.client(
                "sns", region_name=self.settings.SMS_REGION, config=BOTO_CONFIG
            ) as sns:
                response = await sns.publish(
                    PhoneNumber=destination,
                    Message=render_sms(alert),
                    MessageAttributes=attributes,
                )
        except (ClientError, BotoCoreError) as exc:
            raise classify_sns_error(exc) from exc
        return response.get("MessageId")
