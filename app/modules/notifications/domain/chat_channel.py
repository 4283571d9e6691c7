"""
Chat delivery via an incoming webhook (Slack Block Kit).

The webhook URL is a secret: it grants post access to the channel. It is
stored sealed on the account and validated before every send.
"""

from typing import Any, Optional
from urllib.parse import urlparse

import httpx
import structlog

from app.modules.notifications.domain.base import (
    AlertMessage,
    NotificationChannel,
    Recipient,
    http_status_retryable,
)
from app.shared.core.config import get_settings
from app.shared.core.constants import Channel
from app.shared.core.exceptions import DeliveryError
from app.shared.core.http import get_http_client
from app.shared.core.retry import RetryPolicy

logger = structlog.get_logger()

SEVERITY_COLORS = {
    "critical": "#EF4444",
    "warning": "#F59E0B",
    "info": "#3B82F6",
}

SLACK_HOST = "hooks.slack.com"


def _host_allowed(host: str, allowlist: set[str]) -> bool:
    if not allowlist:
        return False
    if host in allowlist:
        return True
    return any(host.endswith(f".{allowed}") for allowed in allowlist)


def validate_webhook_url(url: str, allowlist: set[str]) -> str:
    """Return the normalized host, or raise a non-retryable DeliveryError."""
    parsed = urlparse(url)
    problem = None
    if parsed.scheme.lower() != "https":
        problem = "Chat webhook URL must use HTTPS"
    elif not parsed.hostname:
        problem = "Chat webhook URL must include a host"
    elif parsed.username or parsed.password:
        problem = "Chat webhook URL must not include credentials"
    elif not _host_allowed(parsed.hostname.lower(), allowlist):
        problem = "Chat webhook URL host is not in allowlist"
    elif not parsed.path.startswith("/services/"):
        problem = "Chat webhook URL path must start with /services/"
    if problem:
        raise DeliveryError(problem, code="invalid_webhook_url", retryable=False)
    return parsed.hostname.lower()


def _truncate(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return text[: max(0, max_chars - 12)] + "… (truncated)"


def build_block_kit_payload(alert: AlertMessage) -> dict[str, Any]:
    color = SEVERITY_COLORS.get(alert.severity.value, SEVERITY_COLORS["warning"])
    fields = [
        {"type": "mrkdwn", "text": f"*{key}*\n{value}"}
        for key, value in list(alert.data.items())[:10]
    ]
    blocks: list[dict[str, Any]] = [
        {
            "type": "header",
            "text": {"type": "plain_text", "text": _truncate(alert.title, 150), "emoji": True},
        },
        {"type": "section", "text": {"type": "mrkdwn", "text": _truncate(alert.message, 3000)}},
    ]
    if fields:
        blocks.append({"type": "section", "fields": fields})
    return {
        "text": _truncate(alert.title, 150),
        "attachments": [{"color": color, "blocks": blocks}],
    }


class ChatWebhookChannel(NotificationChannel):
    channel = Channel.CHAT

    def __init__(self, settings: Any = None, policy: Optional[RetryPolicy] = None):
        self.settings = settings or get_settings()
        self._allowlist = {
            d.lower() for d in getattr(self.settings, "CHAT_WEBHOOK_ALLOWED_DOMAINS", []) if d
        }
        super().__init__(policy)

    def destination(self, recipient: Recipient) -> Optional[str]:
        return recipient.chat_webhook_url

    async def send(self, destination: str, alert: AlertMessage) -> Optional[str]:
        host = validate_webhook_url(destination, self._allowlist)
        client = get_http_client(float(self.settings.CHAT_WEBHOOK_TIMEOUT_SECONDS))
        try:
            response = await client.post(
                destination,
                json=build_block_kit_payload(alert),
                timeout=float(self.settings.CHAT_WEBHOOK_TIMEOUT_SECONDS),
            )
        except httpx.TimeoutException as exc:
            raise DeliveryError("Chat webhook timed out", code="webhook_timeout") from exc
        except httpx.HTTPError as exc:
            raise DeliveryError(f"Chat webhook transport error: {exc}", code="webhook_unavailable") from exc

        if response.status_code != 200:
            logger.warning(
                "chat_webhook_rejected",
                status_code=response.status_code,
                response=response.text[:300],
            )
            raise DeliveryError(
                f"Chat webhook returned HTTP {response.status_code}",
                code="webhook_http_error",
                retryable=http_status_retryable(response.status_code),
                status_code=response.status_code,
            )
        if host == SLACK_HOST and response.text.strip() != "ok":
            raise DeliveryError(
                f"Slack webhook rejected the message: {response.text[:100]}",
                code="webhook_rejected",
                retryable=False,
                status_code=response.status_code,
            )
        return None
