"""
Email delivery over SMTP.

smtplib is blocking, so each attempt runs in a worker thread. SMTP 5xx
replies and refused recipients are permanent; 4xx replies and connection
failures are retried.
"""

import asyncio
import html
import smtplib
from email.message import EmailMessage
from email.utils import make_msgid
from typing import Any, Optional

import structlog

from app.modules.notifications.domain.base import AlertMessage, NotificationChannel, Recipient
from app.shared.core.config import get_settings
from app.shared.core.constants import Channel
from app.shared.core.exceptions import DeliveryError
from app.shared.core.retry import RetryPolicy

logger = structlog.get_logger()

SEVERITY_COLORS = {
    "critical": "#EF4444",
    "warning": "#F59E0B",
    "info": "#3B82F6",
}


def build_subject(alert: AlertMessage) -> str:
    return f"AWS Cost Alert: {alert.title}"


def render_text(alert: AlertMessage) -> str:
    lines = [alert.title, "", alert.message]
    if alert.data:
        lines.append("")
        lines.extend(f"{key}: {value}" for key, value in alert.data.items())
    return "\n".join(lines)


def render_html(alert: AlertMessage) -> str:
    color = SEVERITY_COLORS.get(alert.severity.value, SEVERITY_COLORS["warning"])
    rows = "".join(
        f"<tr><td>{html.escape(str(k))}</td><td>{html.escape(str(v))}</td></tr>"
        for k, v in alert.data.items()
    )
    return (
        "<html><body>"
        f'<div style="border-left: 4px solid {color}; padding: 12px;">'
        f"<h2>{html.escape(alert.title)}</h2>"
        f"<p>{html.escape(alert.message)}</p>"
        + (f"<table>{rows}</table>" if rows else "")
        + "</div></body></html>"
    )


def classify_smtp_error(exc: BaseException) -> DeliveryError:
    if isinstance(exc, DeliveryError):
        return exc
    if isinstance(exc, smtplib.SMTPRecipientsRefused):
        return DeliveryError(
            "Recipient refused by SMTP server", code="recipient_refused", retryable=False
        )
    if isinstance(exc, smtplib.SMTPResponseException):
        permanent = int(exc.smtp_code) >= 500
        return DeliveryError(
            f"SMTP error {exc.smtp_code}: {exc.smtp_error!r}",
            code="smtp_rejected" if permanent else "smtp_transient",
            retryable=not permanent,
            status_code=int(exc.smtp_code),
        )
    if isinstance(exc, (smtplib.SMTPException, OSError)):
        return DeliveryError(f"SMTP transport error: {exc}", code="smtp_unavailable", retryable=True)
    return DeliveryError(f"Unexpected email failure: {exc}", code="email_error", retryable=True)


class EmailChannel(NotificationChannel):
    channel = Channel.EMAIL

    def __init__(self, settings: Any = None, policy: Optional[RetryPolicy] = None):
        self.settings = settings or get_settings()
        super().__init__(policy)

    def destination(self, recipient: Recipient) -> Optional[str]:
        return recipient.email

    def unavailable_reason(self) -> Optional[str]:
        return None if self.settings.SMTP_HOST else "smtp_not_configured"

    def build_message(self, to_email: str, alert: AlertMessage) -> EmailMessage:
        msg = EmailMessage()
        msg["Subject"] = build_subject(alert)
        msg["From"] = self.settings.SMTP_FROM
        msg["To"] = to_email
        sender_domain = str(self.settings.SMTP_FROM).rpartition("@")[2] or None
        msg["Message-ID"] = make_msgid(domain=sender_domain)
        msg.set_content(render_text(alert))
        msg.add_alternative(render_html(alert), subtype="html")
        return msg

    async def send(self, destination: str, alert: AlertMessage) -> Optional[str]:
        msg = self.build_message(destination, alert)
        try:
            await asyncio.to_thread(self._send_sync, msg)
        except Exception as exc:
            raise classify_smtp_error(exc) from exc
        logger.info("email_sent", subject=msg["Subject"], message_id=msg["Message-ID"])
        return str(msg["Message-ID"])

    def _send_sync(self, msg: EmailMessage) -> None:
        settings = self.settings
        with smtplib.SMTP(
            settings.SMTP_HOST,
            int(settings.SMTP_PORT),
            timeout=float(settings.SMTP_TIMEOUT_SECONDS),
        ) as server:
            if settings.SMTP_USE_TLS:
                server.starttls()
            if settings.SMTP_USER and settings.SMTP_PASSWORD:
                server.login(settings.SMTP_USER, settings.SMTP_PASSWORD)
            refused = server.send_message(msg)
        if refused:
            raise DeliveryError(
                "Recipient refused by SMTP server",
                code="recipient_refused",
                retryable=False,
                details={"refused": list(refused)},
            )
