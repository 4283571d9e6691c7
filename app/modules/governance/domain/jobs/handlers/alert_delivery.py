"""
Alert Delivery Job Handler

One task per (alert, channel). The channel adapter owns its retry loop; a
failed delivery is reported in the task result, not retried by the queue.
"""

from typing import Any, Dict
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.account import Account
from app.models.background_job import BackgroundJob
from app.modules.governance.domain.jobs.handlers.base import BaseJobHandler
from app.modules.governance.domain.jobs.payloads import AlertTaskPayload, parse_task_payload
from app.modules.notifications.domain.base import AlertMessage, Recipient
from app.shared.core.exceptions import ValidationError
from app.shared.core.security import CredentialVault

logger = structlog.get_logger()


async def resolve_recipient(db: AsyncSession, vault: CredentialVault, owner_id: UUID) -> Recipient:
    """Destinations from the owner's oldest active account; missing ones stay None."""
    result = await db.execute(
        select(Account)
        .where(Account.owner_id == owner_id, Account.is_active.is_(True))
        .order_by(Account.created_at)
        .limit(1)
    )
    account = result.scalar_one_or_none()
    if account is None:
        return Recipient()
    webhook_url = (
        vault.open(account.chat_webhook_url_sealed) if account.chat_webhook_url_sealed else None
    )
    return Recipient(
        email=account.contact_email or None,
        chat_webhook_url=webhook_url or None,
        phone_number=account.phone_number or None,
    )


class AlertDeliveryHandler(BaseJobHandler):
    async def execute(self, job: BackgroundJob, db: AsyncSession) -> Dict[str, Any]:
        payload = parse_task_payload(job.payload)
        if not isinstance(payload, AlertTaskPayload):
            raise ValidationError(
                "Alert handler received a non-alert payload", details={"kind": payload.kind}
            )

        recipient = await resolve_recipient(db, self.context.vault, payload.owner_id)
        alert = AlertMessage(
            title=payload.title,
            message=payload.message,
            severity=payload.severity,
            data=dict(payload.data),
        )
        result = await self.context.dispatcher.deliver(payload.channel, recipient, alert)

        logger.info(
            "alert_delivery_processed",
            job_id=str(job.id),
            alert_id=str(payload.alert_id),
            owner_id=str(payload.owner_id),
            channel=payload.channel.value,
            status=result.status.value,
            attempts=result.attempts,
        )
        return {"alert_id": str(payload.alert_id), **result.to_dict()}
