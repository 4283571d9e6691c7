"""
Cloud account: one sealed credential set plus the owner's budget and
notification preferences. Accounts are deactivated, never deleted.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import Boolean, DateTime, Numeric, String, Text, Uuid as PG_UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.shared.core.constants import PricingTier
from app.shared.db.base import Base, utcnow


class Account(Base):
    __tablename__ = "accounts"

    id: Mapped[UUID] = mapped_column(PG_UUID(), primary_key=True, default=uuid4)
    owner_id: Mapped[UUID] = mapped_column(PG_UUID(), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), default="AWS Account")
    region: Mapped[str] = mapped_column(String(32), nullable=False, default="us-east-1")

    # Sealed by CredentialVault; never stored or queued in plaintext.
    access_key_sealed: Mapped[str] = mapped_column(Text, nullable=False)
    secret_key_sealed: Mapped[str] = mapped_column(Text, nullable=False)

    budget_amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0")
    )
    tier: Mapped[str] = mapped_column(
        String(32), nullable=False, default=PricingTier.FREE.value
    )

    notify_email: Mapped[bool] = mapped_column(Boolean, default=True)
    notify_chat: Mapped[bool] = mapped_column(Boolean, default=False)
    notify_sms: Mapped[bool] = mapped_column(Boolean, default=False)
    contact_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    chat_webhook_url_sealed: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    phone_number: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    def __repr__(self) -> str:
        return f"<Account {self.id} owner={self.owner_id} region={self.region}>"
