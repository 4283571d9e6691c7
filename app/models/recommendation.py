from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    DateTime,
    ForeignKey,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid as PG_UUID,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.shared.db.base import Base, utcnow


class RecommendationType(str, Enum):
    RIGHT_SIZING = "right_sizing"
    RESERVED_INSTANCE = "reserved_instance"
    TERMINATION = "termination"


class RecommendationStatus(str, Enum):
    PENDING = "pending"
    DISMISSED = "dismissed"
    APPLIED = "applied"


class Recommendation(Base):
    """Advisory savings opportunity; dismissed and applied rows are frozen."""

    __tablename__ = "recommendations"
    __table_args__ = (
        UniqueConstraint(
            "owner_id",
            "resource_id",
            "recommendation_type",
            name="uix_recommendation_identity",
        ),
    )

    id: Mapped[UUID] = mapped_column(PG_UUID(), primary_key=True, default=uuid4)
    owner_id: Mapped[UUID] = mapped_column(PG_UUID(), nullable=False, index=True)
    resource_id: Mapped[Optional[UUID]] = mapped_column(
        ForeignKey("resources.id", ondelete="CASCADE"), nullable=True
    )
    recommendation_type: Mapped[str] = mapped_column(String(32), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    action: Mapped[str] = mapped_column(Text, nullable=False)
    current_cost: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    recommended_cost: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    savings: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    confidence: Mapped[Decimal] = mapped_column(Numeric(3, 2), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=RecommendationStatus.PENDING.value
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
