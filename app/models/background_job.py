"""
Durable queue envelope (QueueTask) stored in the relational database.

State machine: pending -> active -> completed | failed. A retryable failure
with attempts left goes back to pending with ``scheduled_for`` pushed out by
the queue's backoff.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    Uuid as PG_UUID,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from app.shared.db.base import Base, utcnow


class JobStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class QueueName(str, Enum):
    SCAN = "scan"
    ALERTS = "alerts"


class JobType(str, Enum):
    SCAN = "scan"
    ALERT_DELIVERY = "alert_delivery"


class BackgroundJob(Base):
    __tablename__ = "background_jobs"
    __table_args__ = (
        Index("ix_background_jobs_claim", "queue", "status", "scheduled_for"),
    )

    id: Mapped[UUID] = mapped_column(PG_UUID(), primary_key=True, default=uuid4)
    queue: Mapped[str] = mapped_column(String(32), nullable=False)
    job_type: Mapped[str] = mapped_column(String(32), nullable=False)
    owner_id: Mapped[Optional[UUID]] = mapped_column(PG_UUID(), nullable=True, index=True)
    payload: Mapped[dict[str, Any]] = mapped_column(
        JSON().with_variant(JSONB, "postgresql"), default=dict
    )
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=JobStatus.PENDING.value
    )
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_attempts: Mapped[int] = mapped_column(Integer, default=3, nullable=False)
    backoff_type: Mapped[str] = mapped_column(String(16), default="exponential")
    backoff_delay_seconds: Mapped[float] = mapped_column(Float, default=2.0)
    progress: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    scheduled_for: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    started_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    result: Mapped[Optional[dict[str, Any]]] = mapped_column(
        JSON().with_variant(JSONB, "postgresql"), nullable=True
    )
    worker_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    # Recurring schedules hold one row per dedup key; it is re-armed after each run.
    deduplication_key: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True, unique=True
    )
    repeat_every_seconds: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    def __repr__(self) -> str:
        return f"<BackgroundJob {self.id} {self.queue}/{self.job_type} {self.status}>"
