"""
Queue task payloads.

Every task stored in ``background_jobs.payload`` is one variant of the
``QueueTask`` union, tagged by ``kind``. Workers dispatch on the tag; nothing
inspects ad-hoc payload fields.
"""

from typing import Annotated, Any, Literal, Optional, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from app.shared.core.constants import Channel, Severity
from app.shared.core.exceptions import ValidationError


class _TaskPayload(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    owner_id: UUID


class ScanTaskPayload(_TaskPayload):
    kind: Literal["scan"] = "scan"
    account_id: UUID
    # Absent for recurring scans; the handler creates a ScanJob per run.
    scan_job_id: Optional[UUID] = None
    region: Optional[str] = None


class AlertTaskPayload(_TaskPayload):
    kind: Literal["alert_delivery"] = "alert_delivery"
    alert_id: UUID
    channel: Channel
    severity: Severity
    title: str = Field(min_length=1, max_length=255)
    message: str
    data: dict[str, Any] = Field(default_factory=dict)


QueueTask = Annotated[
    Union[ScanTaskPayload, AlertTaskPayload], Field(discriminator="kind")
]

_queue_task_adapter: TypeAdapter[QueueTask] = TypeAdapter(QueueTask)


def parse_task_payload(raw: dict[str, Any] | None) -> ScanTaskPayload | AlertTaskPayload:
    """Decode a stored payload; malformed payloads are never retried."""
    try:
        return _queue_task_adapter.validate_python(raw or {})
    except PydanticValidationError as exc:
        raise ValidationError(
            "Invalid queue task payload",
            details={"errors": exc.errors(include_url=False, include_context=False)},
        ) from exc


def dump_task_payload(task: ScanTaskPayload | AlertTaskPayload) -> dict[str, Any]:
    return task.model_dump(mode="json")
