"""
Handler registry: queue job type -> handler class.
"""
from typing import Type

from app.models.background_job import JobType
from app.modules.governance.domain.jobs.handlers.alert_delivery import AlertDeliveryHandler
from app.modules.governance.domain.jobs.handlers.base import BaseJobHandler
from app.modules.governance.domain.jobs.handlers.scan import ScanHandler
from app.shared.core.exceptions import ValidationError

HANDLER_REGISTRY: dict[str, Type[BaseJobHandler]] = {
    JobType.SCAN.value: ScanHandler,
    JobType.ALERT_DELIVERY.value: AlertDeliveryHandler,
}


def get_handler_factory(job_type: str) -> Type[BaseJobHandler]:
    handler_cls = HANDLER_REGISTRY.get(str(job_type))
    if handler_cls is None:
        raise ValidationError(f"No handler registered for job type: {job_type}")
    return handler_cls


__all__ = ["BaseJobHandler", "HANDLER_REGISTRY", "get_handler_factory"]
