"""
Base Job Handler Interface
"""
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Dict

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.background_job import BackgroundJob

if TYPE_CHECKING:
    from app.worker import WorkerContext

logger = structlog.get_logger()


class BaseJobHandler(ABC):
    """
    Abstract base class for all queue task handlers.
    Each handler implementation should reside in its own module.
    """

    def __init__(self, context: "WorkerContext"):
        self.context = context

    @abstractmethod
    async def execute(self, job: BackgroundJob, db: AsyncSession) -> Dict[str, Any]:
        """
        Execute the job logic.

        Args:
            job: The claimed BackgroundJob row.
            db: Session owned by the processor for this task.

        Returns:
            A dictionary stored as the task result.
        """

    async def report_progress(self, job: BackgroundJob, db: AsyncSession, progress: int) -> None:
        """Persist a progress milestone so observers can spot a stuck task."""
        job.progress = max(0, min(100, int(progress)))
        await db.commit()
        logger.debug("job_progress", job_id=str(job.id), progress=job.progress)
