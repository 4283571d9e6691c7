"""
Worker composition root.

Everything a queue handler needs is built once per worker process and passed
down explicitly; no component reaches for a module-level queue or client.
"""

from dataclasses import dataclass, field
from datetime import datetime
from threading import Lock
from typing import Any, Callable, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.modules.governance.domain.jobs.queue import QueueClient
from app.modules.inventory.domain.collector import AdapterFactory, _default_adapter_factory
from app.modules.notifications.domain.dispatcher import NotificationDispatcher
from app.shared.core.async_utils import TaskSupervisor
from app.shared.core.cache import CacheService
from app.shared.core.config import get_settings
from app.shared.core.security import CredentialVault
from app.shared.db.base import utcnow
from app.shared.db.session import get_session_maker

logger = structlog.get_logger()


@dataclass
class WorkerContext:
    session_factory: async_sessionmaker[AsyncSession]
    queue: QueueClient
    vault: CredentialVault
    cache: CacheService
    dispatcher: NotificationDispatcher
    supervisor: TaskSupervisor = field(default_factory=TaskSupervisor)
    adapter_factory: AdapterFactory = _default_adapter_factory
    clock: Callable[[], datetime] = utcnow

    @classmethod
    def from_settings(cls, settings: Any = None) -> "WorkerContext":
        settings = settings or get_settings()
        session_factory = get_session_maker()
        return cls(
            session_factory=session_factory,
            queue=QueueClient(session_factory),
            vault=CredentialVault.from_settings(settings),
            cache=CacheService.from_settings(settings),
            dispatcher=NotificationDispatcher.from_settings(settings),
        )


_context: Optional[WorkerContext] = None
_context_lock = Lock()


def get_worker_context() -> WorkerContext:
    """Process-wide context, built on first use by the task entry points."""
    global _context
    with _context_lock:
        if _context is None:
            _context = WorkerContext.from_settings()
            logger.info("worker_context_initialized")
        return _context


def reset_worker_context() -> None:
    """Test helper for forcing a rebuild on next access."""
    global _context
    with _context_lock:
        _context = None
