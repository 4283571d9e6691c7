import asyncio
from collections.abc import Coroutine
from typing import Any

import structlog

from app.shared.core.ops_metrics import DETACHED_TASK_FAILURES

logger = structlog.get_logger()


class TaskSupervisor:
    """Owns detached side-effect tasks so their failures are observed.

    Work spawned here does not block the caller, but every task is tracked
    until it finishes and any exception is logged and counted instead of
    vanishing with an unreferenced task object.
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[Any]] = set()
        self.failures = 0

    def spawn(
        self, coro: Coroutine[Any, Any, Any], *, name: str, **context: Any
    ) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(lambda t: self._on_done(t, name, context))
        logger.debug("detached_task_spawned", task=name, **context)
        return task

    def _on_done(self, task: asyncio.Task[Any], name: str, context: dict[str, Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning("detached_task_cancelled", task=name, **context)
            return
        exc = task.exception()
        if exc is not None:
            self.failures += 1
            DETACHED_TASK_FAILURES.labels(name=name).inc()
            logger.error(
                "detached_task_failed",
                task=name,
                error=str(exc),
                error_type=type(exc).__name__,
                **context,
            )

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for every spawned task; stragglers past ``timeout`` are cancelled."""
        if not self._tasks:
            return
        tasks = list(self._tasks)
        _, still_running = await asyncio.wait(tasks, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)
            logger.warning("detached_tasks_cancelled_on_drain", count=len(still_running))
