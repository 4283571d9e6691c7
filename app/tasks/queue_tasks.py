import asyncio
import inspect
from typing import Any, Coroutine, Dict, cast

import structlog
from celery import shared_task

from app.modules.governance.domain.jobs.processor import JobProcessor
from app.shared.core.celery_app import celery_app  # noqa: F401 - registers the app for shared_task
from app.shared.core.http import close_http_client
from app.shared.db.session import dispose_engine
from app.worker import get_worker_context

logger = structlog.get_logger()


# Helper to run async code in sync Celery task
def run_async(task_or_coro: Any, *args: Any, **kwargs: Any) -> Any:
    """
    Run an async callable/coroutine from sync code.

    Supported call patterns:
    - run_async(coroutine)
    - run_async(callable, *args, **kwargs)
    """
    if asyncio.iscoroutine(task_or_coro) or inspect.isawaitable(task_or_coro):
        return asyncio.run(cast(Coroutine[Any, Any, Any], task_or_coro))

    if callable(task_or_coro):
        return asyncio.run(task_or_coro(*args, **kwargs))

    raise TypeError("run_async expects an awaitable or a callable async function")


@shared_task(name="costwatch.drain_queue")  # type: ignore[untyped-decorator]
def drain_queue(queue: str, limit: int | None = None) -> Dict[str, Any]:
    """Claim and process due tasks on one queue."""
    return cast(Dict[str, Any], run_async(_drain_queue_logic, queue, limit))


async def _drain_queue_logic(queue: str, limit: int | None = None) -> Dict[str, Any]:
    context = get_worker_context()
    structlog.contextvars.bind_contextvars(job_type="queue_drain", queue=queue)
    try:
        async with context.session_factory() as db:
            results = await JobProcessor(db, context).process_pending_jobs(queue, limit)
    finally:
        # Pooled HTTP and DB connections are bound to this task's event loop.
        await close_http_client()
        await dispose_engine()
        structlog.contextvars.unbind_contextvars("job_type", "queue")

    # Per-task errors are already on the task rows; the beat tick only reports counts.
    summary = {k: v for k, v in results.items() if k != "errors"}
    summary["errors"] = len(results["errors"])
    return summary


@shared_task(
    name="costwatch.recover_stalled_jobs",
    autoretry_for=(Exception,),
    retry_kwargs={"max_retries": 3, "countdown": 5},
    retry_backoff=True,
)  # type: ignore[untyped-decorator]
def recover_stalled_jobs(queue: str | None = None) -> int:
    """Return expired active tasks to their queue."""
    return cast(int, run_async(_recover_stalled_jobs_logic, queue))


async def _recover_stalled_jobs_logic(queue: str | None = None) -> int:
    context = get_worker_context()
    try:
        async with context.session_factory() as db:
            recovered = await JobProcessor(db, context).recover_stalled_jobs(queue)
    finally:
        await dispose_engine()
    if recovered:
        logger.warning("stalled_jobs_recovered", queue=queue, count=recovered)
    return recovered
