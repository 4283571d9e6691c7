from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from app.shared.core.celery_app import celery_app
from app.tasks.queue_tasks import drain_queue, recover_stalled_jobs, run_async
from app.worker import WorkerContext, get_worker_context, reset_worker_context


def _context():
    session = MagicMock()
    context = MagicMock()
    context.session_factory.return_value.__aenter__ = AsyncMock(return_value=session)
    context.session_factory.return_value.__aexit__ = AsyncMock(return_value=False)
    return context, session


def test_beat_schedule_drains_both_queues():
    schedule = celery_app.conf.beat_schedule
    assert schedule["drain-scan-queue"]["args"] == ("scan",)
    assert schedule["drain-alerts-queue"]["args"] == ("alerts",)
    assert schedule["recover-stalled-jobs"]["task"] == "costwatch.recover_stalled_jobs"
    assert celery_app.conf.task_always_eager is True


def test_run_async_accepts_coroutines_and_callables():
    async def double(value):
        return value * 2

    assert run_async(double(2)) == 4
    assert run_async(double, 3) == 6
    with pytest.raises(TypeError):
        run_async(42)


def test_drain_queue_reports_counts():
    context, session = _context()
    processor = MagicMock()
    processor.process_pending_jobs = AsyncMock(
        return_value={
            "processed": 3,
            "succeeded": 1,
            "retrying": 1,
            "failed": 1,
            "errors": [{"job_id": "a"}, {"job_id": "b"}],
        }
    )

    with patch("app.tasks.queue_tasks.get_worker_context", return_value=context), patch(
        "app.tasks.queue_tasks.JobProcessor", return_value=processor
    ) as processor_cls, patch(
        "app.tasks.queue_tasks.dispose_engine", new_callable=AsyncMock
    ) as dispose:
        summary = drain_queue("alerts", 5)

    assert summary == {"processed": 3, "succeeded": 1, "retrying": 1, "failed": 1, "errors": 2}
    processor_cls.assert_called_once_with(session, context)
    processor.process_pending_jobs.assert_awaited_once_with("alerts", 5)
    dispose.assert_awaited_once()


def test_recover_stalled_jobs_task():
    context, _ = _context()
    processor = MagicMock()
    processor.recover_stalled_jobs = AsyncMock(return_value=2)

    with patch("app.tasks.queue_tasks.get_worker_context", return_value=context), patch(
        "app.tasks.queue_tasks.JobProcessor", return_value=processor
    ), patch("app.tasks.queue_tasks.dispose_engine", new_callable=AsyncMock) as dispose:
        assert recover_stalled_jobs.run("scan") == 2

    processor.recover_stalled_jobs.assert_awaited_once_with("scan")
    dispose.assert_awaited_once()


def test_worker_context_is_built_once():
    reset_worker_context()
    built = MagicMock(spec=WorkerContext)
    try:
        with patch.object(WorkerContext, "from_settings", return_value=built) as factory:
            assert get_worker_context() is built
            assert get_worker_context() is built
        factory.assert_called_once()
    finally:
        reset_worker_context()
