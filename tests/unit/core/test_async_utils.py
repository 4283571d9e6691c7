import asyncio

import pytest

from app.shared.core.async_utils import TaskSupervisor


@pytest.mark.asyncio
async def test_supervisor_records_detached_failure():
    supervisor = TaskSupervisor()

    async def broken():
        raise RuntimeError("alert check exploded")

    supervisor.spawn(broken(), name="alert_check", owner_id="o-1")
    await supervisor.drain(timeout=1)

    assert supervisor.failures == 1
    assert supervisor.pending == 0


@pytest.mark.asyncio
async def test_supervisor_drain_waits_for_completion():
    supervisor = TaskSupervisor()
    done = []

    async def work():
        await asyncio.sleep(0.01)
        done.append(True)

    supervisor.spawn(work(), name="work")
    await supervisor.drain(timeout=1)

    assert done == [True]
    assert supervisor.failures == 0


@pytest.mark.asyncio
async def test_supervisor_cancels_stragglers_on_timeout():
    supervisor = TaskSupervisor()

    task = supervisor.spawn(asyncio.sleep(10), name="slow")
    await supervisor.drain(timeout=0.01)

    assert task.cancelled()
    assert supervisor.pending == 0
