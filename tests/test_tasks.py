import asyncio

import pytest

from counsel_bot.errors import TaskNotFound, TaskTimeout
from counsel_bot.tasks import BackgroundTaskManager, TaskStatus, TaskType


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.mark.asyncio
async def test_schedule_returns_before_operation_finishes():
    manager = BackgroundTaskManager()
    release = asyncio.Event()

    async def op():
        await release.wait()
        return "done"

    task_id = manager.schedule(TaskType.ANALYSIS, "u1", op)

    assert task_id.startswith("analysis_")
    assert manager.get(task_id).status in (TaskStatus.PENDING, TaskStatus.RUNNING)
    assert manager.active_count("u1") == 1

    release.set()
    assert await manager.wait_for(task_id, timeout=1) == "done"
    task = manager.get(task_id)
    assert task.status is TaskStatus.COMPLETED
    assert task.result == "done"
    assert manager.active_count("u1") == 0


@pytest.mark.asyncio
async def test_failed_operation_is_recorded_and_reraised():
    manager = BackgroundTaskManager()

    async def op():
        raise ValueError("bad analysis")

    task_id = manager.schedule(TaskType.ANALYSIS, "u1", op)

    with pytest.raises(ValueError, match="bad analysis"):
        await manager.wait_for(task_id, timeout=1)
    assert manager.get(task_id).status is TaskStatus.FAILED


@pytest.mark.asyncio
async def test_wait_for_times_out_without_touching_the_task():
    manager = BackgroundTaskManager()
    release = asyncio.Event()

    async def op():
        await release.wait()
        return 42

    task_id = manager.schedule(TaskType.SUMMARIZATION, "u1", op)

    with pytest.raises(TaskTimeout):
        await manager.wait_for(task_id, timeout=0.01)

    # the operation is still allowed to finish afterwards
    release.set()
    assert await manager.wait_for(task_id, timeout=1) == 42


@pytest.mark.asyncio
async def test_wait_for_unknown_task():
    with pytest.raises(TaskNotFound):
        await BackgroundTaskManager().wait_for("analysis_missing")


@pytest.mark.asyncio
async def test_sweep_fails_overdue_tasks_and_deletes_old_ones():
    clock = FakeClock()
    manager = BackgroundTaskManager(timeout_s=10, clock=clock)
    never = asyncio.Event()

    async def hang():
        await never.wait()

    task_id = manager.schedule(TaskType.ANALYSIS, "u1", hang)
    await asyncio.sleep(0)

    assert manager.sweep(now=1005) == (0, 0)
    assert manager.get(task_id).status is TaskStatus.RUNNING

    assert manager.sweep(now=1011) == (1, 0)
    task = manager.get(task_id)
    assert task.status is TaskStatus.FAILED
    assert isinstance(task.error, TaskTimeout)
    with pytest.raises(TaskTimeout):
        await manager.wait_for(task_id)

    assert manager.sweep(now=1021) == (0, 1)
    assert manager.get(task_id) is None

    never.set()
    await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_late_result_after_sweep_is_ignored():
    clock = FakeClock()
    manager = BackgroundTaskManager(timeout_s=10, clock=clock)
    release = asyncio.Event()

    async def slow():
        await release.wait()
        return "late"

    task_id = manager.schedule(TaskType.ANALYSIS, "u1", slow)
    await asyncio.sleep(0)
    manager.sweep(now=1015)

    release.set()
    for _ in range(3):
        await asyncio.sleep(0)

    task = manager.get(task_id)
    assert task.status is TaskStatus.FAILED
    assert task.result is None


@pytest.mark.asyncio
async def test_tasks_are_grouped_by_owner_and_discardable():
    manager = BackgroundTaskManager()

    async def op():
        return 1

    a = manager.schedule(TaskType.ANALYSIS, "alice", op)
    b = manager.schedule(TaskType.ANALYSIS, "bob", op)
    await manager.wait_for(a)
    await manager.wait_for(b)

    assert [t.id for t in manager.tasks_for("alice")] == [a]
    assert manager.discard(a).id == a
    assert manager.get(a) is None
    assert manager.discard(a) is None
    assert len(manager) == 1


@pytest.mark.asyncio
async def test_sweep_loop_runs_until_stopped():
    clock = FakeClock()
    manager = BackgroundTaskManager(timeout_s=1, sweep_interval_s=0.01, clock=clock)
    never = asyncio.Event()

    async def hang():
        await never.wait()

    task_id = manager.schedule(TaskType.ANALYSIS, "u1", hang)
    manager.start()
    clock.now += 5
    await asyncio.sleep(0.05)
    await manager.stop()

    # 5s old with a 1s timeout: failed, then deleted (older than 2x)
    assert manager.get(task_id) is None
    never.set()
    await asyncio.sleep(0)
