"""
Background task manager.

Runs operations off the request path on the event loop, tracks their
lifecycle, and sweeps out tasks that overran their budget. The manager never
looks at what a task returns.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple
from uuid import uuid4

from .errors import TaskError, TaskNotFound, TaskTimeout

logger = logging.getLogger(__name__)


class TaskType(str, Enum):
    ANALYSIS = "analysis"
    SUMMARIZATION = "summarization"


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def settled(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED)


@dataclass
class Task:
    id: str
    type: TaskType
    owner_id: str
    started_at: float
    status: TaskStatus = TaskStatus.PENDING
    result: Any = None
    error: Optional[BaseException] = None
    finished_at: Optional[float] = None
    done: Optional[asyncio.Future] = field(default=None, repr=False, compare=False)


class BackgroundTaskManager:
    def __init__(
        self,
        timeout_s: float = 300.0,
        sweep_interval_s: float = 60.0,
        clock: Callable[[], float] = time.time,
    ):
        self.timeout_s = timeout_s
        self.sweep_interval_s = sweep_interval_s
        self._clock = clock
        self._tasks: Dict[str, Task] = {}
        self._runners: Set[asyncio.Task] = set()
        self._sweeper: Optional[asyncio.Task] = None

    # -------------------------
    # Scheduling
    # -------------------------
    def schedule(
        self,
        task_type: TaskType,
        owner_id: str,
        operation: Callable[[], Awaitable[Any]],
    ) -> str:
        """Start ``operation`` on the running loop and return its task id without waiting."""
        loop = asyncio.get_running_loop()
        task = Task(
            id=f"{task_type.value}_{uuid4().hex[:12]}",
            type=task_type,
            owner_id=owner_id,
            started_at=self._clock(),
            done=loop.create_future(),
        )
        self._tasks[task.id] = task

        runner = loop.create_task(self._run(task, operation), name=task.id)
        self._runners.add(runner)
        runner.add_done_callback(self._runners.discard)

        logger.info(
            "Scheduled %s task",
            task_type.value,
            extra={"conversation_id": owner_id, "task_id": task.id},
        )
        return task.id

    async def _run(self, task: Task, operation: Callable[[], Awaitable[Any]]) -> None:
        if task.status is TaskStatus.PENDING:
            task.status = TaskStatus.RUNNING
        try:
            result = await operation()
        except asyncio.CancelledError:
            self._settle(task, error=TaskError(f"Task {task.id} was cancelled"))
            raise
        except Exception as exc:
            self._settle(task, error=exc)
        else:
            self._settle(task, result=result)

    def _settle(self, task: Task, result: Any = None, error: Optional[BaseException] = None) -> None:
        # completed/failed are terminal; whatever arrives second is dropped
        if task.status.settled:
            logger.info(
                "Ignoring late %s for task already %s",
                "failure" if error else "result",
                task.status.value,
                extra={"conversation_id": task.owner_id, "task_id": task.id},
            )
            return

        task.finished_at = self._clock()
        if error is None:
            task.status = TaskStatus.COMPLETED
            task.result = result
        else:
            task.status = TaskStatus.FAILED
            task.error = error
            logger.warning(
                "Task failed: %s",
                error,
                extra={"conversation_id": task.owner_id, "task_id": task.id},
            )
        if task.done is not None and not task.done.done():
            task.done.set_result(None)

    # -------------------------
    # Queries
    # -------------------------
    def get(self, task_id: str) -> Optional[Task]:
        return self._tasks.get(task_id)

    def tasks_for(self, owner_id: str) -> List[Task]:
        return [t for t in self._tasks.values() if t.owner_id == owner_id]

    def active_count(self, owner_id: str) -> int:
        return sum(1 for t in self.tasks_for(owner_id) if not t.status.settled)

    def discard(self, task_id: str) -> Optional[Task]:
        return self._tasks.pop(task_id, None)

    async def wait_for(self, task_id: str, timeout: Optional[float] = None) -> Any:
        """Block until the task settles; return its result or raise its error.

        Raises:
            TaskNotFound: unknown (or already swept) id.
            TaskTimeout: the task did not settle within ``timeout`` seconds.
        """
        task = self._tasks.get(task_id)
        if task is None:
            raise TaskNotFound(task_id)

        limit = self.timeout_s if timeout is None else timeout
        if not task.status.settled and task.done is not None:
            try:
                await asyncio.wait_for(asyncio.shield(task.done), timeout=limit)
            except asyncio.TimeoutError as exc:
                raise TaskTimeout(task_id, limit) from exc

        if task.status is TaskStatus.FAILED:
            raise task.error
        return task.result

    # -------------------------
    # Sweeping
    # -------------------------
    def sweep(self, now: Optional[float] = None) -> Tuple[int, int]:
        """Fail overdue tasks and delete ones older than twice the timeout.

        Returns ``(failed, deleted)`` counts.
        """
        now = self._clock() if now is None else now
        failed = deleted = 0
        for task in list(self._tasks.values()):
            age = now - task.started_at
            if not task.status.settled and age > self.timeout_s:
                self._settle(task, error=TaskTimeout(task.id, self.timeout_s))
                failed += 1
            if age > 2 * self.timeout_s:
                del self._tasks[task.id]
                deleted += 1
        if failed or deleted:
            logger.info("Task sweep: %d timed out, %d deleted", failed, deleted)
        return failed, deleted

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval_s)
            self.sweep()

    def start(self) -> None:
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.get_running_loop().create_task(self._sweep_loop())

    async def stop(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._sweeper
        self._sweeper = None

    def __len__(self) -> int:
        return len(self._tasks)
