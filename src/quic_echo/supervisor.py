"""
Tracking of background tasks.

Every task spawned for a connection or a stream is registered with a
supervisor. The supervisor logs failures as they happen and cancels whatever
is still running on shutdown, so no task outlives the endpoint or connection
that spawned it.

Unlike asyncio.TaskGroup, one failing task never cancels its siblings: a
broken connection must not take the others down with it.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TaskSupervisor:
    """Holds handles to spawned tasks so they can be awaited or cancelled."""

    name: str
    """Label used in task names and log messages."""

    _tasks: set[asyncio.Task[Any]] = field(default_factory=set)
    _closed: bool = False

    def __len__(self) -> int:
        return len(self._tasks)

    def spawn(
        self, coro: Coroutine[Any, Any, Any], *, name: str | None = None
    ) -> asyncio.Task[Any]:
        """
        Create a tracked task.

        Raises:
            RuntimeError: If the supervisor has been shut down.
        """
        if self._closed:
            coro.close()
            raise RuntimeError(f"Supervisor {self.name} is shut down")

        task = asyncio.create_task(coro, name=f"{self.name}:{name}" if name else None)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task[Any]) -> None:
        """Remove completed task and log any exception."""
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning(
                "Task %s in %s failed: %r", task.get_name(), self.name, task.exception()
            )

    def cancel(self) -> list[asyncio.Task[Any]]:
        """
        Cancel every remaining task without waiting and refuse new ones.

        For callers that cannot await. The returned tasks still need awaiting,
        which shutdown() does.
        """
        self._closed = True

        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        return tasks

    async def shutdown(self) -> None:
        """Cancel every remaining task and wait for all of them to finish."""
        tasks = self.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
