"""
Keyed registry of background asyncio tasks.

Stats pollers, host connection attempts and container monitors are all keyed
(by ContainerKey or host id) and must never run twice for the same key.
TaskSlots keeps at most one task per key:
  - replace(): cancel whatever occupies the slot, then start the new task
  - start(): start only if no live task occupies the slot
  - cancel(): remove the slot first, then cancel the task

A task that finished on its own stays in the map until the next start or
cancel for its key, but no longer counts as "active".
"""

import asyncio
import logging
from typing import Any, Coroutine, Dict, Hashable, Iterator, Optional

logger = logging.getLogger(__name__)


class TaskSlots:
    """At most one live task per key."""

    def __init__(self, name: str = "tasks"):
        self.name = name
        self._tasks: Dict[Hashable, asyncio.Task] = {}

    def __contains__(self, key: Hashable) -> bool:
        task = self._tasks.get(key)
        return task is not None and not task.done()

    def __len__(self) -> int:
        return sum(1 for task in self._tasks.values() if not task.done())

    def __iter__(self) -> Iterator[Hashable]:
        return iter([key for key in self._tasks if key in self])

    def get(self, key: Hashable) -> Optional[asyncio.Task]:
        return self._tasks.get(key)

    def replace(self, key: Hashable, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        self.cancel(key)
        task = asyncio.create_task(coro, name=f"{self.name}:{key}")
        self._tasks[key] = task
        return task

    def start(self, key: Hashable, coro: Coroutine[Any, Any, Any]) -> Optional[asyncio.Task]:
        """Start a task for key unless one is already running; returns None if skipped."""
        if key in self:
            coro.close()
            logger.debug(f"{self.name}: task for {key} already running")
            return None
        return self.replace(key, coro)

    def cancel(self, key: Hashable) -> bool:
        """Cancel the task for key. Returns True if a live task was cancelled."""
        task = self._tasks.pop(key, None)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    def cancel_all(self) -> None:
        for key in list(self._tasks):
            self.cancel(key)

    async def wait_closed(self) -> None:
        """Cancel everything and wait for the tasks to unwind."""
        tasks = [task for task in self._tasks.values() if not task.done()]
        self.cancel_all()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
