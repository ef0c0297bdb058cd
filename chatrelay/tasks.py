"""
Detached background work and per-key serialization.

BackgroundTasks runs fire-and-forget coroutines (history persistence) whose
failures are logged and never reach the caller that spawned them. The set of
live tasks is held so they are not garbage-collected mid-flight and so
shutdown (and tests) can wait for them with drain().

KeyedLocks hands out one asyncio.Lock per key (thread id, context id) so
work on one conversation is strictly ordered while different conversations
proceed in parallel.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Coroutine

logger = logging.getLogger(__name__)


class BackgroundTasks:
    """Owner of detached tasks. One per manager, not per process."""

    def __init__(self, label: str = "background"):
        self.label = label
        self._tasks: set[asyncio.Task] = set()
        self.failures = 0

    def spawn(self, coro: Coroutine, name: str = "") -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro, name=name or self.label)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.failures += 1
            logger.warning(
                "%s task '%s' failed: %s",
                self.label, task.get_name(), exc,
            )

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def cancel_all(self) -> int:
        """Cancel every live task. Returns how many were cancelled."""
        tasks = [t for t in self._tasks if not t.done()]
        for task in tasks:
            task.cancel()
        return len(tasks)

    async def drain(self):
        """Wait for every task spawned so far. Failures are already logged."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


class KeyedLocks:
    """Lazily created asyncio.Lock per key."""

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}

    def get(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def discard(self, key: str):
        lock = self._locks.get(key)
        if lock is not None and not lock.locked():
            del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)
