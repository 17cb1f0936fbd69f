"""
In-Flight Write Registry

Each store command spawns one task for its remote write. Tasks are keyed by
the record's client_key, and a new task for a key starts only after every
earlier task for that key (and for any `after` keys it depends on) has
finished. An edit or delete issued while an insert is still on the wire is
therefore applied after the insert, never in arbitrary completion order.
"""

import asyncio
from collections import Counter
from typing import Any, Awaitable, Callable, Iterable, Optional

import structlog

logger = structlog.get_logger("xpenza.sync.inflight")


class InFlightRegistry:
    """Per-record chain of asyncio tasks."""

    def __init__(self):
        self._tails: dict[str, asyncio.Task] = {}
        self._tasks: set[asyncio.Task] = set()
        self._pending: Counter[str] = Counter()

    def submit(
        self,
        key: str,
        func: Callable[..., Awaitable[Any]],
        *args: Any,
        after: Iterable[str] = (),
    ) -> asyncio.Task:
        """
        Schedule `func(*args)` behind every in-flight task for `key` and `after`.

        Returns the spawned task. Its result is whatever `func` returns.
        """
        predecessors = [
            self._tails[k] for k in dict.fromkeys((key, *after)) if k in self._tails
        ]
        task = asyncio.get_running_loop().create_task(
            self._run(predecessors, func, *args)
        )
        self._tails[key] = task
        self._tasks.add(task)
        self._pending[key] += 1
        task.add_done_callback(lambda t: self._finished(key, t))
        return task

    def pending(self, key: str) -> int:
        """Number of unfinished tasks for `key`, including a running one."""
        return self._pending[key]

    def is_busy(self, key: str) -> bool:
        return self._pending[key] > 0

    async def wait(self, key: str) -> Optional[Any]:
        """Wait for the latest task of `key`; returns its result (None if it failed)."""
        task = self._tails.get(key)
        if task is None:
            return None
        await asyncio.wait([task])
        if task.cancelled() or task.exception() is not None:
            return None
        return task.result()

    async def drain(self) -> None:
        """Wait until no write is in flight, including writes spawned meanwhile."""
        while self._tasks:
            await asyncio.wait(list(self._tasks))

    @staticmethod
    async def _run(
        predecessors: list[asyncio.Task],
        func: Callable[..., Awaitable[Any]],
        *args: Any,
    ) -> Any:
        if predecessors:
            # A failed predecessor does not block its successors
            await asyncio.wait(predecessors)
        return await func(*args)

    def _finished(self, key: str, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        self._pending[key] -= 1
        if self._pending[key] <= 0:
            del self._pending[key]
        if self._tails.get(key) is task:
            del self._tails[key]

        if not task.cancelled() and task.exception() is not None:
            logger.error(
                "sync_task_crashed",
                key=key,
                error=repr(task.exception()),
            )
