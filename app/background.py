"""Detached (fire-and-forget) task runner.

Work that must not hold up a response (scan recording, cache population,
API-key ``last_used_at`` touches) is spawned here instead of being awaited.

Lifecycle
=========
::
    request handler ──spawn(coro)──► asyncio.Task ──done──► discard + log failure
                                        │
    shutdown ──drain(grace)─────────────┘  wait up to grace, cancel the rest

Key Behaviours
===============
- Strong references are kept until a task finishes, so the loop cannot
  garbage-collect in-flight work.
- A task that raises is logged and dropped; nothing is retried.
- ``drain()`` never blocks longer than its timeout.
"""

import asyncio
import logging
from collections.abc import Coroutine
from typing import Any

__all__ = ["BackgroundTaskRunner"]


class BackgroundTaskRunner:
    def __init__(self, logger: logging.Logger | logging.LoggerAdapter):
        self._logger = logger
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Coroutine[Any, Any, Any], name: str | None = None) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._logger.error(f"Background task {task.get_name()} failed: {exc!r}")

    async def drain(self, timeout: float) -> int:
        """Wait for in-flight tasks up to ``timeout`` seconds; cancel leftovers.

        Returns:
            int: Number of tasks that had to be cancelled.
        """
        if not self._tasks:
            return 0

        _, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            self._logger.warning(f"Cancelled {len(pending)} background task(s) after {timeout:.1f}s grace period")
            await asyncio.gather(*pending, return_exceptions=True)
        return len(pending)
