"""Lifecycle tracking for fire-and-forget asyncio tasks."""

from __future__ import annotations

import asyncio
from collections.abc import Coroutine
import logging
from typing import Any

LOGGER = logging.getLogger(__name__)


class TaskManager:
    """Track background tasks such as remote abort notifications.

    Failures of tracked tasks are logged and never propagated to the code that
    spawned them.
    """

    def __init__(self) -> None:
        self._named: dict[str, asyncio.Task[Any]] = {}
        self._anonymous: set[asyncio.Task[Any]] = set()

    def spawn(
        self, coro: Coroutine[Any, Any, Any], name: str | None = None
    ) -> asyncio.Task[Any]:
        """Schedule ``coro`` on the running loop and track it.

        Must be called from inside a running event loop.
        """
        task = asyncio.get_running_loop().create_task(coro)
        self.add(task, name=name)
        return task

    def add(self, task: asyncio.Task[Any], name: str | None = None) -> None:
        """Register a task, optionally under a unique name.

        Named tasks replace any prior task with the same name; the old task
        keeps running and stays tracked anonymously. Every task drops out of
        tracking when it completes.
        """
        task.add_done_callback(self._log_failure)
        if name is not None:
            previous = self._named.get(name)
            if previous is not None and previous is not task and not previous.done():
                self._anonymous.add(previous)
                previous.add_done_callback(self._anonymous.discard)
            self._named[name] = task
            task.add_done_callback(lambda done, key=name: self._forget(key, done))
        else:
            self._anonymous.add(task)
            task.add_done_callback(self._anonymous.discard)

    def get(self, name: str) -> asyncio.Task[Any] | None:
        """Return the named task or ``None`` if not registered."""
        return self._named.get(name)

    @property
    def pending(self) -> int:
        return sum(
            1 for t in [*self._named.values(), *self._anonymous] if not t.done()
        )

    def _forget(self, name: str, task: asyncio.Task[Any]) -> None:
        if self._named.get(name) is task:
            del self._named[name]

    @staticmethod
    def _log_failure(task: asyncio.Task[Any]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            LOGGER.warning(
                "task.failed",
                extra={
                    "event": "task.failed",
                    "task": task.get_name(),
                    "error_type": exc.__class__.__name__,
                    "error": str(exc),
                },
            )

    async def cancel(self, name: str) -> None:
        """Cancel a named task and await its completion."""
        task = self._named.pop(name, None)
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def cancel_all(self) -> None:
        """Cancel every tracked task and await them all."""
        all_tasks = [*self._named.values(), *self._anonymous]
        for task in all_tasks:
            if not task.done():
                task.cancel()
        if all_tasks:
            await asyncio.gather(*all_tasks, return_exceptions=True)
        self._named.clear()
        self._anonymous.clear()

    async def await_all(self) -> None:
        """Wait for all tracked tasks without cancelling them."""
        all_tasks = [*self._named.values(), *self._anonymous]
        if all_tasks:
            await asyncio.gather(*all_tasks, return_exceptions=True)
