"""
Bounded fan-out of per-node tasks with a join barrier.

Probes and topology pushes run one task per node. The manager caps how many
of them touch node control planes at once, joins them against a deadline and
makes sure nothing is left running when the caller moves on, so no
connection outlives its run.
"""

import asyncio
from collections.abc import Coroutine, Iterable
from typing import Any

from loguru import logger


class TaskManager:
    """Tracks per-node tasks, bounded by a shared semaphore."""

    def __init__(self, name: str = "TaskManager", max_concurrency: int = 16) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self.name = name
        self.max_concurrency = max_concurrency
        self.tasks: dict[str, asyncio.Task[Any]] = {}
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._shutdown_requested = False

    def create_task(self, key: str, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        """Create and track a task; it waits for a concurrency slot before running."""
        if self._shutdown_requested:
            coro.close()
            raise RuntimeError("Cannot create tasks after shutdown requested")
        if key in self.tasks:
            coro.close()
            raise ValueError(f"[{self.name}] duplicate task key {key}")

        task = asyncio.create_task(self._bounded(coro), name=f"{self.name}:{key}")
        self.tasks[key] = task
        logger.debug("[{}] Created task {}", self.name, key)
        return task

    async def _bounded(self, coro: Coroutine[Any, Any, Any]) -> Any:
        async with self._semaphore:
            return await coro

    async def join(self, timeout: float | None = None) -> set[str]:
        """Wait for all tracked tasks, or until ``timeout`` elapses.

        Returns the keys of tasks that were still running at the deadline;
        those are cancelled and awaited before returning.
        """
        running = [task for task in self.tasks.values() if not task.done()]
        if not running:
            return set()
        if timeout is not None and timeout <= 0:
            pending = set(running)
        else:
            _, pending = await asyncio.wait(
                running, timeout=timeout, return_when=asyncio.ALL_COMPLETED
            )
        timed_out = {key for key, task in self.tasks.items() if task in pending}
        if timed_out:
            logger.debug(
                "[{}] {} task(s) still running at deadline: {}",
                self.name,
                len(timed_out),
                sorted(timed_out),
            )
            await self._cancel(pending)
        return timed_out

    def results(self) -> dict[str, Any]:
        """Results of tasks that finished normally."""
        return {
            key: task.result()
            for key, task in self.tasks.items()
            if task.done() and not task.cancelled() and task.exception() is None
        }

    def exceptions(self) -> dict[str, BaseException]:
        """Exceptions raised by tasks that finished with an error."""
        failures: dict[str, BaseException] = {}
        for key, task in self.tasks.items():
            if task.done() and not task.cancelled():
                error = task.exception()
                if error is not None:
                    failures[key] = error
        return failures

    async def _cancel(self, tasks: Iterable[asyncio.Task[Any]]) -> None:
        to_cancel = [task for task in tasks if not task.done()]
        for task in to_cancel:
            task.cancel()
        if to_cancel:
            await asyncio.gather(*to_cancel, return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel every unfinished task and wait for it to unwind."""
        if self._shutdown_requested:
            return
        self._shutdown_requested = True
        unfinished = [task for task in self.tasks.values() if not task.done()]
        if unfinished:
            logger.info(
                "[{}] Cancelling {} outstanding task(s)", self.name, len(unfinished)
            )
        await self._cancel(unfinished)

    async def __aenter__(self) -> "TaskManager":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.shutdown()

    def __len__(self) -> int:
        return len(self.tasks)
