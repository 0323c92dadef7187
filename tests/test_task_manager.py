"""
Unit tests for TaskManager.

Tests bounded concurrency, the join barrier with deadline, and that nothing
is left running after join or shutdown.
"""

import asyncio

import pytest

from clusterform.core.task_manager import TaskManager


class TestTaskManager:
    @pytest.mark.asyncio
    async def test_join_collects_results_and_exceptions(self):
        async def ok(value: int) -> int:
            return value * 2

        async def fail() -> None:
            raise RuntimeError("boom")

        async with TaskManager("test") as tasks:
            tasks.create_task("a", ok(1))
            tasks.create_task("b", ok(2))
            tasks.create_task("c", fail())
            timed_out = await tasks.join(1.0)

            assert timed_out == set()
            assert tasks.results() == {"a": 2, "b": 4}
            assert set(tasks.exceptions()) == {"c"}
            assert len(tasks) == 3

    @pytest.mark.asyncio
    async def test_join_deadline_cancels_stragglers(self):
        async def slow() -> None:
            await asyncio.sleep(10)

        async def fast() -> str:
            return "done"

        tasks = TaskManager("test")
        straggler = tasks.create_task("slow", slow())
        tasks.create_task("fast", fast())

        timed_out = await tasks.join(0.05)

        assert timed_out == {"slow"}
        assert straggler.cancelled()
        assert tasks.results() == {"fast": "done"}

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self):
        running = 0
        peak = 0

        async def work() -> None:
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.01)
            running -= 1

        async with TaskManager("test", max_concurrency=2) as tasks:
            for index in range(6):
                tasks.create_task(str(index), work())
            await tasks.join(5.0)

        assert peak == 2

    @pytest.mark.asyncio
    async def test_duplicate_keys_rejected(self):
        async def noop() -> None:
            return None

        async with TaskManager("test") as tasks:
            tasks.create_task("a", noop())
            with pytest.raises(ValueError):
                tasks.create_task("a", noop())
            await tasks.join()

    @pytest.mark.asyncio
    async def test_shutdown_cancels_and_blocks_new_tasks(self):
        async def slow() -> None:
            await asyncio.sleep(10)

        tasks = TaskManager("test")
        task = tasks.create_task("slow", slow())
        await tasks.shutdown()

        assert task.cancelled()
        with pytest.raises(RuntimeError):
            tasks.create_task("late", slow())

    def test_invalid_concurrency(self):
        with pytest.raises(ValueError):
            TaskManager("test", max_concurrency=0)
