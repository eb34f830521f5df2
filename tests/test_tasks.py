"""Tests for detached background tasks."""

import asyncio

from fingate import tasks
from fingate.tasks import drain, pending, spawn


class TestSpawn:
    """Tests for spawn and drain."""

    async def test_runs_without_being_awaited(self) -> None:
        ran = asyncio.Event()

        async def work():
            ran.set()

        spawn(work(), name="test_work")
        await drain()

        assert ran.is_set()
        assert pending() == 0

    async def test_failure_is_contained(self, monkeypatch) -> None:
        """A failing task is reported and dropped; the caller never sees it."""
        reported = []
        monkeypatch.setattr(tasks, "capture_exception", reported.append)

        async def boom():
            raise ValueError("background failure")

        task = spawn(boom(), name="test_boom")
        await drain()

        assert task.done()
        assert len(reported) == 1
        assert isinstance(reported[0], ValueError)
        assert pending() == 0

    async def test_drain_waits_for_nested_tasks(self) -> None:
        """Tasks spawned by other tasks are awaited too."""
        order = []

        async def child():
            await asyncio.sleep(0.01)
            order.append("child")

        async def parent():
            order.append("parent")
            spawn(child(), name="test_child")

        spawn(parent(), name="test_parent")
        await drain()

        assert order == ["parent", "child"]
