"""
Unit Tests: CleanupManager

Tests:
- Tasks run in descending priority
- A failing task does not stop the others
- Tag cleanup keeps failed tasks registered
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from capgate.gateway.cleanup import CleanupManager, CleanupTask


class TestRegistration:
    def test_register_and_unregister(self, cleanup):
        cleanup.register(CleanupTask(id="a", name="task a", cleanup=MagicMock()))

        assert cleanup.has_task("a")
        assert len(cleanup) == 1
        assert cleanup.unregister("a") is True
        assert cleanup.unregister("a") is False

    def test_register_replaces_by_id(self, cleanup):
        first = MagicMock()
        second = MagicMock()
        cleanup.register(CleanupTask(id="a", name="first", cleanup=first))
        cleanup.register_cleanup(CleanupTask(id="a", name="second", cleanup=second))

        assert len(cleanup) == 1
        assert cleanup.list_tasks()[0].name == "second"

    def test_list_by_priority(self, cleanup):
        cleanup.register(CleanupTask(id="low", name="low", cleanup=MagicMock(), priority=1))
        cleanup.register(CleanupTask(id="high", name="high", cleanup=MagicMock(), priority=10))
        cleanup.register(CleanupTask(id="mid", name="mid", cleanup=MagicMock(), priority=5))

        assert [t.id for t in cleanup.list_tasks()] == ["high", "mid", "low"]


class TestRunAll:
    @pytest.mark.asyncio
    async def test_runs_in_priority_order_and_clears(self, cleanup):
        order = []
        cleanup.register(CleanupTask(id="low", name="low", cleanup=lambda: order.append("low"), priority=1))
        cleanup.register(CleanupTask(id="high", name="high", cleanup=lambda: order.append("high"), priority=10))

        report = await cleanup.run_all()

        assert order == ["high", "low"]
        assert report.ok
        assert report.completed == ["high", "low"]
        assert len(cleanup) == 0

    @pytest.mark.asyncio
    async def test_failure_is_isolated(self, cleanup):
        after = AsyncMock()
        cleanup.register(
            CleanupTask(id="bad", name="bad", cleanup=MagicMock(side_effect=RuntimeError("boom")), priority=5)
        )
        cleanup.register(CleanupTask(id="good", name="good", cleanup=after, priority=1))

        report = await cleanup.run_all()

        after.assert_awaited_once()
        assert not report.ok
        assert report.errors == {"bad": "boom"}
        assert report.completed == ["good"]

    @pytest.mark.asyncio
    async def test_reentry_is_ignored(self, cleanup):
        started = asyncio.Event()
        release = asyncio.Event()

        async def slow():
            started.set()
            await release.wait()

        cleanup.register(CleanupTask(id="slow", name="slow", cleanup=slow))
        first = asyncio.create_task(cleanup.run_all())
        await started.wait()

        second = await cleanup.run_all()
        release.set()
        report = await first

        assert second.completed == []
        assert report.completed == ["slow"]


class TestCleanupByTag:
    @pytest.mark.asyncio
    async def test_only_matching_tasks_run(self, cleanup):
        a = MagicMock()
        b = MagicMock()
        cleanup.register(CleanupTask(id="a", name="container a", cleanup=a, tags=["user-1"]))
        cleanup.register(CleanupTask(id="b", name="container b", cleanup=b, tags=["user-2"]))

        report = await cleanup.cleanup_by_tag("user-1")

        a.assert_called_once()
        b.assert_not_called()
        assert report.completed == ["a"]
        assert not cleanup.has_task("a")
        assert cleanup.has_task("b")

    @pytest.mark.asyncio
    async def test_name_matches_too(self, cleanup):
        cleanup.register(CleanupTask(id="a", name="container cg-abc", cleanup=MagicMock()))

        report = await cleanup.cleanup_by_tag("cg-abc")

        assert report.completed == ["a"]

    @pytest.mark.asyncio
    async def test_failed_tasks_stay_registered(self, cleanup):
        cleanup.register(
            CleanupTask(id="a", name="a", cleanup=MagicMock(side_effect=RuntimeError("x")), tags=["t"])
        )

        report = await cleanup.cleanup_by_tag("t")

        assert report.errors == {"a": "x"}
        assert cleanup.has_task("a")


class TestSignalHandlers:
    @pytest.mark.asyncio
    async def test_installs_for_sigint_and_sigterm(self):
        manager = CleanupManager()
        loop = MagicMock()

        manager.install_signal_handlers(loop=loop)

        assert loop.add_signal_handler.call_count == 2

    @pytest.mark.asyncio
    async def test_unsupported_platform_is_tolerated(self):
        manager = CleanupManager()
        loop = MagicMock()
        loop.add_signal_handler.side_effect = NotImplementedError

        manager.install_signal_handlers(loop=loop)
