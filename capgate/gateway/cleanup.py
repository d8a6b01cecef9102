"""
Cleanup Manager

Tracks teardown tasks for resources the gateway provisioned so they can be
released on shutdown. Tasks run highest priority first; a failing task is
logged and does not stop the others.
"""

import asyncio
import inspect
import logging
import signal
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

CleanupFn = Callable[[], Any]


@dataclass
class CleanupTask:
    """A registered teardown action. Higher priority runs first."""
    id: str
    name: str
    cleanup: CleanupFn
    priority: int = 0
    tags: List[str] = field(default_factory=list)

    def matches(self, tag: str) -> bool:
        return tag in self.tags or tag in self.name


@dataclass
class CleanupReport:
    """Outcome of a cleanup run."""
    completed: List[str] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.errors


class CleanupManager:
    """Registry of teardown tasks. Injected; one per runtime."""

    def __init__(self):
        self._tasks: Dict[str, CleanupTask] = {}
        self._running = False

    def register(self, task: CleanupTask) -> None:
        """Register (or replace) a task by id."""
        self._tasks[task.id] = task
        logger.debug(f"Registered cleanup task {task.id} ({task.name}, priority={task.priority})")

    def register_cleanup(self, task: CleanupTask) -> None:
        self.register(task)

    def unregister(self, task_id: str) -> bool:
        removed = self._tasks.pop(task_id, None) is not None
        if removed:
            logger.debug(f"Unregistered cleanup task {task_id}")
        return removed

    def has_task(self, task_id: str) -> bool:
        return task_id in self._tasks

    def list_tasks(self) -> List[CleanupTask]:
        return sorted(self._tasks.values(), key=lambda t: t.priority, reverse=True)

    def __len__(self) -> int:
        return len(self._tasks)

    async def _run_task(self, task: CleanupTask, report: CleanupReport) -> bool:
        try:
            result = task.cleanup()
            if inspect.isawaitable(result):
                await result
            report.completed.append(task.id)
            return True
        except Exception as e:
            logger.error(f"Cleanup task {task.name} failed: {e}")
            report.errors[task.id] = str(e)
            return False

    async def run_all(self) -> CleanupReport:
        """Run every task in descending priority and clear the registry."""
        report = CleanupReport()
        if self._running:
            logger.warning("Cleanup already in progress")
            return report

        self._running = True
        try:
            tasks = self.list_tasks()
            logger.info(f"Starting cleanup of {len(tasks)} task(s)")
            for task in tasks:
                await self._run_task(task, report)
            self._tasks.clear()
        finally:
            self._running = False

        if report.errors:
            logger.warning(f"Cleanup completed with {len(report.errors)} error(s)")
        else:
            logger.info("Cleanup completed successfully")
        return report

    async def cleanup_by_tag(self, tag: str) -> CleanupReport:
        """Run tasks whose tags or name match ``tag``. Failed tasks stay registered."""
        report = CleanupReport()
        for task in [t for t in self.list_tasks() if t.matches(tag)]:
            if await self._run_task(task, report):
                self._tasks.pop(task.id, None)
        return report

    def install_signal_handlers(
        self,
        loop: Optional[asyncio.AbstractEventLoop] = None,
        on_complete: Optional[Callable[[], Awaitable[Any]]] = None,
    ) -> None:
        """Run all cleanup tasks on SIGINT/SIGTERM."""
        loop = loop or asyncio.get_running_loop()

        async def handle(sig: signal.Signals) -> None:
            logger.info(f"Received {sig.name}, starting graceful shutdown")
            await self.run_all()
            if on_complete is not None:
                await on_complete()

        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, lambda s=sig: loop.create_task(handle(s)))
            except (NotImplementedError, RuntimeError):
                logger.warning(f"Signal handlers not supported for {sig.name}")
