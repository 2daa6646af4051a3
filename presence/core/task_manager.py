"""
Background periodic tasks on the server's event loop (e.g. the cache sweep).
Tasks are started and cancelled by the application lifespan.
"""
import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional


class PeriodicTask:
    """Runs callback every interval_seconds in a worker thread so the loop never blocks."""

    def __init__(self, name: str, callback: Callable[[], Any], interval_seconds: float):
        self.name = name
        self.callback = callback
        self.interval_seconds = interval_seconds
        self.next_run_at: Optional[datetime] = None
        self.last_run_at: Optional[datetime] = None
        self.runs = 0
        self._task: Optional[asyncio.Task] = None
        self.logger = logging.getLogger(self.__class__.__name__)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run(), name=self.name)

    async def _run(self) -> None:
        while True:
            self.next_run_at = datetime.now(timezone.utc) + timedelta(seconds=self.interval_seconds)
            await asyncio.sleep(self.interval_seconds)
            try:
                await asyncio.to_thread(self.callback)
                self.runs += 1
            except Exception as e:
                self.logger.exception(f"Periodic task {self.name} failed: {e}")
            self.last_run_at = datetime.now(timezone.utc)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        self.next_run_at = None


class TaskManager:
    def __init__(self):
        self.tasks: Dict[str, PeriodicTask] = {}
        self.logger = logging.getLogger("TaskManager")

    def schedule_periodic(self, name: str, callback: Callable[[], Any], interval_seconds: float) -> PeriodicTask:
        """Start (or replace) a periodic task. Must be called from the running event loop."""
        self.logger.info(f"Scheduling task {name} every {interval_seconds} seconds")
        existing = self.tasks.get(name)
        if existing is not None and existing._task is not None:
            self.logger.info(f"Cancelling existing task {name}")
            existing._task.cancel()
        task = PeriodicTask(name, callback, interval_seconds)
        self.tasks[name] = task
        task.start()
        return task

    def get_active_timers(self) -> List[Dict[str, Any]]:
        """Running tasks and their next run time (for the status endpoint)."""
        return [
            {"name": name, "next_run_at": task.next_run_at, "runs": task.runs}
            for name, task in self.tasks.items()
            if task.running
        ]

    async def stop(self) -> None:
        """Cancel all tasks and wait for them to finish."""
        for task in self.tasks.values():
            await task.stop()
        self.tasks.clear()
