import asyncio
import logging
import os
import time
from typing import Iterable, Optional

from job_store import Job, JobStore
from workspace import Workspace, remove_file

logger = logging.getLogger(__name__)


class Janitor:
    """Periodic sweep of stale jobs and the files behind them.

    Registry entries are removed before their files, so a status poll never
    reports ``complete`` for a video that is already gone.
    """

    def __init__(self, store: JobStore, workspace: Workspace, max_age: float, interval: float):
        self.store = store
        self.workspace = workspace
        self.max_age = max_age
        self.interval = interval
        self._task: Optional[asyncio.Task] = None

    def reclaim(self, jobs: Iterable[Job]) -> int:
        """Delete the outputs of jobs that were already removed from the registry."""
        removed = 0
        for job in jobs:
            if remove_file(self.workspace.output_path(job.id)):
                removed += 1
        return removed

    def sweep(self, now: Optional[float] = None) -> dict:
        now = time.time() if now is None else now
        expired = self.store.evict_older_than(self.max_age, now=now)
        overflow = self.store.evict_over_capacity()
        files = self.reclaim(expired) + self.reclaim(overflow)
        orphans = self.sweep_orphans(now)

        stats = {"expired": len(expired), "overflow": len(overflow), "files": files, "orphans": orphans}
        if expired or overflow or files or orphans:
            logger.info(f"Cleaned {len(expired) + len(overflow)} old jobs ({stats})")
        return stats

    def sweep_orphans(self, now: float) -> int:
        """Remove files older than the retention window that no live job owns.

        Covers outputs and scratch inputs left behind by a previous process.
        """
        live = set(self.store.ids())
        removed = 0
        for directory in (self.workspace.video_dir, self.workspace.tmp_dir):
            try:
                entries = list(os.scandir(directory))
            except FileNotFoundError:
                continue
            for entry in entries:
                if not entry.is_file():
                    continue
                job_id = entry.name.split(".", 1)[0].split("_", 1)[0]
                if job_id in live:
                    continue
                try:
                    age = now - entry.stat().st_mtime
                except FileNotFoundError:
                    continue
                if age > self.max_age and remove_file(entry.path):
                    removed += 1
        return removed

    async def run(self):
        loop = asyncio.get_running_loop()
        while True:
            try:
                await loop.run_in_executor(None, self.sweep)
            except Exception:
                logger.exception("Janitor sweep failed")
            await asyncio.sleep(self.interval)

    def start(self):
        if self._task is None:
            self._task = asyncio.create_task(self.run(), name="janitor")
            logger.info(f"Cleanup interval: {self.interval / 60:g} minutes")

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
