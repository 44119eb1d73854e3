"""Retention sweeper for the working directory.

Deletes files older than the age limit on a fixed interval, whatever job
they belong to, and drops registry entries of jobs that finished long ago.
"""

import asyncio
import logging
import os
import time
from pathlib import Path
from typing import Optional

from vidsqueeze.core.logging import log_error, log_info
from vidsqueeze.core.metrics import ARTIFACTS_PURGED_TOTAL
from vidsqueeze.modules.transcoding.registry import JobRegistry
from vidsqueeze.modules.transcoding.storage import ArtifactStore

logger = logging.getLogger(__name__)


class RetentionSweeper:
    """Periodic age-based cleanup."""

    def __init__(
        self,
        artifacts: ArtifactStore,
        registry: Optional[JobRegistry] = None,
        age_limit: float = 900,
        interval: float = 600,
        clock=time.time,
    ):
        self.artifacts = artifacts
        self.registry = registry
        self.age_limit = age_limit
        self.interval = interval
        self._clock = clock
        self._task: Optional[asyncio.Task] = None

    def _is_expired(self, path: Path, now: float) -> bool:
        try:
            mtime = os.stat(path).st_mtime
        except FileNotFoundError:
            return False
        return now - mtime > self.age_limit

    def sweep_once(self) -> list[Path]:
        """Delete expired files.

        Returns:
            Paths that were removed
        """
        now = self._clock()
        expired = [path for path in self.artifacts.iter_files() if self._is_expired(path, now)]
        purged = self.artifacts.delete(*expired)
        for path in purged:
            ARTIFACTS_PURGED_TOTAL.inc()
            log_info(logger, f"Purged {path}", path=str(path))

        if self.registry is not None:
            for job_id in self.registry.evict_finished_before(now - self.age_limit):
                log_info(logger, "Evicted expired job", job_id=job_id)
        return purged

    async def run_forever(self) -> None:
        """Sweep immediately, then every ``interval`` seconds until cancelled."""
        while True:
            try:
                await asyncio.to_thread(self.sweep_once)
            except OSError as e:
                log_error(logger, "Retention sweep failed", exception=e)
            await asyncio.sleep(self.interval)

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run_forever(), name="retention-sweeper")
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
