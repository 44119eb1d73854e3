"""Background tasks for transcoding jobs.

Jobs run as asyncio tasks on the server's event loop; the request that
created a job returns before the encode starts.
"""

import asyncio
import logging
from pathlib import Path

from vidsqueeze.core.logging import clear_correlation_id, log_error, log_info, set_correlation_id
from vidsqueeze.core.metrics import TRANSCODE_JOBS_ACTIVE
from vidsqueeze.core.tracing import job_span
from vidsqueeze.modules.transcoding.models import JobStatus
from vidsqueeze.modules.transcoding.pipeline import TwoPassEncodePipeline
from vidsqueeze.modules.transcoding.thumbnail import ThumbnailGenerator

logger = logging.getLogger(__name__)


async def transcode_job_task(
    job_id: str,
    upload_path: Path,
    thumbnails: ThumbnailGenerator,
    pipeline: TwoPassEncodePipeline,
) -> JobStatus:
    """Thumbnail then both encode passes for one job."""
    set_correlation_id(job_id)
    TRANSCODE_JOBS_ACTIVE.inc()
    try:
        with job_span("transcode job", job_id):
            # Finish before pass 1 starts; the upload is deleted after pass 2
            await thumbnails.generate(job_id, upload_path)
            return await pipeline.run()
    finally:
        TRANSCODE_JOBS_ACTIVE.dec()
        clear_correlation_id()


class JobTaskRunner:
    """Holds references to running job tasks until they finish."""

    def __init__(self):
        self._tasks: dict[str, asyncio.Task] = {}

    def is_running(self, job_id: str) -> bool:
        task = self._tasks.get(job_id)
        return task is not None and not task.done()

    def schedule(self, job_id: str, coro) -> asyncio.Task:
        """Start ``coro`` for ``job_id``; at most one task per job."""
        if self.is_running(job_id):
            coro.close()
            raise RuntimeError(f"Job {job_id} is already running")
        task = asyncio.create_task(coro, name=f"transcode-{job_id}")
        self._tasks[job_id] = task
        task.add_done_callback(lambda t: self._on_done(job_id, t))
        return task

    def _on_done(self, job_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(job_id) is task:
            del self._tasks[job_id]
        if task.cancelled():
            log_info(logger, "Job task cancelled", job_id=job_id)
            return
        exc = task.exception()
        if exc is not None:
            log_error(logger, "Job task crashed", exception=exc, job_id=job_id)

    async def shutdown(self) -> None:
        """Cancel running jobs; cancellation kills their ffmpeg processes."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
