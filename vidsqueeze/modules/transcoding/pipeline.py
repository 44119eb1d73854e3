"""Two-pass encode pipeline.

Runs pass 1 (statistics, throwaway output) and pass 2 (final output)
sequentially for one job, feeding ffmpeg progress into the registry.
"""

import asyncio
import logging
from pathlib import Path
from typing import Optional

from vidsqueeze.core.logging import log_error, log_info
from vidsqueeze.core.metrics import ENCODE_PASS_DURATION_SECONDS, TRANSCODE_JOBS_TOTAL
from vidsqueeze.core.tracing import add_span_attributes, job_span, record_exception
from vidsqueeze.modules.transcoding.exceptions import (
    EncodeProcessFailed,
    EncodeTimeout,
    TranscodeError,
)
from vidsqueeze.modules.transcoding.ffmpeg import FFmpegTranscoder
from vidsqueeze.modules.transcoding.models import BitratePlan, EncodePhase, JobStatus
from vidsqueeze.modules.transcoding.progress import PassProgress
from vidsqueeze.modules.transcoding.registry import JobRegistry
from vidsqueeze.modules.transcoding.storage import ArtifactStore

logger = logging.getLogger(__name__)


class TwoPassEncodePipeline:
    """Encodes one job's upload to ``<id>_2.mp4``."""

    def __init__(
        self,
        job_id: str,
        plan: BitratePlan,
        upload_path: Path,
        transcoder: FFmpegTranscoder,
        registry: JobRegistry,
        artifacts: ArtifactStore,
        pass_timeout: Optional[float] = None,
    ):
        self.job_id = job_id
        self.plan = plan
        self.upload_path = upload_path
        self.transcoder = transcoder
        self.registry = registry
        self.artifacts = artifacts
        self.pass_timeout = pass_timeout

    def _pass_io(self, pass_number: int) -> tuple[Path, Path]:
        if pass_number == 1:
            return self.upload_path, self.artifacts.pass_output(self.job_id, 1)
        return self.artifacts.pass_output(self.job_id, 1), self.artifacts.final_output(self.job_id)

    def _on_progress_line(self, tracker: PassProgress, line: str) -> None:
        update = tracker.feed(line)
        if update is None:
            return
        self.registry.update_progress(
            self.job_id,
            progress=update.progress,
            out_time=update.out_time,
            left=update.left,
        )

    async def run_pass(self, pass_number: int) -> None:
        """Run a single pass.

        Raises:
            EncodeTimeout: Pass exceeded the wall-clock limit
            EncodeProcessFailed: ffmpeg exited non-zero or could not start
        """
        input_path, output_path = self._pass_io(pass_number)
        tracker = PassProgress(self.plan.duration, pass_number)

        with job_span(f"encode pass {pass_number}", self.job_id, {"encode.pass": pass_number}):
            try:
                result = await self.transcoder.encode_pass(
                    self.plan,
                    pass_number,
                    input_path,
                    output_path,
                    self.artifacts.passlog_prefix(self.job_id),
                    timeout=self.pass_timeout,
                    on_line=lambda line: self._on_progress_line(tracker, line),
                )
            except OSError as e:
                raise EncodeProcessFailed(pass_number, -1, str(e)) from e

            ENCODE_PASS_DURATION_SECONDS.labels(pass_number=str(pass_number)).observe(result.elapsed)
            add_span_attributes({"encode.elapsed_seconds": result.elapsed})

            if result.timed_out:
                raise EncodeTimeout(pass_number, self.pass_timeout or 0)
            if result.returncode != 0:
                raise EncodeProcessFailed(pass_number, result.returncode, result.stderr.strip())

        log_info(
            logger,
            f"Pass {pass_number} finished",
            job_id=self.job_id,
            elapsed_seconds=round(result.elapsed, 2),
        )

    async def run(self) -> JobStatus:
        """Run both passes and settle the job.

        Returns:
            The job's terminal status

        Raises:
            JobStateError: The job's encode was already started
        """
        self.registry.set_phase(self.job_id, EncodePhase.PASS1_RUNNING)
        try:
            await self.run_pass(1)
            self.registry.set_phase(self.job_id, EncodePhase.PASS2_RUNNING)
            await self.run_pass(2)
        except asyncio.CancelledError:
            self._fail("Transcode cancelled")
            raise
        except TranscodeError as e:
            record_exception(e)
            log_error(
                logger,
                "Transcode failed",
                job_id=self.job_id,
                error=e.message,
                diagnostics=e.detail,
            )
            self._fail(e.message)
            return JobStatus.ERROR
        except Exception as e:
            record_exception(e)
            log_error(logger, "Transcode crashed", exception=e, job_id=self.job_id)
            self._fail("Internal error")
            return JobStatus.ERROR

        self.registry.mark_done(self.job_id)
        TRANSCODE_JOBS_TOTAL.labels(status=JobStatus.DONE.value).inc()
        self.artifacts.delete_intermediates(self.job_id, self.upload_path)
        log_info(logger, "Transcode finished", job_id=self.job_id, path=str(self.artifacts.final_output(self.job_id)))
        return JobStatus.DONE

    def _fail(self, reason: str) -> None:
        job = self.registry.find(self.job_id)
        if job is None or job.is_terminal:
            return
        self.registry.mark_error(self.job_id, reason)
        TRANSCODE_JOBS_TOTAL.labels(status=JobStatus.ERROR.value).inc()
