"""Service layer for transcoding operations."""

import logging
from typing import Optional

from fastapi import UploadFile

from vidsqueeze.core.config import Settings
from vidsqueeze.core.logging import log_info, log_warning
from vidsqueeze.core.metrics import ARTIFACT_DELIVERIES_TOTAL, TRANSCODE_JOBS_TOTAL
from vidsqueeze.core.tracing import add_span_attributes, job_span
from vidsqueeze.modules.transcoding.exceptions import (
    InputMissing,
    TranscodeError,
)
from vidsqueeze.modules.transcoding.ffmpeg import FFmpegTranscoder
from vidsqueeze.modules.transcoding.models import BitratePlan
from vidsqueeze.modules.transcoding.pipeline import TwoPassEncodePipeline
from vidsqueeze.modules.transcoding.planner import (
    PlannerOptions,
    check_target_smaller,
    parse_remove_audio,
    parse_target_size,
    plan_bitrate,
    validate_codec,
)
from vidsqueeze.modules.transcoding.probe import MediaDescriptorReader
from vidsqueeze.modules.transcoding.registry import JobRegistry
from vidsqueeze.modules.transcoding.schemas import JobResponse
from vidsqueeze.modules.transcoding.storage import ArtifactStore, DeliveryTarget, StoredUpload
from vidsqueeze.modules.transcoding.sweeper import RetentionSweeper
from vidsqueeze.modules.transcoding.tasks import JobTaskRunner, transcode_job_task
from vidsqueeze.modules.transcoding.thumbnail import ThumbnailGenerator

logger = logging.getLogger(__name__)


class TranscodingService:
    """Accepts uploads, tracks jobs and hands out finished artifacts."""

    def __init__(
        self,
        settings: Settings,
        registry: Optional[JobRegistry] = None,
        artifacts: Optional[ArtifactStore] = None,
        transcoder: Optional[FFmpegTranscoder] = None,
    ):
        """Initialize service.

        Args:
            settings: Application settings
            registry: Job registry, a fresh one by default
            artifacts: Working-directory store, UPLOADS_DIR by default
            transcoder: ffmpeg wrapper, built from FFMPEG_PATH/FFPROBE_PATH by default
        """
        self.settings = settings
        self.registry = registry or JobRegistry()
        self.artifacts = artifacts or ArtifactStore(settings.uploads_path())
        self.transcoder = transcoder or FFmpegTranscoder(settings.FFMPEG_PATH, settings.FFPROBE_PATH)
        self.planner_options = PlannerOptions.from_settings(settings)
        self.reader = MediaDescriptorReader(self.transcoder, timeout=settings.PROBE_TIMEOUT_SECONDS)
        self.thumbnails = ThumbnailGenerator(
            self.transcoder, self.artifacts, timeout=settings.THUMBNAIL_TIMEOUT_SECONDS
        )
        self.sweeper = RetentionSweeper(
            self.artifacts,
            self.registry,
            age_limit=settings.AGE_LIMIT_SECONDS,
            interval=settings.SWEEP_INTERVAL_SECONDS,
        )
        self.runner = JobTaskRunner()

    # ==================== Lifecycle ====================

    async def start(self) -> None:
        self.artifacts.ensure_root()
        self.sweeper.start()

    async def shutdown(self) -> None:
        await self.sweeper.stop()
        await self.runner.shutdown()

    # ==================== Job creation ====================

    async def create_job(
        self,
        upload: Optional[UploadFile],
        target_size: Optional[str],
        video_codec: Optional[str],
        remove_audio: Optional[str] = None,
    ) -> JobResponse:
        """Validate an upload, plan its encode and start it in the background.

        Args:
            upload: Uploaded video
            target_size: Requested size in MB, as sent by the client
            video_codec: Requested encoder
            remove_audio: "true" to strip the audio track

        Returns:
            Initial job snapshot

        Raises:
            TranscodeError: Any validation, probe or planning failure; the
                stored upload is removed before the error propagates
        """
        if upload is None or not upload.filename:
            raise InputMissing()
        target_size_mb = parse_target_size(target_size)
        codec = validate_codec(video_codec, self.planner_options)
        strip_audio = parse_remove_audio(remove_audio)

        stored = await self.artifacts.save_upload(upload, self.settings.MAX_FILE_SIZE_BYTES)
        with job_span("create transcode job", stored.job_id):
            try:
                plan = await self._plan(stored, target_size_mb, codec, strip_audio)
            except TranscodeError as e:
                self.artifacts.delete(stored.path)
                log_warning(logger, "Rejected upload", job_id=stored.job_id, error=str(e))
                raise
            except BaseException:
                self.artifacts.delete(stored.path)
                raise

            job = self.registry.create(
                stored.job_id,
                target_size_mb=plan.target_size_mb,
                video_bitrate_kbps=plan.video_bitrate_kbps,
                audio_bitrate_kbps=plan.audio_bitrate_kbps,
            )
            TRANSCODE_JOBS_TOTAL.labels(status="accepted").inc()
            add_span_attributes({
                "job.video_bitrate_kbps": plan.video_bitrate_kbps,
                "job.audio_bitrate_kbps": plan.audio_bitrate_kbps,
            })
            self.start_job(stored, plan)

        log_info(
            logger,
            "Transcode job accepted",
            job_id=job.id,
            target_size_mb=plan.target_size_mb,
            video_codec=plan.video_codec,
            video_bitrate_kbps=plan.video_bitrate_kbps,
            audio_bitrate_kbps=plan.audio_bitrate_kbps,
            width=plan.width,
            height=plan.height,
        )
        return JobResponse.from_job(job)

    async def _plan(
        self,
        stored: StoredUpload,
        target_size_mb: int,
        codec: str,
        strip_audio: bool,
    ) -> BitratePlan:
        check_target_smaller(stored.size, target_size_mb)
        descriptor = await self.reader.read(stored.path)
        return plan_bitrate(
            stored.size,
            target_size_mb,
            descriptor,
            codec,
            remove_audio=strip_audio,
            options=self.planner_options,
        )

    def start_job(self, stored: StoredUpload, plan: BitratePlan) -> None:
        pipeline = TwoPassEncodePipeline(
            stored.job_id,
            plan,
            stored.path,
            self.transcoder,
            self.registry,
            self.artifacts,
            pass_timeout=self.settings.MAX_EXECUTION_TIME_SECONDS,
        )
        self.runner.schedule(
            stored.job_id,
            transcode_job_task(stored.job_id, stored.path, self.thumbnails, pipeline),
        )

    # ==================== Status ====================

    def get_status(self, job_id: str) -> JobResponse:
        """Snapshot of a job.

        Raises:
            JobNotFound: Unknown or already delivered job
        """
        return JobResponse.from_job(self.registry.get(job_id))

    # ==================== Delivery ====================

    def resolve_delivery(self, name: str) -> DeliveryTarget:
        """Find the file to serve for ``name``.

        A final output is claimed here, so an overlapping request for the
        same output is answered as a miss while the first one streams.

        Raises:
            AccessDenied: Path escapes the working directory
            ArtifactNotFound: No such file, or already being delivered
            ArtifactNotReady: Final output of a job that is not Done
        """
        target = self.artifacts.resolve_delivery(name)
        if target.is_final:
            self.registry.claim_delivery(target.job_id)
        return target

    def complete_delivery(self, target: DeliveryTarget) -> None:
        """Called once a response body has been fully sent."""
        if not target.is_final:
            ARTIFACT_DELIVERIES_TOTAL.labels(kind="other").inc()
            return
        removed = self.artifacts.delete_delivered(target.job_id)
        self.registry.delete(target.job_id)
        ARTIFACT_DELIVERIES_TOTAL.labels(kind="final").inc()
        log_info(
            logger,
            "Delivered final output",
            job_id=target.job_id,
            removed=[str(p) for p in removed],
        )
