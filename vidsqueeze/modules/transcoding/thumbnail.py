"""Preview thumbnail extraction."""

import logging
from pathlib import Path
from typing import Optional

from vidsqueeze.core.logging import log_info, log_warning
from vidsqueeze.core.tracing import job_span
from vidsqueeze.modules.transcoding.exceptions import ThumbnailFailed
from vidsqueeze.modules.transcoding.ffmpeg import FFmpegTranscoder
from vidsqueeze.modules.transcoding.storage import ArtifactStore

logger = logging.getLogger(__name__)


class ThumbnailGenerator:
    """Writes the first frame of an input to ``<id>.webp``.

    A failed thumbnail never fails the job.
    """

    def __init__(self, transcoder: FFmpegTranscoder, artifacts: ArtifactStore, timeout: Optional[float] = None):
        self.transcoder = transcoder
        self.artifacts = artifacts
        self.timeout = timeout

    async def _extract(self, job_id: str, input_path: Path) -> Path:
        output_path = self.artifacts.thumbnail(job_id)
        try:
            result = await self.transcoder.extract_thumbnail(input_path, output_path, timeout=self.timeout)
        except OSError as e:
            raise ThumbnailFailed(detail=str(e)) from e
        if result.timed_out:
            raise ThumbnailFailed(detail="timed out")
        if result.returncode != 0:
            raise ThumbnailFailed(detail=result.stderr.strip() or f"exit code {result.returncode}")
        return output_path

    async def generate(self, job_id: str, input_path: Path) -> Optional[Path]:
        """Extract the thumbnail.

        Returns:
            Thumbnail path, or None when extraction failed
        """
        with job_span("thumbnail", job_id):
            try:
                output_path = await self._extract(job_id, input_path)
            except ThumbnailFailed as e:
                log_warning(logger, "Thumbnail generation failed", job_id=job_id, error=str(e))
                return None
        log_info(logger, "Thumbnail generated", job_id=job_id, path=str(output_path))
        return output_path
