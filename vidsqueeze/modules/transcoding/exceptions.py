"""Domain errors for the transcoding pipeline.

Each error carries the HTTP status and client-facing message used when it
is raised while a request is still open. Errors raised after the job was
accepted are recorded on the job instead.
"""

from typing import Optional

from fastapi import status


class TranscodeError(Exception):
    """Base class for transcoding errors."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    message: str = "Transcode failed"

    def __init__(self, message: Optional[str] = None, *, detail: Optional[str] = None):
        self.message = message or self.message
        self.detail = detail
        super().__init__(self.message if not detail else f"{self.message}: {detail}")


# ==================== Request validation ====================

class InputMissing(TranscodeError):
    status_code = status.HTTP_400_BAD_REQUEST
    message = "No file given"


class TargetSizeMissing(TranscodeError):
    status_code = status.HTTP_400_BAD_REQUEST
    message = "No target size given"


class TargetSizeInvalid(TranscodeError):
    status_code = status.HTTP_400_BAD_REQUEST
    message = "Target size must be a positive integer"


class CodecMissing(TranscodeError):
    status_code = status.HTTP_400_BAD_REQUEST
    message = "No video codec given"


class CodecInvalid(TranscodeError):
    status_code = status.HTTP_400_BAD_REQUEST
    message = "Invalid video codec"


class FileTooLarge(TranscodeError):
    status_code = status.HTTP_413_REQUEST_ENTITY_TOO_LARGE
    message = "File too large"


class TargetNotSmaller(TranscodeError):
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, current_size_mb: int):
        self.current_size_mb = current_size_mb
        super().__init__(f"File size is lower than target size: {current_size_mb}MB")


# ==================== Probing and planning ====================

class ProbeFailed(TranscodeError):
    message = "ffprobe failed"


class NoVideoStream(TranscodeError):
    status_code = status.HTTP_400_BAD_REQUEST
    message = "No video streams found"


class UnrealisticBitrate(TranscodeError):

    def __init__(self, video_bitrate_kbps: int, minimum_kbps: int):
        self.video_bitrate_kbps = video_bitrate_kbps
        self.minimum_kbps = minimum_kbps
        super().__init__(
            f"Calculated video bitrate {video_bitrate_kbps} kbps is below "
            f"{minimum_kbps} kbps, choose a larger target size"
        )


# ==================== Background stages ====================

class ThumbnailFailed(TranscodeError):
    message = "Thumbnail generation failed"


class EncodeTimeout(TranscodeError):

    def __init__(self, pass_number: int, timeout_seconds: float):
        self.pass_number = pass_number
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Pass {pass_number} timed out after {timeout_seconds:g} s")


class EncodeProcessFailed(TranscodeError):

    def __init__(self, pass_number: int, returncode: int, stderr: str = ""):
        self.pass_number = pass_number
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(f"Pass {pass_number} exited with code {returncode}", detail=stderr or None)


# ==================== Registry and delivery ====================

class JobNotFound(TranscodeError):
    status_code = status.HTTP_400_BAD_REQUEST
    message = "Invalid UUID"


class JobStateError(TranscodeError):
    """Illegal job state transition; indicates a programming error."""


class AccessDenied(TranscodeError):
    status_code = status.HTTP_403_FORBIDDEN
    message = "Access denied"


class ArtifactNotFound(TranscodeError):
    status_code = status.HTTP_404_NOT_FOUND
    message = "Not found"


class ArtifactNotReady(ArtifactNotFound):
    message = "Transcode not finished"
