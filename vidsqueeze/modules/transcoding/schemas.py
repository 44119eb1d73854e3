"""Pydantic schemas for the transcoding API."""

from pydantic import BaseModel, Field

from vidsqueeze.modules.transcoding.models import Job, JobStatus


class JobResponse(BaseModel):
    """Job snapshot returned by the transcode and status endpoints."""

    uuid: str = Field(..., description="Job identifier")
    status: JobStatus = Field(..., description="Transcoding, Done or Error")
    progress: int = Field(0, ge=0, le=100, description="Overall progress percentage")
    left: int = Field(0, ge=0, description="Estimated seconds remaining")
    out_time: float = Field(0.0, ge=0, alias="outTime", description="Seconds of output encoded in the current pass")
    target_size: int = Field(..., alias="targetSize", description="Target size in MB")
    video_bitrate_kbps: int = Field(..., alias="videoBitrateKbps")
    audio_bitrate_kbps: int = Field(..., alias="audioBitrateKbps")

    model_config = {
        "populate_by_name": True,
        "json_schema_extra": {
            "example": {
                "uuid": "0b6f4b3e-7c1f-4f0e-9f55-3c1d1f6f2d10",
                "status": "Transcoding",
                "progress": 42,
                "left": 37,
                "outTime": 12.5,
                "targetSize": 10,
                "videoBitrateKbps": 539,
                "audioBitrateKbps": 128,
            }
        },
    }

    @classmethod
    def from_job(cls, job: Job) -> "JobResponse":
        """Build a consistent snapshot of a job record."""
        with job.lock:
            return cls(
                uuid=job.id,
                status=job.status,
                progress=job.progress,
                left=job.left,
                out_time=job.out_time,
                target_size=job.target_size_mb,
                video_bitrate_kbps=job.video_bitrate_kbps,
                audio_bitrate_kbps=job.audio_bitrate_kbps,
            )


class ErrorResponse(BaseModel):
    """Error body shared by every failing endpoint."""

    error: str


class PingResponse(BaseModel):
    """Liveness probe body."""

    status: str = "OK"
