"""Domain models for the transcoding service.

Jobs live in memory only; nothing here is persisted across restarts.
"""

import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class JobStatus(str, Enum):
    """Client-visible status of a transcoding job."""
    TRANSCODING = "Transcoding"
    DONE = "Done"
    ERROR = "Error"


class EncodePhase(str, Enum):
    """Internal pipeline phase of a job."""
    NOT_STARTED = "not_started"
    PASS1_RUNNING = "pass1_running"
    PASS2_RUNNING = "pass2_running"
    DONE = "done"
    ERROR = "error"


# Legal phase transitions; DONE and ERROR are terminal
PHASE_TRANSITIONS = {
    EncodePhase.NOT_STARTED: {EncodePhase.PASS1_RUNNING, EncodePhase.ERROR},
    EncodePhase.PASS1_RUNNING: {EncodePhase.PASS2_RUNNING, EncodePhase.ERROR},
    EncodePhase.PASS2_RUNNING: {EncodePhase.DONE, EncodePhase.ERROR},
    EncodePhase.DONE: set(),
    EncodePhase.ERROR: set(),
}


@dataclass(frozen=True)
class MediaStream:
    """A single stream reported by ffprobe."""
    index: int
    codec_type: str
    codec_name: Optional[str] = None
    bit_rate: Optional[int] = None  # bits per second
    width: Optional[int] = None
    height: Optional[int] = None
    rotation: Optional[float] = None  # degrees


@dataclass(frozen=True)
class MediaDescriptor:
    """Probed container and stream information for an input file."""
    duration: Optional[float]
    streams: tuple[MediaStream, ...] = ()
    format_name: Optional[str] = None
    size: Optional[int] = None

    @property
    def video_streams(self) -> list[MediaStream]:
        return [s for s in self.streams if s.codec_type == "video"]

    @property
    def audio_streams(self) -> list[MediaStream]:
        return [s for s in self.streams if s.codec_type == "audio"]

    def first_video(self) -> Optional[MediaStream]:
        streams = self.video_streams
        return streams[0] if streams else None

    def first_audio(self) -> Optional[MediaStream]:
        streams = self.audio_streams
        return streams[0] if streams else None


@dataclass(frozen=True)
class BitratePlan:
    """Encoder parameters chosen to hit a target output size."""
    video_codec: str
    video_bitrate_kbps: int
    audio_bitrate_kbps: int
    remove_audio: bool
    width: int
    height: int
    duration: float
    target_size_mb: int


@dataclass
class Job:
    """In-memory record of one transcoding job.

    Field mutation goes through JobRegistry, which holds ``lock`` while
    changing a record so readers never see a torn update.
    """
    id: str
    target_size_mb: int
    video_bitrate_kbps: int
    audio_bitrate_kbps: int
    status: JobStatus = JobStatus.TRANSCODING
    phase: EncodePhase = EncodePhase.NOT_STARTED
    progress: int = 0
    left: int = 0  # estimated seconds remaining
    out_time: float = 0.0  # seconds of output produced in the current pass
    error: Optional[str] = None
    created_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None
    lock: threading.Lock = field(
        default_factory=threading.Lock, init=False, repr=False, compare=False
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in (JobStatus.DONE, JobStatus.ERROR)
