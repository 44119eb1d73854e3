"""Bitrate planning for target-size encodes.

Given the probed input and the requested size, work out the video and
audio bitrates and the output frame size for a two-pass encode.
"""

import math
from dataclasses import dataclass
from typing import Optional

from vidsqueeze.modules.transcoding.exceptions import (
    CodecInvalid,
    CodecMissing,
    NoVideoStream,
    ProbeFailed,
    TargetNotSmaller,
    TargetSizeInvalid,
    TargetSizeMissing,
    UnrealisticBitrate,
)
from vidsqueeze.modules.transcoding.models import (
    BitratePlan,
    MediaDescriptor,
    MediaStream,
)


@dataclass(frozen=True)
class PlannerOptions:
    """Tunables for bitrate planning."""
    allowed_codecs: tuple[str, ...] = ("libx264", "libx265")
    default_audio_bitrate_kbps: int = 128
    enforce_bitrate_floor: bool = True
    min_video_bitrate_kbps: int = 384
    correct_rotation: bool = True

    @classmethod
    def from_settings(cls, settings) -> "PlannerOptions":
        return cls(
            allowed_codecs=tuple(settings.ALLOWED_VIDEO_CODECS),
            default_audio_bitrate_kbps=settings.DEFAULT_AUDIO_BITRATE_KBPS,
            enforce_bitrate_floor=settings.ENFORCE_BITRATE_FLOOR,
            min_video_bitrate_kbps=settings.MIN_VIDEO_BITRATE_KBPS,
            correct_rotation=settings.CORRECT_ROTATION,
        )


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves away from minus infinity."""
    return int(math.floor(value + 0.5))


def size_in_mb(size_bytes: int) -> int:
    """Convert a byte count to whole decimal megabytes."""
    return round_half_up(size_bytes / 1_000_000)


def even_floor(value: int) -> int:
    return (int(value) // 2) * 2


# ==================== Request field validation ====================

def parse_target_size(raw: Optional[str]) -> int:
    """Parse the requested target size in MB.

    Raises:
        TargetSizeMissing: If nothing was supplied
        TargetSizeInvalid: If the value is not a positive integer
    """
    if raw is None or str(raw).strip() == "":
        raise TargetSizeMissing()
    try:
        value = int(str(raw).strip())
    except ValueError:
        raise TargetSizeInvalid()
    if value <= 0:
        raise TargetSizeInvalid()
    return value


def validate_codec(codec: Optional[str], options: PlannerOptions) -> str:
    if codec is None or codec.strip() == "":
        raise CodecMissing()
    codec = codec.strip()
    if codec not in options.allowed_codecs:
        raise CodecInvalid()
    return codec


def parse_remove_audio(raw: Optional[str]) -> bool:
    return raw is not None and raw.strip().lower() == "true"


def check_target_smaller(current_size_bytes: int, target_size_mb: int) -> int:
    """Reject targets that are not strictly smaller than the input.

    Returns:
        The input size in whole MB
    """
    current_mb = size_in_mb(current_size_bytes)
    if current_mb <= target_size_mb:
        raise TargetNotSmaller(current_mb)
    return current_mb


# ==================== Bitrates ====================

def audio_bitrate_kbps(
    descriptor: MediaDescriptor,
    remove_audio: bool,
    default_kbps: int = 128,
) -> int:
    """Bitrate budget for the audio track in kbps.

    Zero when audio is stripped or the input has no audio stream. Streams
    that do not declare a bitrate get ``default_kbps``.
    """
    if remove_audio:
        return 0
    stream = descriptor.first_audio()
    if stream is None:
        return 0
    if not stream.bit_rate:
        return default_kbps
    return round_half_up(stream.bit_rate / 1000)


def video_bitrate_kbps(target_size_mb: int, duration: float, audio_kbps: int) -> int:
    """Video bitrate that fills ``target_size_mb`` over ``duration`` seconds."""
    return round_half_up(target_size_mb * 8000 / duration - audio_kbps)


# ==================== Frame size ====================

def rotation_degrees(stream: MediaStream) -> float:
    return float(stream.rotation or 0.0)


def rotated_dimensions(width: int, height: int, degrees: float) -> tuple[int, int]:
    """Bounding box of a ``width`` x ``height`` frame rotated by ``degrees``.

    The result is rounded and floored to even values for the encoder.
    """
    theta = math.radians(degrees)
    cos_t = abs(math.cos(theta))
    sin_t = abs(math.sin(theta))
    rotated_w = width * cos_t + height * sin_t
    rotated_h = width * sin_t + height * cos_t
    return even_floor(round_half_up(rotated_w)), even_floor(round_half_up(rotated_h))


def output_dimensions(stream: MediaStream, correct_rotation: bool = True) -> tuple[int, int]:
    width = even_floor(stream.width or 0)
    height = even_floor(stream.height or 0)
    if not correct_rotation:
        return width, height
    degrees = rotation_degrees(stream)
    if degrees % 360 == 0:
        return width, height
    return rotated_dimensions(width, height, degrees)


# ==================== Plan ====================

def plan_bitrate(
    current_size_bytes: int,
    target_size_mb: int,
    descriptor: MediaDescriptor,
    video_codec: str,
    remove_audio: bool = False,
    options: Optional[PlannerOptions] = None,
) -> BitratePlan:
    """Compute the encode parameters for one job.

    Args:
        current_size_bytes: Size of the uploaded input
        target_size_mb: Requested output size in MB
        descriptor: Probed input media
        video_codec: Requested encoder name
        remove_audio: Strip the audio track
        options: Planner tunables

    Returns:
        BitratePlan for the two-pass encode

    Raises:
        CodecInvalid: Codec is not allowed
        TargetNotSmaller: Input is already at or below the target
        NoVideoStream: Input has no video stream
        ProbeFailed: Input has no usable duration
        UnrealisticBitrate: Target leaves too little room for video
    """
    options = options or PlannerOptions()
    video_codec = validate_codec(video_codec, options)
    check_target_smaller(current_size_bytes, target_size_mb)

    video = descriptor.first_video()
    if video is None:
        raise NoVideoStream()

    duration = descriptor.duration
    if duration is None or not math.isfinite(duration) or duration <= 0:
        raise ProbeFailed("ffprobe reported no usable duration")

    audio_kbps = audio_bitrate_kbps(descriptor, remove_audio, options.default_audio_bitrate_kbps)
    video_kbps = video_bitrate_kbps(target_size_mb, duration, audio_kbps)

    if video_kbps <= 0:
        raise UnrealisticBitrate(video_kbps, max(options.min_video_bitrate_kbps, 1))
    if options.enforce_bitrate_floor and video_kbps < options.min_video_bitrate_kbps:
        raise UnrealisticBitrate(video_kbps, options.min_video_bitrate_kbps)

    width, height = output_dimensions(video, options.correct_rotation)

    return BitratePlan(
        video_codec=video_codec,
        video_bitrate_kbps=video_kbps,
        audio_bitrate_kbps=audio_kbps,
        remove_audio=remove_audio,
        width=width,
        height=height,
        duration=duration,
        target_size_mb=target_size_mb,
    )
