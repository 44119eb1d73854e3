"""Media descriptor reader backed by ffprobe."""

import logging
import math
from pathlib import Path
from typing import Any, Optional

from vidsqueeze.core.logging import log_info
from vidsqueeze.core.tracing import add_span_attributes, create_span
from vidsqueeze.modules.transcoding.ffmpeg import FFmpegTranscoder
from vidsqueeze.modules.transcoding.models import MediaDescriptor, MediaStream

logger = logging.getLogger(__name__)


def _to_int(value: Any) -> Optional[int]:
    if value is None or value == "N/A":
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


def _to_float(value: Any) -> Optional[float]:
    if value is None or value == "N/A":
        return None
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    return result if math.isfinite(result) else None


def _stream_rotation(stream: dict) -> Optional[float]:
    """Rotation from display matrix side data, else the legacy rotate tag."""
    for side_data in stream.get("side_data_list") or []:
        if isinstance(side_data, dict) and "rotation" in side_data:
            rotation = _to_float(side_data.get("rotation"))
            if rotation is not None:
                return rotation
    tags = stream.get("tags") or {}
    return _to_float(tags.get("rotate"))


def parse_stream(stream: dict) -> MediaStream:
    return MediaStream(
        index=_to_int(stream.get("index")) or 0,
        codec_type=str(stream.get("codec_type") or "unknown"),
        codec_name=stream.get("codec_name"),
        bit_rate=_to_int(stream.get("bit_rate")),
        width=_to_int(stream.get("width")),
        height=_to_int(stream.get("height")),
        rotation=_stream_rotation(stream),
    )


def parse_probe_output(info: dict) -> MediaDescriptor:
    """Convert ffprobe ``-show_format -show_streams`` JSON to a descriptor."""
    fmt = info.get("format") or {}
    streams = tuple(
        parse_stream(s) for s in info.get("streams") or [] if isinstance(s, dict)
    )
    return MediaDescriptor(
        duration=_to_float(fmt.get("duration")),
        streams=streams,
        format_name=fmt.get("format_name"),
        size=_to_int(fmt.get("size")),
    )


class MediaDescriptorReader:
    """Probes uploaded files once per job."""

    def __init__(self, transcoder: FFmpegTranscoder, timeout: Optional[float] = None):
        self.transcoder = transcoder
        self.timeout = timeout

    async def read(self, input_path: Path) -> MediaDescriptor:
        """Probe ``input_path``.

        Raises:
            ProbeFailed: If ffprobe cannot read the file
        """
        with create_span("ffprobe", attributes={"media.path": str(input_path)}):
            info = await self.transcoder.get_video_info(input_path, timeout=self.timeout)
            descriptor = parse_probe_output(info)
            add_span_attributes({
                "media.duration": descriptor.duration or 0.0,
                "media.streams": len(descriptor.streams),
            })

        log_info(
            logger,
            "Probed input",
            path=str(input_path),
            duration=descriptor.duration,
            streams=len(descriptor.streams),
        )
        return descriptor
