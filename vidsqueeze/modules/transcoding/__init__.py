"""Transcoding module for target-size video encoding.

Probes uploads with ffprobe, plans a bitrate that fits the requested size,
runs a two-pass ffmpeg encode in the background and serves the result once.
"""

from vidsqueeze.modules.transcoding.router import delivery_router
from vidsqueeze.modules.transcoding.router import router as transcoding_router

__all__ = ["delivery_router", "transcoding_router"]
