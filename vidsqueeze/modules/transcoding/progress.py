"""Parsing of ffmpeg ``-progress`` output.

ffmpeg writes ``key=value`` lines. Only ``out_time_ms`` (microseconds of
output written, despite the name) and ``speed`` are used here.
"""

import math
from dataclasses import dataclass
from typing import Optional

from vidsqueeze.modules.transcoding.planner import round_half_up

PASS_SHARE = 50


@dataclass(frozen=True)
class ProgressUpdate:
    """Values derived from one progress line; None means unchanged."""
    progress: Optional[int] = None
    out_time: Optional[float] = None
    left: Optional[int] = None


def pass_percent(out_time: float, duration: float, pass_number: int) -> int:
    """Map seconds encoded in a pass to overall job percent.

    Pass 1 covers 0 to 50 and pass 2 covers 50 to 100.
    """
    if duration <= 0:
        share = 0
    else:
        share = math.ceil(out_time / duration * 100 / 2)
    share = max(0, min(PASS_SHARE, share))
    return share + (PASS_SHARE if pass_number == 2 else 0)


def estimate_left(out_time: float, duration: float, speed: float, pass_number: int) -> int:
    """Seconds remaining for the whole job at the current ``speed``.

    During pass 1 the full duration of pass 2 is added on top.
    """
    remaining = (duration - out_time) / speed
    if pass_number == 1:
        remaining += duration / speed
    return max(0, round_half_up(remaining))


def parse_speed(value: str) -> Optional[float]:
    value = value.strip().rstrip("x")
    try:
        speed = float(value)
    except ValueError:
        return None
    if not math.isfinite(speed) or speed <= 0:
        return None
    return speed


def parse_out_time(value: str) -> Optional[float]:
    try:
        micros = int(value.strip())
    except ValueError:
        return None
    return max(0.0, micros / 1_000_000)


class PassProgress:
    """Tracks progress lines for a single encode pass."""

    def __init__(self, duration: float, pass_number: int):
        self.duration = duration
        self.pass_number = pass_number
        self.out_time = 0.0

    def feed(self, line: str) -> Optional[ProgressUpdate]:
        """Parse one line; returns None for lines that carry nothing usable."""
        key, sep, value = line.strip().partition("=")
        if not sep:
            return None

        if key == "out_time_ms":
            out_time = parse_out_time(value)
            if out_time is None:
                return None
            self.out_time = out_time
            return ProgressUpdate(
                progress=pass_percent(out_time, self.duration, self.pass_number),
                out_time=out_time,
            )

        if key == "speed":
            speed = parse_speed(value)
            if speed is None or self.duration <= 0:
                return None
            return ProgressUpdate(
                left=estimate_left(self.out_time, self.duration, speed, self.pass_number),
            )

        return None
