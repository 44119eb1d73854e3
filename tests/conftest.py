"""Shared fixtures: settings bound to a temp directory and a scripted
process spawner standing in for ffmpeg and ffprobe."""

import asyncio
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional, Union

import pytest

from vidsqueeze.core.config import Settings
from vidsqueeze.modules.transcoding.ffmpeg import FFmpegTranscoder


@dataclass
class Script:
    """What a fake process prints and how it exits."""
    stdout: list[str] = field(default_factory=list)
    stderr: str = ""
    returncode: int = 0
    hang: bool = False
    on_spawn: Optional[Callable[[list[str]], None]] = None


class FakeProcess:
    """Enough of asyncio.subprocess.Process for FFmpegTranscoder.run."""

    def __init__(self, script: Script):
        self.script = script
        self.stdout = asyncio.StreamReader()
        self.stderr = asyncio.StreamReader()
        self.returncode: Optional[int] = None
        self.killed = False
        self._exited = asyncio.Event()

        for line in script.stdout:
            self.stdout.feed_data(line.encode() + b"\n")
        self.stderr.feed_data(script.stderr.encode())
        if not script.hang:
            self.stdout.feed_eof()
            self.stderr.feed_eof()

    async def wait(self) -> int:
        if not self.script.hang and self.returncode is None:
            self.returncode = self.script.returncode
            self._exited.set()
        await self._exited.wait()
        return self.returncode

    def kill(self) -> None:
        self.killed = True
        if self.returncode is None:
            self.returncode = -9
        self.stdout.feed_eof()
        self.stderr.feed_eof()
        self._exited.set()


Handler = Callable[[str, list[str]], Union[Script, BaseException]]


class FakeSpawner:
    """Records every command and answers with a Script from ``handler``."""

    def __init__(self, handler: Handler):
        self.handler = handler
        self.calls: list[list[str]] = []
        self.processes: list[FakeProcess] = []

    async def __call__(self, program: str, *args: str) -> FakeProcess:
        self.calls.append([program, *args])
        script = self.handler(program, list(args))
        if isinstance(script, BaseException):
            raise script
        if script.on_spawn is not None:
            script.on_spawn(list(args))
        process = FakeProcess(script)
        self.processes.append(process)
        return process

    def calls_to(self, program: str) -> list[list[str]]:
        return [c for c in self.calls if c[0] == program]


def probe_info(
    duration: Optional[float] = 120.0,
    width: int = 1920,
    height: int = 1080,
    audio_bit_rate: Optional[str] = "128000",
    with_video: bool = True,
    with_audio: bool = True,
    rotation: Optional[float] = None,
) -> dict:
    """ffprobe JSON for a typical input."""
    streams = []
    if with_video:
        video = {
            "index": 0,
            "codec_type": "video",
            "codec_name": "h264",
            "width": width,
            "height": height,
            "bit_rate": "2500000",
        }
        if rotation is not None:
            video["side_data_list"] = [{"side_data_type": "Display Matrix", "rotation": rotation}]
        streams.append(video)
    if with_audio:
        audio = {"index": len(streams), "codec_type": "audio", "codec_name": "aac"}
        if audio_bit_rate is not None:
            audio["bit_rate"] = audio_bit_rate
        streams.append(audio)
    fmt = {"format_name": "mov,mp4,m4a,3gp,3g2,mj2", "size": "5000000"}
    if duration is not None:
        fmt["duration"] = str(duration)
    return {"streams": streams, "format": fmt}


def write_output(args: list[str]) -> None:
    """Create the file named by the last argument, as ffmpeg would."""
    Path(args[-1]).write_bytes(b"encoded")
    if "-passlogfile" in args:
        prefix = args[args.index("-passlogfile") + 1]
        Path(f"{prefix}-0.log").write_text("stats")


def ffmpeg_handler(info: Optional[dict] = None, progress_lines: Optional[list[str]] = None) -> Handler:
    """Successful ffprobe and ffmpeg runs."""
    info = info if info is not None else probe_info()

    def handler(program: str, args: list[str]) -> Script:
        if program == "ffprobe":
            return Script(stdout=[json.dumps(info)])
        return Script(stdout=list(progress_lines or []), on_spawn=write_output)

    return handler


@pytest.fixture
def uploads_dir(tmp_path: Path) -> Path:
    path = tmp_path / "uploads"
    path.mkdir()
    return path


@pytest.fixture
def test_settings(uploads_dir: Path, tmp_path: Path) -> Settings:
    static_dir = tmp_path / "static"
    static_dir.mkdir()
    (static_dir / "index.html").write_text("<h1>vidsqueeze</h1>")
    return Settings(
        UPLOADS_DIR=str(uploads_dir),
        STATIC_PATH=str(static_dir),
        LOGIN="user",
        PASSWORD="password",
        LOG_JSON=False,
        MAX_EXECUTION_TIME_SECONDS=5,
        THUMBNAIL_TIMEOUT_SECONDS=5,
        PROBE_TIMEOUT_SECONDS=5,
    )


@pytest.fixture
def spawner() -> FakeSpawner:
    return FakeSpawner(ffmpeg_handler())


@pytest.fixture
def transcoder(spawner: FakeSpawner) -> FFmpegTranscoder:
    return FFmpegTranscoder(spawn=spawner)
