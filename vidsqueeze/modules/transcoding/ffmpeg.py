"""FFmpeg and ffprobe process helpers.

Builds the command lines for probing, thumbnail extraction and both encode
passes, and runs them as asyncio subprocesses with a wall-clock limit.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Optional

from vidsqueeze.core.logging import log_warning
from vidsqueeze.modules.transcoding.exceptions import ProbeFailed
from vidsqueeze.modules.transcoding.models import BitratePlan

logger = logging.getLogger(__name__)

# Diagnostic output kept per process for error reporting
MAX_STDERR_CHARS = 4000
KILL_GRACE_SECONDS = 5

LineCallback = Callable[[str], None]
Spawner = Callable[..., Awaitable[asyncio.subprocess.Process]]


async def spawn_process(program: str, *args: str) -> asyncio.subprocess.Process:
    """Start ``program`` with piped stdout and stderr."""
    return await asyncio.create_subprocess_exec(
        program,
        *args,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )


async def cleanup_process(process: asyncio.subprocess.Process, context: str = "ffmpeg") -> None:
    """Kill ``process`` if it is still running and reap it."""
    if process.returncode is None:
        try:
            process.kill()
        except (ProcessLookupError, OSError):
            pass
        try:
            await asyncio.wait_for(process.wait(), timeout=KILL_GRACE_SECONDS)
        except asyncio.TimeoutError:
            log_warning(logger, f"{context} process did not terminate after kill", context=context)


@dataclass
class ProcessResult:
    """Outcome of one external tool invocation."""
    returncode: Optional[int]
    stdout: str
    stderr: str
    timed_out: bool
    elapsed: float


class FFmpegTranscoder:
    """Runs ffmpeg and ffprobe for the transcoding pipeline."""

    def __init__(
        self,
        ffmpeg_path: str = "ffmpeg",
        ffprobe_path: str = "ffprobe",
        spawn: Optional[Spawner] = None,
    ):
        """Initialize transcoder.

        Args:
            ffmpeg_path: Path to ffmpeg binary
            ffprobe_path: Path to ffprobe binary
            spawn: Coroutine used to start processes
        """
        self.ffmpeg_path = ffmpeg_path
        self.ffprobe_path = ffprobe_path
        self._spawn = spawn or spawn_process

    # ==================== Command lines ====================

    def build_probe_args(self, input_path: Path) -> list[str]:
        return [
            "-v", "error",
            "-show_format",
            "-show_streams",
            "-print_format", "json",
            str(input_path),
        ]

    def build_thumbnail_args(self, input_path: Path, output_path: Path) -> list[str]:
        return [
            "-i", str(input_path),
            "-y",
            "-update", "true",
            "-vframes", "1",
            "-ss", "00:00:00",
            str(output_path),
        ]

    def build_pass_args(
        self,
        plan: BitratePlan,
        pass_number: int,
        input_path: Path,
        output_path: Path,
        passlog_prefix: Path,
    ) -> list[str]:
        """Build ffmpeg arguments for one pass of a two-pass encode.

        Args:
            plan: Bitrate plan for the job
            pass_number: 1 or 2
            input_path: File to read
            output_path: File to write
            passlog_prefix: Shared pass statistics prefix

        Returns:
            Argument list, without the ffmpeg binary
        """
        if pass_number not in (1, 2):
            raise ValueError(f"pass_number must be 1 or 2, got {pass_number}")

        args = [
            "-v", "error",
            "-progress", "-",
            "-y",
            "-i", str(input_path),
            "-vf", f"scale={plan.width}:{plan.height}",
            "-c:v", plan.video_codec,
        ]
        if not plan.remove_audio:
            args.extend(["-c:a", "libopus"])
        args.extend(["-preset", "medium"])
        if pass_number == 1:
            args.extend(["-f", "mp4"])
        args.extend([
            "-pass", str(pass_number),
            "-passlogfile", str(passlog_prefix),
            "-b:v", f"{plan.video_bitrate_kbps}k",
        ])
        if plan.remove_audio:
            args.append("-an")
        else:
            args.extend(["-b:a", f"{plan.audio_bitrate_kbps}k"])
        args.append(str(output_path))
        return args

    # ==================== Execution ====================

    async def run(
        self,
        program: str,
        args: list[str],
        timeout: Optional[float] = None,
        on_line: Optional[LineCallback] = None,
        context: str = "ffmpeg",
    ) -> ProcessResult:
        """Run an external tool, streaming stdout lines to ``on_line``.

        The process is killed when ``timeout`` elapses or when the calling
        task is cancelled.

        Args:
            program: Binary to execute
            args: Arguments for the binary
            timeout: Wall-clock limit in seconds, None for no limit
            on_line: Called with every decoded stdout line
            context: Label for log messages

        Returns:
            ProcessResult; stdout is only collected when ``on_line`` is None
        """
        loop = asyncio.get_running_loop()
        start = loop.time()
        process = await self._spawn(program, *args)
        timed_out = False
        collected: list[str] = []

        async def read_stdout():
            while True:
                line = await process.stdout.readline()
                if not line:
                    break
                text = line.decode("utf-8", errors="replace").rstrip("\r\n")
                if on_line is None:
                    collected.append(text)
                else:
                    on_line(text)

        async def read_stderr() -> bytes:
            return await process.stderr.read()

        async def drain_and_wait():
            await read_stdout()
            await process.wait()

        async def timeout_killer():
            nonlocal timed_out
            await asyncio.sleep(timeout)
            timed_out = True
            log_warning(
                logger,
                f"{context} exceeded {timeout:g}s limit, killing process",
                context=context,
                timeout_seconds=timeout,
            )
            try:
                process.kill()
            except ProcessLookupError:
                pass

        stderr_task = asyncio.create_task(read_stderr())
        timeout_task = asyncio.create_task(timeout_killer()) if timeout else None
        try:
            await drain_and_wait()
        finally:
            if timeout_task is not None:
                timeout_task.cancel()
                try:
                    await timeout_task
                except asyncio.CancelledError:
                    pass
            await cleanup_process(process, context)
            try:
                stderr_bytes = await asyncio.wait_for(stderr_task, timeout=KILL_GRACE_SECONDS)
            except asyncio.TimeoutError:
                stderr_bytes = b""

        stderr = stderr_bytes.decode("utf-8", errors="replace")[-MAX_STDERR_CHARS:]
        return ProcessResult(
            returncode=process.returncode,
            stdout="\n".join(collected),
            stderr=stderr,
            timed_out=timed_out,
            elapsed=loop.time() - start,
        )

    async def get_video_info(self, input_path: Path, timeout: Optional[float] = None) -> dict:
        """Get container and stream information using ffprobe.

        Raises:
            ProbeFailed: If ffprobe fails, times out or emits invalid JSON
        """
        started = time.monotonic()
        try:
            result = await self.run(
                self.ffprobe_path,
                self.build_probe_args(input_path),
                timeout=timeout,
                context="ffprobe",
            )
        except OSError as e:
            raise ProbeFailed(detail=str(e)) from e

        if result.timed_out:
            raise ProbeFailed(detail=f"timed out after {time.monotonic() - started:.0f}s")
        if result.returncode != 0:
            raise ProbeFailed(detail=result.stderr.strip() or f"exit code {result.returncode}")
        try:
            info = json.loads(result.stdout)
        except json.JSONDecodeError as e:
            raise ProbeFailed(detail=f"invalid ffprobe output: {e}") from e
        if not isinstance(info, dict):
            raise ProbeFailed(detail="invalid ffprobe output")
        return info

    async def extract_thumbnail(self, input_path: Path, output_path: Path, timeout: Optional[float] = None) -> ProcessResult:
        return await self.run(
            self.ffmpeg_path,
            self.build_thumbnail_args(input_path, output_path),
            timeout=timeout,
            context="thumbnail",
        )

    async def encode_pass(
        self,
        plan: BitratePlan,
        pass_number: int,
        input_path: Path,
        output_path: Path,
        passlog_prefix: Path,
        timeout: Optional[float] = None,
        on_line: Optional[LineCallback] = None,
    ) -> ProcessResult:
        return await self.run(
            self.ffmpeg_path,
            self.build_pass_args(plan, pass_number, input_path, output_path, passlog_prefix),
            timeout=timeout,
            on_line=on_line,
            context=f"ffmpeg pass {pass_number}",
        )
