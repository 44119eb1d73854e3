"""Tests for the two-pass encode pipeline, thumbnails and the retention sweeper."""

import asyncio
import os
import time
from pathlib import Path

import pytest

from conftest import FakeSpawner, Script, write_output
from vidsqueeze.modules.transcoding.exceptions import JobStateError
from vidsqueeze.modules.transcoding.ffmpeg import FFmpegTranscoder
from vidsqueeze.modules.transcoding.models import BitratePlan, EncodePhase, JobStatus
from vidsqueeze.modules.transcoding.pipeline import TwoPassEncodePipeline
from vidsqueeze.modules.transcoding.registry import JobRegistry
from vidsqueeze.modules.transcoding.storage import ArtifactStore
from vidsqueeze.modules.transcoding.sweeper import RetentionSweeper
from vidsqueeze.modules.transcoding.tasks import JobTaskRunner, transcode_job_task
from vidsqueeze.modules.transcoding.thumbnail import ThumbnailGenerator

JOB_ID = "3f8a2c1e-0000-4000-8000-000000000001"

PLAN = BitratePlan(
    video_codec="libx264",
    video_bitrate_kbps=539,
    audio_bitrate_kbps=128,
    remove_audio=False,
    width=1280,
    height=720,
    duration=10.0,
    target_size_mb=1,
)


def make_pipeline(uploads_dir: Path, spawner: FakeSpawner, timeout: float = 5):
    artifacts = ArtifactStore(uploads_dir)
    registry = JobRegistry()
    registry.create(JOB_ID, target_size_mb=1, video_bitrate_kbps=539, audio_bitrate_kbps=128)
    upload = artifacts.upload_path(JOB_ID, ".mov")
    upload.write_bytes(b"source")
    pipeline = TwoPassEncodePipeline(
        JOB_ID,
        PLAN,
        upload,
        FFmpegTranscoder(spawn=spawner),
        registry,
        artifacts,
        pass_timeout=timeout,
    )
    return pipeline, registry, artifacts, upload


def per_pass(pass1: Script, pass2: Script):
    def handler(program, args):
        return pass1 if args[args.index("-pass") + 1] == "1" else pass2
    return handler


class TestTwoPassEncode:

    @pytest.mark.asyncio
    async def test_success_cleans_intermediates(self, uploads_dir: Path) -> None:
        progress = ["out_time_ms=5000000", "speed=2x", "progress=continue", "out_time_ms=10000000"]
        spawner = FakeSpawner(lambda p, a: Script(stdout=progress, on_spawn=write_output))
        pipeline, registry, artifacts, upload = make_pipeline(uploads_dir, spawner)

        status = await pipeline.run()

        job = registry.get(JOB_ID)
        assert status == JobStatus.DONE
        assert job.status == JobStatus.DONE
        assert job.phase == EncodePhase.DONE
        assert job.progress == 100
        assert artifacts.final_output(JOB_ID).exists()
        assert not upload.exists()
        assert not artifacts.pass_output(JOB_ID, 1).exists()
        assert artifacts.passlog_files(JOB_ID) == []

    @pytest.mark.asyncio
    async def test_passes_chain_input_and_output(self, uploads_dir: Path) -> None:
        spawner = FakeSpawner(lambda p, a: Script(on_spawn=write_output))
        pipeline, _, artifacts, upload = make_pipeline(uploads_dir, spawner)

        await pipeline.run()

        pass1, pass2 = spawner.calls
        assert pass1[pass1.index("-i") + 1] == str(upload)
        assert pass1[-1] == str(artifacts.pass_output(JOB_ID, 1))
        assert pass2[pass2.index("-i") + 1] == str(artifacts.pass_output(JOB_ID, 1))
        assert pass2[-1] == str(artifacts.final_output(JOB_ID))

    @pytest.mark.asyncio
    async def test_progress_reaches_half_after_first_pass(self, uploads_dir: Path) -> None:
        seen = []
        spawner = FakeSpawner(per_pass(
            Script(stdout=["out_time_ms=10000000"], on_spawn=write_output),
            Script(returncode=1, stderr="disk full"),
        ))
        pipeline, registry, _, _ = make_pipeline(uploads_dir, spawner)

        original = registry.update_progress

        def spy(job_id, **kwargs):
            seen.append(original(job_id, **kwargs))
            return seen[-1]

        registry.update_progress = spy

        status = await pipeline.run()

        assert seen == [50]
        assert status == JobStatus.ERROR
        job = registry.get(JOB_ID)
        assert job.status == JobStatus.ERROR
        assert job.progress == 50
        assert "Pass 2 exited with code 1" in job.error

    @pytest.mark.asyncio
    async def test_failed_pass_stops_pipeline(self, uploads_dir: Path) -> None:
        spawner = FakeSpawner(lambda p, a: Script(returncode=1, stderr="Unknown encoder"))
        pipeline, registry, _, upload = make_pipeline(uploads_dir, spawner)

        status = await pipeline.run()

        assert status == JobStatus.ERROR
        assert len(spawner.calls) == 1
        assert registry.get(JOB_ID).phase == EncodePhase.ERROR
        assert upload.exists()

    @pytest.mark.asyncio
    async def test_timeout_fails_job(self, uploads_dir: Path) -> None:
        spawner = FakeSpawner(lambda p, a: Script(hang=True))
        pipeline, registry, _, _ = make_pipeline(uploads_dir, spawner, timeout=0.05)

        status = await pipeline.run()

        assert status == JobStatus.ERROR
        assert spawner.processes[0].killed
        assert "timed out" in registry.get(JOB_ID).error

    @pytest.mark.asyncio
    async def test_missing_ffmpeg_fails_job(self, uploads_dir: Path) -> None:
        spawner = FakeSpawner(lambda p, a: FileNotFoundError("ffmpeg"))
        pipeline, registry, _, _ = make_pipeline(uploads_dir, spawner)

        assert await pipeline.run() == JobStatus.ERROR
        assert registry.get(JOB_ID).status == JobStatus.ERROR

    @pytest.mark.asyncio
    async def test_pipeline_runs_once_per_job(self, uploads_dir: Path) -> None:
        spawner = FakeSpawner(lambda p, a: Script(on_spawn=write_output))
        pipeline, _, _, _ = make_pipeline(uploads_dir, spawner)
        await pipeline.run()

        with pytest.raises(JobStateError):
            await pipeline.run()

    @pytest.mark.asyncio
    async def test_cancellation_kills_encoder(self, uploads_dir: Path) -> None:
        spawner = FakeSpawner(lambda p, a: Script(hang=True))
        pipeline, registry, _, _ = make_pipeline(uploads_dir, spawner, timeout=None)

        task = asyncio.create_task(pipeline.run())
        while not spawner.processes:
            await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert spawner.processes[0].killed
        assert registry.get(JOB_ID).status == JobStatus.ERROR


class TestThumbnail:

    @pytest.mark.asyncio
    async def test_thumbnail_written(self, uploads_dir: Path) -> None:
        spawner = FakeSpawner(lambda p, a: Script(on_spawn=write_output))
        artifacts = ArtifactStore(uploads_dir)
        generator = ThumbnailGenerator(FFmpegTranscoder(spawn=spawner), artifacts, timeout=5)

        path = await generator.generate(JOB_ID, uploads_dir / "in.mov")

        assert path == artifacts.thumbnail(JOB_ID)
        assert path.exists()

    @pytest.mark.asyncio
    async def test_thumbnail_failure_is_swallowed(self, uploads_dir: Path) -> None:
        spawner = FakeSpawner(lambda p, a: Script(returncode=1, stderr="no frames"))
        generator = ThumbnailGenerator(FFmpegTranscoder(spawn=spawner), ArtifactStore(uploads_dir))

        assert await generator.generate(JOB_ID, uploads_dir / "in.mov") is None

    @pytest.mark.asyncio
    async def test_job_task_survives_thumbnail_failure(self, uploads_dir: Path) -> None:
        def handler(program, args):
            if "-vframes" in args:
                return Script(returncode=1)
            return Script(on_spawn=write_output)

        spawner = FakeSpawner(handler)
        pipeline, registry, artifacts, upload = make_pipeline(uploads_dir, spawner)
        thumbnails = ThumbnailGenerator(pipeline.transcoder, artifacts)
        runner = JobTaskRunner()

        task = runner.schedule(JOB_ID, transcode_job_task(JOB_ID, upload, thumbnails, pipeline))
        assert runner.is_running(JOB_ID)
        assert await task == JobStatus.DONE
        assert registry.get(JOB_ID).status == JobStatus.DONE
        assert len(spawner.calls) == 3


class TestRetentionSweeper:

    def test_old_files_purged(self, uploads_dir: Path) -> None:
        old = uploads_dir / "old_2.mp4"
        fresh = uploads_dir / "fresh.webp"
        old.write_bytes(b"x")
        fresh.write_bytes(b"x")
        stale = time.time() - 2000
        os.utime(old, (stale, stale))
        (uploads_dir / "nested").mkdir()

        sweeper = RetentionSweeper(ArtifactStore(uploads_dir), age_limit=900)
        purged = sweeper.sweep_once()

        assert [p.name for p in purged] == ["old_2.mp4"]
        assert not old.exists()
        assert fresh.exists()
        assert (uploads_dir / "nested").is_dir()

    def test_sweep_evicts_finished_jobs(self, uploads_dir: Path) -> None:
        now = [10_000.0]
        registry = JobRegistry(clock=lambda: now[0])
        registry.create("a", target_size_mb=1)
        registry.mark_error("a", "boom")
        now[0] += 1000

        RetentionSweeper(ArtifactStore(uploads_dir), registry, age_limit=900, clock=lambda: now[0]).sweep_once()

        assert "a" not in registry

    def test_missing_directory_tolerated(self, tmp_path: Path) -> None:
        sweeper = RetentionSweeper(ArtifactStore(tmp_path / "gone"), age_limit=0)
        assert sweeper.sweep_once() == []

    @pytest.mark.asyncio
    async def test_background_sweep_starts_immediately(self, uploads_dir: Path) -> None:
        old = uploads_dir / "old.mov"
        old.write_bytes(b"x")
        stale = time.time() - 2000
        os.utime(old, (stale, stale))
        sweeper = RetentionSweeper(ArtifactStore(uploads_dir), age_limit=900, interval=3600)

        sweeper.start()
        for _ in range(100):
            if not old.exists():
                break
            await asyncio.sleep(0.01)
        await sweeper.stop()

        assert not old.exists()
