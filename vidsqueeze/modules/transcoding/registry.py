"""Process-wide in-memory job registry.

Structural operations (create, delete, eviction) take the registry lock.
Field updates take only the lock of the job being changed, so jobs never
contend with each other.

A finished output is claimed before it is streamed; only one request can
hold the claim, which keeps delivery one-shot under overlapping downloads.
"""

import threading
import time
from typing import Optional

from vidsqueeze.modules.transcoding.exceptions import (
    ArtifactNotFound,
    ArtifactNotReady,
    JobNotFound,
    JobStateError,
)
from vidsqueeze.modules.transcoding.models import (
    PHASE_TRANSITIONS,
    EncodePhase,
    Job,
    JobStatus,
)


class JobRegistry:
    """Maps job ids to Job records."""

    def __init__(self, clock=time.time):
        self._jobs: dict[str, Job] = {}
        self._claimed: set[str] = set()
        self._lock = threading.Lock()
        self._clock = clock

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)

    def __contains__(self, job_id: object) -> bool:
        with self._lock:
            return job_id in self._jobs

    def create(
        self,
        job_id: str,
        target_size_mb: int,
        video_bitrate_kbps: int = 0,
        audio_bitrate_kbps: int = 0,
    ) -> Job:
        """Insert a new job in the Transcoding state with zero progress."""
        job = Job(
            id=job_id,
            target_size_mb=target_size_mb,
            video_bitrate_kbps=video_bitrate_kbps,
            audio_bitrate_kbps=audio_bitrate_kbps,
            created_at=self._clock(),
        )
        with self._lock:
            if job_id in self._jobs:
                raise JobStateError(f"Job {job_id} already exists")
            self._jobs[job_id] = job
        return job

    def get(self, job_id: str) -> Job:
        """Look up a job.

        Raises:
            JobNotFound: Unknown or already delivered id
        """
        with self._lock:
            job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFound()
        return job

    def find(self, job_id: str) -> Optional[Job]:
        with self._lock:
            return self._jobs.get(job_id)

    def delete(self, job_id: str) -> bool:
        """Remove a job and its delivery claim; returns False when it was already gone."""
        with self._lock:
            self._claimed.discard(job_id)
            return self._jobs.pop(job_id, None) is not None

    # ==================== Delivery ====================

    def claim_delivery(self, job_id: str) -> None:
        """Reserve the final output of ``job_id`` for one download.

        Outputs whose job is no longer registered can still be claimed once.

        Raises:
            ArtifactNotReady: The job has not finished successfully
            ArtifactNotFound: Another request already holds the claim
        """
        with self._lock:
            job = self._jobs.get(job_id)
            if job is not None:
                with job.lock:
                    if job.status != JobStatus.DONE:
                        raise ArtifactNotReady()
            if job_id in self._claimed:
                raise ArtifactNotFound()
            self._claimed.add(job_id)

    # ==================== Field updates ====================

    def set_phase(self, job_id: str, phase: EncodePhase) -> Job:
        """Advance the pipeline phase of a running job.

        Raises:
            JobStateError: Transition not allowed from the current phase
        """
        job = self.get(job_id)
        with job.lock:
            self._check_transition(job, phase)
            job.phase = phase
        return job

    def update_progress(
        self,
        job_id: str,
        progress: Optional[int] = None,
        out_time: Optional[float] = None,
        left: Optional[int] = None,
    ) -> int:
        """Record pass progress; progress never decreases.

        Updates to a finished job are ignored.

        Returns:
            The job's progress after the update
        """
        job = self.get(job_id)
        with job.lock:
            if job.is_terminal:
                return job.progress
            if progress is not None:
                job.progress = max(job.progress, min(100, max(0, int(progress))))
            if out_time is not None:
                job.out_time = max(0.0, float(out_time))
            if left is not None:
                job.left = max(0, int(left))
            return job.progress

    def mark_done(self, job_id: str) -> Job:
        job = self.get(job_id)
        with job.lock:
            self._check_transition(job, EncodePhase.DONE)
            job.phase = EncodePhase.DONE
            job.status = JobStatus.DONE
            job.progress = 100
            job.left = 0
            job.finished_at = self._clock()
        return job

    def mark_error(self, job_id: str, reason: Optional[str] = None) -> Job:
        job = self.get(job_id)
        with job.lock:
            self._check_transition(job, EncodePhase.ERROR)
            job.phase = EncodePhase.ERROR
            job.status = JobStatus.ERROR
            job.error = reason
            job.finished_at = self._clock()
        return job

    @staticmethod
    def _check_transition(job: Job, phase: EncodePhase) -> None:
        if phase not in PHASE_TRANSITIONS[job.phase]:
            raise JobStateError(
                f"Job {job.id} cannot move from {job.phase.value} to {phase.value}"
            )

    # ==================== Housekeeping ====================

    def evict_finished_before(self, cutoff: float) -> list[str]:
        """Drop terminal jobs that finished before ``cutoff``.

        Claims left by interrupted downloads of unregistered outputs are
        dropped as well.

        Returns:
            Ids of evicted jobs
        """
        evicted = []
        with self._lock:
            self._claimed.intersection_update(self._jobs)
            for job_id, job in list(self._jobs.items()):
                with job.lock:
                    expired = (
                        job.is_terminal
                        and job.finished_at is not None
                        and job.finished_at < cutoff
                    )
                if expired:
                    del self._jobs[job_id]
                    self._claimed.discard(job_id)
                    evicted.append(job_id)
        return evicted
