"""
Job Registry

In-memory store of refinement jobs and their progress history.

Owned explicitly (one instance passed by handle to the orchestrator, the
SSE server and the sweeper) so tests can build isolated registries.

Concurrency:
- the job map is guarded by a registry lock held only for insert/lookup/delete
- each job has its own lock; every read-modify-write of a job happens under it
- updates are published to the broadcaster while the job lock is held, so
  subscribers see a job's updates in history order; publishing never blocks
"""

import logging
import random
import string
import threading
from typing import TYPE_CHECKING, Any, Callable, Optional, Union

from .models import GLOBAL_TOPIC, Job, JobStatus, ProgressDetails, ProgressUpdate, Stage, now_ms

if TYPE_CHECKING:
    from services.streaming.broadcaster import ProgressBroadcaster

logger = logging.getLogger(__name__)

DEFAULT_MAX_AGE_MS = 30 * 60 * 1000


def generate_job_id(clock: Callable[[], int] = now_ms) -> str:
    """job_<epoch ms>_<9 random base36 chars>"""
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"job_{clock()}_{suffix}"


def clamp_progress(progress: float) -> float:
    return min(100.0, max(0.0, float(progress)))


class JobRegistry:
    """
    Tracks job lifecycle and publishes every progress update.

    Usage:
        registry = JobRegistry(broadcaster)
        job_id = registry.create_job()
        registry.update_progress(job_id, Stage.ANALYZING, 5, "Analyzing request")
        registry.complete_job(job_id, result)
    """

    def __init__(
        self,
        broadcaster: Optional["ProgressBroadcaster"] = None,
        clock: Optional[Callable[[], int]] = None,
    ):
        self.broadcaster = broadcaster
        self._clock = clock or now_ms
        self._jobs: dict[str, Job] = {}
        self._job_locks: dict[str, threading.Lock] = {}
        self._lock = threading.Lock()

    def create_job(self, job_id: Optional[str] = None) -> str:
        """
        Create a pending job.

        Args:
            job_id: Caller-supplied id; generated when absent

        Returns:
            The job id

        Raises:
            ValueError: If a job with this id already exists or the id is reserved
        """
        job_id = job_id or generate_job_id(self._clock)
        if job_id == GLOBAL_TOPIC:
            raise ValueError(f"Job id is reserved: {job_id}")
        created = self._clock()

        with self._lock:
            if job_id in self._jobs:
                raise ValueError(f"Job already exists: {job_id}")
            self._jobs[job_id] = Job(id=job_id, created_at=created, updated_at=created)
            self._job_locks[job_id] = threading.Lock()

        logger.info(f"Job created: {job_id}")
        return job_id

    def get_job(self, job_id: str) -> Optional[Job]:
        with self._lock:
            return self._jobs.get(job_id)

    def list_jobs(self) -> list[Job]:
        with self._lock:
            return list(self._jobs.values())

    def update_progress(
        self,
        job_id: str,
        stage: Union[Stage, str],
        progress: float,
        message: str,
        details: Optional[ProgressDetails] = None,
    ) -> Optional[ProgressUpdate]:
        """
        Record a progress update and publish it.

        Progress is clamped to [0, 100]; status is derived from the stage.
        Unknown jobs and jobs already in a terminal state are logged and
        left untouched.

        Returns:
            The appended update, or None if nothing was recorded
        """
        entry = self._lookup(job_id)
        if entry is None:
            logger.warning(f"Job not found: {job_id}")
            return None

        job, lock = entry
        stage = Stage(stage)

        with lock:
            if job.is_terminal:
                logger.warning(
                    f"Ignoring {stage.value} update for {job.status.value} job {job_id}"
                )
                return None
            update = self._append(job, stage, progress, message, details)
            self._publish(update)

        logger.debug(f"{job_id}: {update.progress:.0f}% - {message}")
        return update

    def complete_job(
        self,
        job_id: str,
        result: Any = None,
        message: str = "Video plan generated successfully",
        details: Optional[ProgressDetails] = None,
    ) -> Optional[ProgressUpdate]:
        """Store the result and record the final complete update at 100%."""
        entry = self._lookup(job_id)
        if entry is None:
            logger.warning(f"Cannot complete unknown job: {job_id}")
            return None

        job, lock = entry
        with lock:
            if job.is_terminal:
                logger.warning(f"Cannot complete {job.status.value} job {job_id}")
                return None
            job.result = result
            update = self._append(job, Stage.COMPLETE, 100, message, details)
            self._publish(update)

        logger.info(f"Job completed: {job_id}")
        return update

    def fail_job(
        self,
        job_id: str,
        message: str,
        audit: Optional[dict[str, Any]] = None,
    ) -> Optional[ProgressUpdate]:
        """
        Mark a job failed.

        The final error update keeps the last known progress.

        Args:
            job_id: Job to fail
            message: Human-readable error
            audit: Optional data gathered before the failure (e.g. critiques)
        """
        entry = self._lookup(job_id)
        if entry is None:
            logger.warning(f"Cannot fail unknown job: {job_id}")
            return None

        job, lock = entry
        with lock:
            if job.is_terminal:
                logger.warning(f"Cannot fail {job.status.value} job {job_id}")
                return None
            job.error = message
            if audit:
                job.audit = audit
            update = self._append(job, Stage.ERROR, job.progress, f"Error: {message}")
            self._publish(update)

        logger.error(f"Job failed: {job_id}: {message}")
        return update

    def cleanup_old_jobs(self, max_age_ms: float = DEFAULT_MAX_AGE_MS) -> list[str]:
        """
        Remove jobs idle for longer than max_age_ms.

        Meant for the periodic sweep only. Subscriptions on removed jobs
        are closed.

        Returns:
            Ids of removed jobs
        """
        now = self._clock()

        with self._lock:
            stale = [
                job_id
                for job_id, job in self._jobs.items()
                if now - job.updated_at > max_age_ms
            ]
            for job_id in stale:
                del self._jobs[job_id]
                del self._job_locks[job_id]

        for job_id in stale:
            logger.info(f"Cleaned up old job: {job_id}")
            if self.broadcaster is not None:
                self.broadcaster.close_topic(job_id)

        return stale

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)

    def __contains__(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._jobs

    def _lookup(self, job_id: str) -> Optional[tuple[Job, threading.Lock]]:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return None
            return job, self._job_locks[job_id]

    def _append(
        self,
        job: Job,
        stage: Stage,
        progress: float,
        message: str,
        details: Optional[ProgressDetails] = None,
    ) -> ProgressUpdate:
        """Apply an update to a job. Caller holds the job lock."""
        update = ProgressUpdate(
            job_id=job.id,
            stage=stage,
            progress=clamp_progress(progress),
            message=message,
            details=details,
            timestamp=self._clock(),
        )
        job.progress = update.progress
        job.stage = stage
        job.status = JobStatus.from_stage(stage)
        job.history.append(update)
        job.updated_at = update.timestamp
        return update

    def _publish(self, update: ProgressUpdate):
        if self.broadcaster is None:
            return
        try:
            self.broadcaster.publish(update)
        except Exception as e:
            logger.error(f"Failed to publish update for {update.job_id}: {e}")
