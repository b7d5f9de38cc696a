"""
In-memory job store for the job-based transformation flow.

``POST /api/process`` creates a job and returns its ID at once; the browser
then polls ``GET /api/status/{jobId}`` while a background task advances the
job through ``pending → processing → completed`` (or ``failed``) and runs
the transform orchestrator.

When the admission queue has a backing store, each job joins it under its
own queue ID and calls upstream only once admitted, so jobs share the
concurrency ceiling with the queue-based flow.  While the ceiling is
reached the job keeps its place, reports its ``position`` and retries every
poll interval; after ``maximum_admission_wait_seconds`` it fails.

Jobs live in process memory only.  They are lost on restart and are not
shared between instances.
"""

import asyncio
import collections.abc
import dataclasses
import enum
import random
import string
import time

import structlog

import license_booth.admission_queue
import license_booth.exceptions
import license_booth.models
import license_booth.services.transform_orchestrator

logger = structlog.get_logger()

DEFAULT_PROGRESS_STEP_SECONDS = 0.8
DEFAULT_MAXIMUM_JOB_AGE_SECONDS = 24 * 60 * 60
DEFAULT_ADMISSION_POLL_INTERVAL_SECONDS = 5.0
DEFAULT_MAXIMUM_ADMISSION_WAIT_SECONDS = 300.0

QUEUE_BUSY_ERROR = "The booth is busy. Please try again in a moment."

PROCESSING_STARTED_PROGRESS = 10
INTERMEDIATE_PROGRESS_STEPS = (20, 40, 60, 80)
COMPLETED_PROGRESS = 100

_JOB_ID_ALPHABET = string.digits + string.ascii_lowercase


class JobStatus(enum.StrEnum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclasses.dataclass(frozen=True)
class TransformJob:
    """
    One transformation job.

    Instances are immutable; ``InMemoryJobStore.update_job`` swaps in a
    modified copy so a reader never observes a half-applied update.
    """

    id: str
    photo: license_booth.models.PhotoPayload
    name: str
    company: str
    commitment: str
    created_at: float
    status: JobStatus = JobStatus.PENDING
    progress: int = 0
    position: int | None = None
    transformed_photo_url: str | None = None
    message: str | None = None
    error: str | None = None


def generate_job_id() -> str:
    """Return a fresh job ID of the form ``job_<milliseconds>_<random base36>``."""
    random_suffix = "".join(random.choices(_JOB_ID_ALPHABET, k=6))
    return f"job_{int(time.time() * 1000)}_{random_suffix}"


class InMemoryJobStore:
    """
    Job registry with background progression.

    Args:
        transform_orchestrator: Runs the actual transformation.
        admission_queue: The shared queue.  Jobs go through it when it is
            enabled; ``None`` or a disabled queue calls upstream directly.
        progress_step_seconds: Pause between progress updates.
        admission_poll_interval_seconds: Pause between admission attempts
            while the ceiling is reached.
        maximum_admission_wait_seconds: How long a job may wait for
            admission before it fails.
        clock: Returns the current time in epoch seconds.
        sleep: Awaitable used for the pacing; injected by tests.
    """

    def __init__(
        self,
        transform_orchestrator: license_booth.services.transform_orchestrator.TransformOrchestrator,
        admission_queue: license_booth.admission_queue.AdmissionQueue | None = None,
        progress_step_seconds: float = DEFAULT_PROGRESS_STEP_SECONDS,
        admission_poll_interval_seconds: float = DEFAULT_ADMISSION_POLL_INTERVAL_SECONDS,
        maximum_admission_wait_seconds: float = DEFAULT_MAXIMUM_ADMISSION_WAIT_SECONDS,
        clock: collections.abc.Callable[[], float] = time.time,
        sleep: collections.abc.Callable[[float], collections.abc.Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._transform_orchestrator = transform_orchestrator
        self._admission_queue = admission_queue
        self._progress_step_seconds = progress_step_seconds
        self._admission_poll_interval_seconds = admission_poll_interval_seconds
        self._maximum_admission_wait_seconds = maximum_admission_wait_seconds
        self._clock = clock
        self._sleep = sleep
        self._jobs: dict[str, TransformJob] = {}
        self._progression_tasks: set[asyncio.Task] = set()

    def create_job(
        self,
        photo: license_booth.models.PhotoPayload,
        name: str,
        company: str,
        commitment: str,
    ) -> TransformJob:
        """
        Register a pending job and start its progression in the background.

        Must be called from within a running event loop.
        """
        transform_job = TransformJob(
            id=generate_job_id(),
            photo=photo,
            name=name,
            company=company,
            commitment=commitment,
            created_at=self._clock(),
        )
        self._jobs[transform_job.id] = transform_job

        progression_task = asyncio.create_task(self._run_progression(transform_job.id))
        self._progression_tasks.add(progression_task)
        progression_task.add_done_callback(self._progression_tasks.discard)

        logger.info("job_created", job_id=transform_job.id)
        return transform_job

    def get_job(self, job_id: str) -> TransformJob | None:
        return self._jobs.get(job_id)

    def update_job(self, job_id: str, **changes) -> TransformJob | None:
        """Apply ``changes`` to the job; unknown IDs are ignored."""
        transform_job = self._jobs.get(job_id)
        if transform_job is None:
            return None
        updated_job = dataclasses.replace(transform_job, **changes)
        self._jobs[job_id] = updated_job
        return updated_job

    def cleanup_old_jobs(self, maximum_age_seconds: float = DEFAULT_MAXIMUM_JOB_AGE_SECONDS) -> int:
        """
        Remove jobs created more than ``maximum_age_seconds`` ago.

        Returns:
            The number of jobs removed.
        """
        cutoff = self._clock() - maximum_age_seconds
        expired_job_ids = [job_id for job_id, transform_job in self._jobs.items() if transform_job.created_at < cutoff]
        for job_id in expired_job_ids:
            del self._jobs[job_id]

        if expired_job_ids:
            logger.info("old_jobs_removed", removed=len(expired_job_ids))
        return len(expired_job_ids)

    async def _run_progression(self, job_id: str) -> None:
        try:
            self.update_job(job_id, status=JobStatus.PROCESSING, progress=PROCESSING_STARTED_PROGRESS)
            for progress in INTERMEDIATE_PROGRESS_STEPS:
                await self._sleep(self._progress_step_seconds)
                self.update_job(job_id, progress=progress)

            transform_job = self._jobs.get(job_id)
            if transform_job is None:
                return

            transform_outcome = await self._transform_when_admitted(job_id, transform_job.photo)
            self.update_job(
                job_id,
                status=JobStatus.COMPLETED,
                progress=COMPLETED_PROGRESS,
                position=None,
                transformed_photo_url=transform_outcome.transformed_photo_url,
                message=transform_outcome.message,
            )
            logger.info("job_completed", job_id=job_id, fell_back=transform_outcome.fell_back)
        except license_booth.exceptions.QueueFullError:
            logger.warning("job_admission_timed_out", job_id=job_id)
            self.update_job(job_id, status=JobStatus.FAILED, position=None, error=QUEUE_BUSY_ERROR)
        except Exception as unexpected_error:
            logger.exception("job_failed", job_id=job_id)
            self.update_job(
                job_id,
                status=JobStatus.FAILED,
                position=None,
                error=f"The transformation failed: {type(unexpected_error).__name__}.",
            )

    async def _transform_when_admitted(
        self,
        job_id: str,
        photo: license_booth.models.PhotoPayload,
    ) -> license_booth.services.transform_orchestrator.TransformOutcome:
        """
        Run the orchestrator inside an admission slot of the shared queue.

        Raises:
            license_booth.exceptions.QueueFullError:
                When no slot frees up within the admission wait limit.
        """
        if self._admission_queue is None or not self._admission_queue.is_enabled:
            return await self._transform_orchestrator.transform(photo)

        queue_id = license_booth.admission_queue.generate_queue_id()
        await self._admission_queue.join(queue_id)
        admission_deadline = self._clock() + self._maximum_admission_wait_seconds

        try:
            while True:
                try:
                    return await self._transform_orchestrator.transform(photo, queue_id=queue_id)
                except license_booth.exceptions.QueueFullError:
                    if self._clock() >= admission_deadline:
                        raise

                queue_status = await self._admission_queue.status(queue_id)
                self.update_job(job_id, position=queue_status.position or None)
                logger.info("job_waiting_for_admission", job_id=job_id, position=queue_status.position)
                await self._sleep(self._admission_poll_interval_seconds)
        finally:
            await self._admission_queue.leave(queue_id)

    async def close(self) -> None:
        """Cancel every outstanding progression and wait for them to finish."""
        outstanding_tasks = list(self._progression_tasks)
        for progression_task in outstanding_tasks:
            progression_task.cancel()
        if outstanding_tasks:
            await asyncio.gather(*outstanding_tasks, return_exceptions=True)
