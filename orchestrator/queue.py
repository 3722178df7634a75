"""Priority job queue for script generation.

GenerationQueue admits pending GenerationJob rows under a concurrency cap,
runs each through the GenerationExecutor, retries failures and reports
terminal outcomes to its listeners (the PipelineController).

Admission:
    - One admission task claims jobs while fewer than max_concurrent run
    - Claim order: priority DESC, created_at ASC (FIFO within a priority)
    - Each claimed job runs as its own asyncio task, tracked in-flight
    - When nothing is claimable the loop waits on a wake-up event (set by
      create_job, job completion and retry timers) or idle_poll_interval

Execution:
    - Progress estimate every progress_interval seconds:
      min(90, elapsed / expected_duration * 100), persisted and published
    - Hard deadline: processing_timeout (expiry counts as a failure)
    - Failure: attempts + 1, back to pending with available_at =
      now + retry_delay * retry_backoff ** (attempts - 1) while
      attempts < max_attempts, otherwise failed
    - ValidationFailure fails the job immediately (already regenerated),
      keeping the gate score on the job
    - An outcome that cannot be written counts as a failed attempt; if that
      write fails too the job is released back to pending

Outcome Channel:
    Listeners registered with add_listener() receive JobCompleted or
    JobFailed for terminal outcomes only. Listener errors are logged and
    never affect the queue.
"""

import asyncio
import inspect
import os
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Protocol

from orchestrator import config
from orchestrator.exceptions import CANCELLED_BY_USER, ValidationFailure
from orchestrator.models import GenerationJob, JobStatus, utcnow
from orchestrator.notifications import EventType, NotificationBus
from orchestrator.schemas import GenerationParams
from orchestrator.store import JobStore
from orchestrator.utils.logging import get_logger

log = get_logger(__name__)


@dataclass
class QueueSettings:
    """Tuning knobs of the GenerationQueue (all durations in seconds)."""

    max_concurrent: int = config.DEFAULT_MAX_CONCURRENT
    max_attempts: int = config.DEFAULT_MAX_ATTEMPTS
    retry_delay: float = config.DEFAULT_RETRY_DELAY_SECONDS
    retry_backoff: float = 1.0
    processing_timeout: float = config.DEFAULT_PROCESSING_TIMEOUT_SECONDS
    expected_duration: float = config.DEFAULT_EXPECTED_DURATION_SECONDS
    progress_interval: float = 2.0
    idle_poll_interval: float = 1.0
    worker_id: str = field(default_factory=lambda: f"worker-{os.getpid()}")

    @classmethod
    def from_env(cls) -> "QueueSettings":
        return cls(
            max_concurrent=config.get_max_concurrent_generations(),
            max_attempts=config.get_max_attempts(),
            retry_delay=config.get_retry_delay_seconds(),
            retry_backoff=config.get_retry_backoff(),
            processing_timeout=config.get_processing_timeout_seconds(),
            expected_duration=config.get_expected_duration_seconds(),
            worker_id=config.get_worker_id(),
        )

    def retry_delay_for(self, attempts: int) -> float:
        """Delay before retrying a job that has failed `attempts` times."""
        return self.retry_delay * self.retry_backoff ** max(0, attempts - 1)


@dataclass(frozen=True)
class JobCompleted:
    job_id: str
    post_id: str
    duration_seconds: float
    quality_score: int | None = None


@dataclass(frozen=True)
class JobFailed:
    job_id: str
    post_id: str
    error: str
    attempts: int


JobOutcome = JobCompleted | JobFailed
OutcomeListener = Callable[[JobOutcome], Awaitable[None] | None]


@dataclass
class QueueStats:
    """Aggregate queue view, recomputed from the job store on every call.

    avg_processing_time_ms: mean claim→completion time of completed jobs.
    success_rate: completed / (completed + failed) as a percentage.
    """

    pending: int
    processing: int
    completed: int
    failed: int
    avg_processing_time_ms: float
    success_rate: float


class JobExecutor(Protocol):
    async def execute(self, job: GenerationJob) -> Any: ...


class GenerationQueue:
    """Concurrency-capped priority queue backed by the generation_jobs table."""

    def __init__(
        self,
        job_store: JobStore,
        executor: JobExecutor,
        bus: NotificationBus,
        settings: QueueSettings | None = None,
    ):
        self.job_store = job_store
        self.executor = executor
        self.bus = bus
        self.settings = settings or QueueSettings()

        self._running = False
        self._wake = asyncio.Event()
        self._admission_task: asyncio.Task[None] | None = None
        self._in_flight: dict[str, asyncio.Task[None]] = {}
        self._retry_timers: set[asyncio.TimerHandle] = set()
        self._listeners: list[OutcomeListener] = []

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def active_count(self) -> int:
        return len(self._in_flight)

    def add_listener(self, listener: OutcomeListener) -> None:
        """Register a callback for terminal job outcomes."""
        self._listeners.append(listener)

    async def create_job(
        self,
        post_id: str,
        params: GenerationParams | dict[str, Any] | None = None,
        priority: int = 0,
    ) -> GenerationJob:
        """Queue a generation job for a post.

        Returns the post's existing pending/processing job instead of
        creating a second one.

        Raises:
            NotFoundError: If the post does not exist.
        """
        if not isinstance(params, GenerationParams):
            params = GenerationParams.model_validate(params or {})

        job, created = await self.job_store.insert(
            post_id,
            params.model_dump(mode="json"),
            priority=priority,
            max_attempts=self.settings.max_attempts,
        )
        if not created:
            return job

        position = await self.job_store.queue_position(job.id)
        self.bus.publish(
            EventType.JOB_CREATED,
            {
                "job_id": job.id,
                "post_id": post_id,
                "priority": priority,
                "queue_position": position,
            },
        )
        log.info("job_created", job_id=job.id, post_id=post_id, priority=priority, queue_position=position)
        self._wake.set()
        return job

    async def start(self) -> None:
        """Recover orphaned jobs and launch the admission loop."""
        if self._running:
            log.warning("generation_queue_already_running")
            return

        await self.job_store.recover_orphaned()
        self._running = True
        self._wake.set()
        self._admission_task = asyncio.create_task(
            self._admission_loop(), name="generation-queue-admission"
        )
        log.info(
            "generation_queue_started",
            max_concurrent=self.settings.max_concurrent,
            worker_id=self.settings.worker_id,
        )

    async def stop(self) -> None:
        """Stop admitting jobs and wait for in-flight executions to finish."""
        if not self._running:
            return

        self._running = False
        self._wake.set()
        for handle in self._retry_timers:
            handle.cancel()
        self._retry_timers.clear()

        if self._admission_task is not None:
            await self._admission_task
            self._admission_task = None

        in_flight = list(self._in_flight.values())
        if in_flight:
            log.info("generation_queue_draining", in_flight=len(in_flight))
            await asyncio.gather(*in_flight, return_exceptions=True)

        log.info("generation_queue_stopped")

    async def _admission_loop(self) -> None:
        while self._running:
            self._wake.clear()

            while self._running and len(self._in_flight) < self.settings.max_concurrent:
                try:
                    job = await self.job_store.claim_next(self.settings.worker_id)
                except Exception as e:
                    log.error("job_claim_failed", error=str(e), exc_info=True)
                    break
                if job is None:
                    break
                if not self._running:
                    await self._release(job)
                    break
                self._dispatch(job)

            if not self._running:
                break
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self.settings.idle_poll_interval)
            except asyncio.TimeoutError:
                pass

    async def _release(self, job: GenerationJob) -> None:
        """Hand a claimed job back to pending for the next claim."""
        await self.job_store.transition(
            job.id,
            JobStatus.PROCESSING,
            status=JobStatus.PENDING,
            started_at=None,
            worker_id=None,
        )
        log.info("job_released", job_id=job.id)

    def _dispatch(self, job: GenerationJob) -> None:
        task = asyncio.create_task(self._execute(job), name=f"generation-job-{job.id}")
        self._in_flight[job.id] = task

        def _handle_execution_done(done: asyncio.Task[None], job_id: str = job.id) -> None:
            self._in_flight.pop(job_id, None)
            if not done.cancelled() and done.exception() is not None:
                log.error(
                    "job_execution_crashed",
                    job_id=job_id,
                    error=str(done.exception()),
                    error_type=type(done.exception()).__name__,
                )
            self._wake.set()

        task.add_done_callback(_handle_execution_done)

    async def _execute(self, job: GenerationJob) -> None:
        job_log = log.bind(job_id=job.id, post_id=job.post_id, attempt=job.attempts + 1)
        started = time.monotonic()

        self.bus.publish(
            EventType.JOB_STARTED,
            {
                "job_id": job.id,
                "post_id": job.post_id,
                "attempt": job.attempts + 1,
                "started_at": utcnow().isoformat(),
            },
        )
        job_log.info("job_started", worker_id=self.settings.worker_id)

        stop_progress = asyncio.Event()
        progress_task = asyncio.create_task(self._report_progress(job, started, stop_progress))

        try:
            try:
                result = await asyncio.wait_for(
                    self.executor.execute(job),
                    timeout=self.settings.processing_timeout,
                )
            finally:
                stop_progress.set()
                await progress_task
        except ValidationFailure as e:
            job_log.warning("job_failed_quality_gate", score=e.score)
            await self._settle(
                job, self._fail(job, str(e), job.attempts + 1, quality_score=e.score)
            )
        except asyncio.TimeoutError:
            await self._settle(
                job,
                self._handle_failure(
                    job, f"Generation timed out after {self.settings.processing_timeout:g}s"
                ),
            )
        except Exception as e:
            job_log.error("generation_failed", error=str(e), error_type=type(e).__name__)
            await self._settle(job, self._handle_failure(job, str(e) or type(e).__name__))
        else:
            await self._settle(job, self._complete(job, result, time.monotonic() - started))

    async def _settle(self, job: GenerationJob, outcome: Awaitable[None]) -> None:
        """Record a job outcome; never leave the job processing if that fails.

        A failed write is treated as a failed attempt. If even that cannot be
        recorded the job is handed back to pending so the next claim (or
        recover_orphaned on restart) picks it up.
        """
        try:
            await outcome
            return
        except Exception as e:
            error = f"Failed to record job outcome: {e}"
            log.error(
                "job_outcome_persist_failed", job_id=job.id, post_id=job.post_id, error=str(e)
            )

        try:
            await self._handle_failure(job, error)
        except Exception as e:
            log.error("job_failure_persist_failed", job_id=job.id, error=str(e))
            try:
                await self._release(job)
            except Exception as release_error:
                log.error(
                    "job_release_failed",
                    job_id=job.id,
                    error=str(release_error),
                    exc_info=True,
                )

    async def _report_progress(self, job: GenerationJob, started: float, stop: asyncio.Event) -> None:
        """Publish a time-based progress estimate until stop is set."""
        while True:
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.settings.progress_interval)
                return
            except asyncio.TimeoutError:
                pass

            elapsed = time.monotonic() - started
            progress = min(90, int(elapsed / self.settings.expected_duration * 100))
            try:
                await self.job_store.update_fields(job.id, progress_percentage=progress)
            except Exception as e:
                log.warning("progress_update_failed", job_id=job.id, error=str(e))
            self.bus.publish(
                EventType.JOB_PROGRESS,
                {"job_id": job.id, "post_id": job.post_id, "progress": progress},
            )

    async def _complete(self, job: GenerationJob, result: Any, duration_seconds: float) -> None:
        quality_score = getattr(result, "quality_score", None)
        await self.job_store.update_fields(
            job.id,
            status=JobStatus.COMPLETED,
            progress_percentage=100,
            completed_at=utcnow(),
            error_message=None,
            quality_score=quality_score,
        )

        payload: dict[str, Any] = {
            "job_id": job.id,
            "post_id": job.post_id,
            "duration_seconds": round(duration_seconds, 3),
            "quality_score": quality_score,
        }
        for key in ("script_version_id", "version_number", "regenerated"):
            if hasattr(result, key):
                payload[key] = getattr(result, key)
        self.bus.publish(EventType.JOB_COMPLETED, payload)
        log.info(
            "job_completed",
            job_id=job.id,
            post_id=job.post_id,
            duration_seconds=round(duration_seconds, 3),
            quality_score=quality_score,
        )

        await self._notify(
            JobCompleted(
                job_id=job.id,
                post_id=job.post_id,
                duration_seconds=duration_seconds,
                quality_score=quality_score,
            )
        )

    async def _handle_failure(self, job: GenerationJob, error: str) -> None:
        attempts = job.attempts + 1
        if attempts >= job.max_attempts:
            await self._fail(job, error, attempts)
            return

        delay = self.settings.retry_delay_for(attempts)
        await self.job_store.update_fields(
            job.id,
            status=JobStatus.PENDING,
            attempts=attempts,
            error_message=error,
            started_at=None,
            worker_id=None,
            progress_percentage=0,
            available_at=utcnow() + timedelta(seconds=delay),
        )
        log.warning(
            "job_retry_scheduled",
            job_id=job.id,
            post_id=job.post_id,
            attempts=attempts,
            max_attempts=job.max_attempts,
            retry_in_seconds=delay,
            error=error,
        )
        self._schedule_wake(delay)

    async def _fail(
        self, job: GenerationJob, error: str, attempts: int, quality_score: int | None = None
    ) -> None:
        fields: dict[str, Any] = {}
        if quality_score is not None:
            fields["quality_score"] = quality_score
        await self.job_store.update_fields(
            job.id,
            status=JobStatus.FAILED,
            attempts=attempts,
            error_message=error,
            completed_at=utcnow(),
            **fields,
        )
        self.bus.publish(
            EventType.JOB_FAILED,
            {"job_id": job.id, "post_id": job.post_id, "error": error, "attempts": attempts},
        )
        log.error("job_failed", job_id=job.id, post_id=job.post_id, attempts=attempts, error=error)

        await self._notify(JobFailed(job_id=job.id, post_id=job.post_id, error=error, attempts=attempts))

    def _schedule_wake(self, delay: float) -> None:
        if not self._running:
            return
        handle: asyncio.TimerHandle

        def _wake_after_retry_delay() -> None:
            self._retry_timers.discard(handle)
            self._wake.set()

        handle = asyncio.get_running_loop().call_later(delay, _wake_after_retry_delay)
        self._retry_timers.add(handle)

    async def _notify(self, outcome: JobOutcome) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(outcome)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                log.error(
                    "job_listener_failed",
                    job_id=outcome.job_id,
                    post_id=outcome.post_id,
                    outcome=type(outcome).__name__,
                    error=str(e),
                    exc_info=True,
                )

    async def cancel_job(self, job_id: str) -> bool:
        """Fail a pending job with "Cancelled by user".

        Processing and terminal jobs are left untouched.

        Returns:
            True if the job was pending and is now cancelled.
        """
        cancelled = await self.job_store.transition(
            job_id,
            JobStatus.PENDING,
            status=JobStatus.FAILED,
            error_message=CANCELLED_BY_USER,
            completed_at=utcnow(),
        )
        if not cancelled:
            log.info("job_cancel_rejected", job_id=job_id)
            return False

        job = await self.job_store.get(job_id)
        self.bus.publish(
            EventType.JOB_FAILED,
            {
                "job_id": job_id,
                "post_id": job.post_id if job else None,
                "error": CANCELLED_BY_USER,
                "cancelled": True,
            },
        )
        log.info("job_cancelled", job_id=job_id)
        return True

    async def get_job(self, job_id: str) -> GenerationJob | None:
        return await self.job_store.get(job_id)

    async def get_queue_position(self, job_id: str) -> int:
        return await self.job_store.queue_position(job_id)

    async def get_queue_stats(self) -> QueueStats:
        counts = await self.job_store.count_by_status()
        avg_ms = await self.job_store.average_processing_time_ms()

        completed = counts[JobStatus.COMPLETED]
        failed = counts[JobStatus.FAILED]
        finished = completed + failed
        return QueueStats(
            pending=counts[JobStatus.PENDING],
            processing=counts[JobStatus.PROCESSING],
            completed=completed,
            failed=failed,
            avg_processing_time_ms=avg_ms,
            success_rate=(completed / finished * 100) if finished else 0.0,
        )

    async def get_jobs_by_status(self, status: JobStatus, limit: int = 10) -> list[GenerationJob]:
        return await self.job_store.query_by_status(status, limit)

    async def cleanup_old_jobs(self, days_old: int = 7) -> int:
        """Delete completed and failed jobs created more than days_old days ago."""
        cutoff = utcnow() - timedelta(days=days_old)
        deleted = await self.job_store.delete_older_than(cutoff)
        log.info("old_jobs_cleaned_up", days_old=days_old, deleted=deleted)
        return deleted
