"""Pipeline controller: owns the post status state machine.

The controller admits posts into the GenerationQueue and reacts to the
queue's terminal job outcomes. It never retries generation itself; retries
belong to the queue.

Post Status Flow:
    selected → generating        trigger_generation (before the job exists)
    generating → generated       JobCompleted
    generating → selected        JobFailed (re-admitted by the next sweep)
    generating → failed          JobFailed with max_pipeline_failures reached
    generated → approved         approve_script
    any → selected               cancel_generation / reset_pipeline

Auto-trigger Sweep:
    Every check_interval seconds (and once at start) the sweep
    1. reverts posts stuck in generating without an active job
    2. triggers up to sweep_batch_size selected posts without an active job

Concurrency:
    All post status changes go through one asyncio.Lock per controller, so
    a sweep never observes the window between the status flip and the job
    insert of a concurrent trigger.
"""

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, replace
from datetime import datetime
from typing import Any

from orchestrator import config
from orchestrator.exceptions import (
    CANCELLED_BY_USER,
    InvalidStateTransitionError,
    NotFoundError,
)
from orchestrator.models import GenerationJob, JobStatus, PostStatus, utcnow
from orchestrator.notifications import EventType, NotificationBus
from orchestrator.queue import GenerationQueue, JobCompleted, JobFailed, JobOutcome
from orchestrator.schemas import GenerationParams
from orchestrator.store import JobStore, PostStore
from orchestrator.utils.logging import get_logger

log = get_logger(__name__)

STAGE_SCRIPT_GENERATION = "script_generation"
STAGE_SCRIPT_APPROVAL = "script_approval"
NEXT_STAGE = "asset_generation"

NextStageHook = Callable[[JobCompleted], Awaitable[None] | None]


@dataclass
class PipelineSettings:
    auto_trigger: bool = True
    check_interval: float = config.DEFAULT_CHECK_INTERVAL_SECONDS
    sweep_batch_size: int = 10
    default_style: str = config.DEFAULT_STYLE
    default_duration: int = config.DEFAULT_TARGET_DURATION
    # Failed jobs (excluding cancellations) after which a post becomes failed
    max_pipeline_failures: int | None = None
    # Weight of the newest sample in the average processing time
    metrics_smoothing: float = 0.2

    @classmethod
    def from_env(cls) -> "PipelineSettings":
        return cls(
            auto_trigger=config.get_auto_trigger(),
            check_interval=config.get_check_interval_seconds(),
            default_style=config.get_default_style(),
            default_duration=config.get_default_target_duration(),
        )


@dataclass
class PipelineMetrics:
    """Process-local counters; reset on restart."""

    total_processed: int = 0
    success_count: int = 0
    failure_count: int = 0
    average_processing_time: float = 0.0
    last_processed_at: datetime | None = None

    def record_success(self, duration_seconds: float, smoothing: float) -> None:
        self.total_processed += 1
        self.success_count += 1
        self.last_processed_at = utcnow()
        if self.success_count == 1:
            self.average_processing_time = duration_seconds
        else:
            self.average_processing_time = (
                smoothing * duration_seconds + (1 - smoothing) * self.average_processing_time
            )

    def record_failure(self) -> None:
        self.total_processed += 1
        self.failure_count += 1
        self.last_processed_at = utcnow()


@dataclass
class PipelineHistory:
    jobs: list[GenerationJob]
    current_status: PostStatus | None
    last_activity: datetime | None


class PipelineController:
    """Sequences posts through script generation."""

    def __init__(
        self,
        queue: GenerationQueue,
        job_store: JobStore,
        post_store: PostStore,
        bus: NotificationBus,
        settings: PipelineSettings | None = None,
        next_stage: NextStageHook | None = None,
    ):
        self.queue = queue
        self.job_store = job_store
        self.post_store = post_store
        self.bus = bus
        self.settings = settings or PipelineSettings()
        self.next_stage = next_stage

        self.metrics = PipelineMetrics()
        self._lock = asyncio.Lock()
        self._running = False
        self._sweep_task: asyncio.Task[None] | None = None

        queue.add_listener(self._on_job_outcome)

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            log.warning("pipeline_controller_already_running")
            return

        self._running = True
        await self.queue.start()
        log.info(
            "pipeline_controller_started",
            auto_trigger=self.settings.auto_trigger,
            check_interval=self.settings.check_interval,
        )

        if self.settings.auto_trigger:
            await self.sweep()
            self._sweep_task = asyncio.create_task(self._sweep_loop(), name="pipeline-sweep")

    async def stop(self) -> None:
        if not self._running:
            return

        self._running = False
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None

        await self.queue.stop()
        log.info("pipeline_controller_stopped")

    async def _sweep_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.settings.check_interval)
            if not self._running:
                break
            try:
                await self.sweep()
            except Exception as e:
                log.error("pipeline_sweep_failed", error=str(e), exc_info=True)

    async def sweep(self) -> list[str]:
        """Repair stuck posts, then admit eligible ones.

        Returns:
            Job ids admitted by this sweep.
        """
        await self._revert_stuck_posts()

        post_ids = await self.post_store.find_eligible(limit=self.settings.sweep_batch_size)
        if not post_ids:
            return []

        log.info("pipeline_sweep_found_posts", count=len(post_ids))
        return await self.trigger_batch_generation(post_ids)

    async def _revert_stuck_posts(self) -> None:
        """Move generating posts with no active job to their job's outcome.

        A completed latest job means the completion flip was lost, so the
        post becomes generated; otherwise it goes back to selected.
        """
        for post_id in await self.post_store.find_stuck_generating():
            async with self._lock:
                if await self.job_store.find_active_for_post(post_id) is not None:
                    continue
                if await self.post_store.get_status(post_id) != PostStatus.GENERATING:
                    continue

                jobs = await self.job_store.list_for_post(post_id)
                latest = jobs[0] if jobs else None
                target = (
                    PostStatus.GENERATED
                    if latest is not None and latest.status == JobStatus.COMPLETED
                    else PostStatus.SELECTED
                )
                await self.post_store.set_status(post_id, target)
                log.warning(
                    "stuck_post_reverted",
                    post_id=post_id,
                    to_status=target.value,
                    latest_job_id=latest.id if latest else None,
                )

    def _merge_params(
        self, params: GenerationParams | dict[str, Any] | None
    ) -> GenerationParams:
        merged: dict[str, Any] = {
            "style": self.settings.default_style,
            "target_duration": self.settings.default_duration,
        }
        if isinstance(params, GenerationParams):
            merged.update(params.model_dump(exclude_unset=True))
        elif params:
            merged.update(GenerationParams.model_validate(params).model_dump(exclude_unset=True))
        return GenerationParams.model_validate(merged)

    async def trigger_generation(
        self,
        post_id: str,
        params: GenerationParams | dict[str, Any] | None = None,
        priority: int | None = None,
    ) -> str:
        """Admit a post into the generation queue.

        Returns:
            The id of the new job, or of the post's already active job.

        Raises:
            NotFoundError: If the post does not exist.
            InvalidStateTransitionError: If the post cannot enter generating
                (e.g., it is approved or failed).
        """
        generation_params = self._merge_params(params)

        async with self._lock:
            status = await self.post_store.get_status(post_id)
            if status is None:
                raise NotFoundError("post", post_id)

            existing = await self.job_store.find_active_for_post(post_id)
            if existing is not None:
                log.warning("generation_already_in_progress", post_id=post_id, job_id=existing.id)
                # Job admitted directly through the queue: the post must still
                # reflect it so the outcome can land.
                if status == PostStatus.SELECTED:
                    await self.post_store.set_status(post_id, PostStatus.GENERATING)
                return existing.id

            previous = await self.post_store.set_status(post_id, PostStatus.GENERATING)
            try:
                job = await self.queue.create_job(post_id, generation_params, priority or 0)
            except Exception as e:
                log.error("generation_trigger_failed", post_id=post_id, error=str(e))
                await self.post_store.set_status(post_id, previous)
                raise

        self.bus.publish(
            EventType.PIPELINE_GENERATION_TRIGGERED,
            {"post_id": post_id, "job_id": job.id, "status": "triggered"},
        )
        log.info(
            "generation_triggered",
            post_id=post_id,
            job_id=job.id,
            style=generation_params.style,
            priority=priority or 0,
        )
        return job.id

    async def trigger_batch_generation(
        self,
        post_ids: list[str],
        params: GenerationParams | dict[str, Any] | None = None,
        priority: int | None = None,
    ) -> list[str]:
        """Trigger each post; failures are logged and skipped.

        Returns:
            Job ids of the posts that were admitted.
        """
        job_ids: list[str] = []
        for post_id in post_ids:
            try:
                job_ids.append(await self.trigger_generation(post_id, params, priority))
            except Exception as e:
                log.error(
                    "batch_trigger_item_failed",
                    post_id=post_id,
                    error=str(e),
                    error_type=type(e).__name__,
                )

        log.info("batch_generation_triggered", total_requested=len(post_ids), queued=len(job_ids))
        return job_ids

    async def _on_job_outcome(self, outcome: JobOutcome) -> None:
        if isinstance(outcome, JobCompleted):
            await self._on_completed(outcome)
        else:
            await self._on_failed(outcome)

    async def _on_completed(self, outcome: JobCompleted) -> None:
        async with self._lock:
            try:
                await self.post_store.set_status(outcome.post_id, PostStatus.GENERATED)
            except (InvalidStateTransitionError, NotFoundError) as e:
                log.warning(
                    "stale_job_outcome",
                    job_id=outcome.job_id,
                    post_id=outcome.post_id,
                    outcome="completed",
                    error=str(e),
                )
                return
            self.metrics.record_success(outcome.duration_seconds, self.settings.metrics_smoothing)

        self.bus.publish(
            EventType.PIPELINE_STAGE_COMPLETED,
            {
                "post_id": outcome.post_id,
                "job_id": outcome.job_id,
                "stage": STAGE_SCRIPT_GENERATION,
                "next_stage": NEXT_STAGE,
                "quality_score": outcome.quality_score,
            },
        )

        if self.next_stage is not None:
            try:
                result = self.next_stage(outcome)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                log.error(
                    "next_stage_trigger_failed",
                    post_id=outcome.post_id,
                    job_id=outcome.job_id,
                    error=str(e),
                    exc_info=True,
                )

    async def _on_failed(self, outcome: JobFailed) -> None:
        async with self._lock:
            target = PostStatus.SELECTED
            if self.settings.max_pipeline_failures is not None:
                failures = await self._count_failures(outcome.post_id)
                if failures >= self.settings.max_pipeline_failures:
                    target = PostStatus.FAILED

            try:
                await self.post_store.set_status(outcome.post_id, target)
            except (InvalidStateTransitionError, NotFoundError) as e:
                log.warning(
                    "stale_job_outcome",
                    job_id=outcome.job_id,
                    post_id=outcome.post_id,
                    outcome="failed",
                    error=str(e),
                )
                return
            self.metrics.record_failure()

        self.bus.publish(
            EventType.PIPELINE_STAGE_FAILED,
            {
                "post_id": outcome.post_id,
                "job_id": outcome.job_id,
                "stage": STAGE_SCRIPT_GENERATION,
                "error": outcome.error,
                "terminal": target == PostStatus.FAILED,
            },
        )

    async def _count_failures(self, post_id: str) -> int:
        jobs = await self.job_store.list_for_post(post_id)
        return sum(
            1
            for job in jobs
            if job.status == JobStatus.FAILED and job.error_message != CANCELLED_BY_USER
        )

    async def cancel_generation(self, post_id: str) -> bool:
        """Cancel the post's pending job and put the post back to selected.

        Returns:
            False when the post has no active job or its job is already
            processing (processing jobs run to completion).
        """
        async with self._lock:
            job = await self.job_store.find_active_for_post(post_id)
            if job is None:
                log.warning("no_active_generation_job", post_id=post_id)
                return False

            cancelled = await self.queue.cancel_job(job.id)
            if cancelled:
                await self.post_store.set_status(post_id, PostStatus.SELECTED)
                log.info("generation_cancelled", post_id=post_id, job_id=job.id)
            return cancelled

    async def reset_pipeline(self, post_id: str) -> None:
        """Cancel any pending generation and put the post back to selected.

        Raises:
            NotFoundError: If the post does not exist.
        """
        if await self.post_store.get_status(post_id) is None:
            raise NotFoundError("post", post_id)

        await self.cancel_generation(post_id)
        async with self._lock:
            await self.post_store.set_status(post_id, PostStatus.SELECTED)
        log.info("pipeline_reset", post_id=post_id)

    async def approve_script(self, post_id: str) -> None:
        """Approve a generated script (generated → approved).

        Raises:
            NotFoundError: If the post does not exist.
            InvalidStateTransitionError: If the post is not generated.
        """
        async with self._lock:
            await self.post_store.set_status(post_id, PostStatus.APPROVED)

        self.bus.publish(
            EventType.PIPELINE_STAGE_COMPLETED,
            {"post_id": post_id, "stage": STAGE_SCRIPT_APPROVAL, "next_stage": NEXT_STAGE},
        )
        log.info("script_approved", post_id=post_id)

    async def get_pipeline_history(self, post_id: str) -> PipelineHistory:
        jobs = await self.job_store.list_for_post(post_id)
        current_status = await self.post_store.get_status(post_id)

        last_activity = None
        if jobs:
            latest = jobs[0]
            last_activity = latest.completed_at or latest.started_at or latest.created_at

        return PipelineHistory(jobs=jobs, current_status=current_status, last_activity=last_activity)

    def get_metrics(self) -> PipelineMetrics:
        """Copy of the current metrics."""
        return replace(self.metrics)

    async def get_status(self) -> dict[str, Any]:
        stats = await self.queue.get_queue_stats()
        return {
            "is_running": self._running,
            "auto_trigger": self.settings.auto_trigger,
            "metrics": asdict(self.get_metrics()),
            "queue_stats": asdict(stats),
        }
