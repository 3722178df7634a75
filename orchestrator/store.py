"""Persistence layer for generation jobs, posts and script versions.

Every method opens its own short-lived session from the injected session
factory and commits before returning (short transaction pattern: load →
commit → use). No method holds a session across an await on an external
collaborator.

Architecture:
    - JobStore: generation_jobs rows (queue state, claim, recovery)
    - PostStore: posts rows (pipeline status, eligibility)
    - ScriptVersionStore: script_versions rows (versioning, retention)

Claiming:
    claim_next() selects the best eligible pending job
    (priority DESC, created_at ASC, available_at reached) with
    FOR UPDATE SKIP LOCKED on PostgreSQL, then flips it with a conditional
    UPDATE ... WHERE status='pending'. A rowcount of 0 means another worker
    won the race, and the claim is retried.
"""

from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import delete, exists, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from orchestrator.exceptions import NotFoundError
from orchestrator.models import (
    ACTIVE_JOB_STATUSES,
    TERMINAL_JOB_STATUSES,
    GenerationJob,
    JobStatus,
    Post,
    PostStatus,
    ScriptVersion,
    utcnow,
)
from orchestrator.schemas import PostSnapshot

log = structlog.get_logger()

# Error recorded on jobs found in processing at startup
ORPHANED_JOB_MESSAGE = "Worker stopped while job was processing"

CLAIM_RACE_RETRIES = 3


def _active_job_exists():
    """Correlated EXISTS clause: the post has a pending or processing job."""
    return exists().where(
        GenerationJob.post_id == Post.id,
        GenerationJob.status.in_(ACTIVE_JOB_STATUSES),
    )


class JobStore:
    """Durable storage of GenerationJob rows."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def insert(
        self,
        post_id: str,
        generation_params: dict[str, Any],
        priority: int = 0,
        max_attempts: int = 3,
    ) -> tuple[GenerationJob, bool]:
        """Persist a pending job unless the post already has an active one.

        Duplicate Detection Strategy:
            - Application check: return the pending/processing job if any
            - Partial unique index: a concurrent insert that slipped past the
              check raises IntegrityError; roll back and return the winner

        Returns:
            Tuple of (job, created). created is False when an existing
            active job was returned instead.

        Raises:
            NotFoundError: If the post does not exist.
        """
        async with self._session_factory() as session:
            existing = await self._find_active(session, post_id)
            if existing is not None:
                log.info(
                    "job_already_active",
                    post_id=post_id,
                    job_id=existing.id,
                    status=existing.status.value,
                )
                return existing, False

            if await session.get(Post, post_id) is None:
                raise NotFoundError("post", post_id)

            job = GenerationJob(
                post_id=post_id,
                status=JobStatus.PENDING,
                priority=priority,
                max_attempts=max_attempts,
                generation_params=generation_params,
            )
            session.add(job)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                existing = await self._find_active(session, post_id)
                if existing is None:
                    raise
                log.info("job_insert_race_lost", post_id=post_id, job_id=existing.id)
                return existing, False

            log.info("job_inserted", job_id=job.id, post_id=post_id, priority=priority)
            return job, True

    async def get(self, job_id: str) -> GenerationJob | None:
        async with self._session_factory() as session:
            return await session.get(GenerationJob, job_id)

    async def update_fields(self, job_id: str, **fields: Any) -> bool:
        """Set the given columns on one job.

        Returns:
            True if the job existed and was updated.
        """
        async with self._session_factory() as session:
            result = await session.execute(
                update(GenerationJob).where(GenerationJob.id == job_id).values(**fields)
            )
            await session.commit()
            return result.rowcount == 1

    async def transition(self, job_id: str, from_status: JobStatus, **fields: Any) -> bool:
        """Update a job only if it is still in from_status.

        Returns:
            True if the job was in from_status and was updated.
        """
        async with self._session_factory() as session:
            result = await session.execute(
                update(GenerationJob)
                .where(GenerationJob.id == job_id, GenerationJob.status == from_status)
                .values(**fields)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return result.rowcount == 1

    async def claim_next(self, worker_id: str) -> GenerationJob | None:
        """Atomically move the best eligible pending job to processing.

        Eligible: status pending and available_at NULL or in the past.
        Order: priority DESC, created_at ASC.

        Returns:
            The claimed job, or None when nothing is claimable.
        """
        for _ in range(CLAIM_RACE_RETRIES):
            now = utcnow()
            async with self._session_factory() as session:
                candidate_id = await session.scalar(
                    select(GenerationJob.id)
                    .where(
                        GenerationJob.status == JobStatus.PENDING,
                        or_(
                            GenerationJob.available_at.is_(None),
                            GenerationJob.available_at <= now,
                        ),
                    )
                    .order_by(GenerationJob.priority.desc(), GenerationJob.created_at.asc())
                    .limit(1)
                    .with_for_update(skip_locked=True)
                )
                if candidate_id is None:
                    await session.commit()
                    return None

                result = await session.execute(
                    update(GenerationJob)
                    .where(
                        GenerationJob.id == candidate_id,
                        GenerationJob.status == JobStatus.PENDING,
                    )
                    .values(
                        status=JobStatus.PROCESSING,
                        started_at=now,
                        worker_id=worker_id,
                        progress_percentage=0,
                    )
                    .execution_options(synchronize_session=False)
                )
                await session.commit()

                if result.rowcount == 1:
                    job = await session.get(GenerationJob, candidate_id, populate_existing=True)
                    log.info(
                        "job_claimed",
                        job_id=candidate_id,
                        post_id=job.post_id if job else None,
                        worker_id=worker_id,
                    )
                    return job

            log.debug("job_claim_race_lost", job_id=candidate_id, worker_id=worker_id)

        return None

    async def query_pending(self, limit: int | None = None) -> list[GenerationJob]:
        """Pending jobs in claim order (priority DESC, created_at ASC)."""
        stmt = (
            select(GenerationJob)
            .where(GenerationJob.status == JobStatus.PENDING)
            .order_by(GenerationJob.priority.desc(), GenerationJob.created_at.asc())
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        async with self._session_factory() as session:
            return list((await session.scalars(stmt)).all())

    async def query_by_status(self, status: JobStatus, limit: int = 10) -> list[GenerationJob]:
        """Jobs in the given status, newest first."""
        async with self._session_factory() as session:
            result = await session.scalars(
                select(GenerationJob)
                .where(GenerationJob.status == status)
                .order_by(GenerationJob.created_at.desc())
                .limit(limit)
            )
            return list(result.all())

    async def delete_older_than(
        self,
        cutoff: datetime,
        statuses: tuple[JobStatus, ...] = TERMINAL_JOB_STATUSES,
    ) -> int:
        """Delete jobs in statuses created before cutoff. Returns rows deleted."""
        async with self._session_factory() as session:
            result = await session.execute(
                delete(GenerationJob).where(
                    GenerationJob.status.in_(statuses),
                    GenerationJob.created_at < cutoff,
                )
            )
            await session.commit()
            return result.rowcount or 0

    async def count_by_status(self) -> dict[JobStatus, int]:
        """Job counts per status; statuses without jobs map to 0."""
        counts = {status: 0 for status in JobStatus}
        async with self._session_factory() as session:
            result = await session.execute(
                select(GenerationJob.status, func.count()).group_by(GenerationJob.status)
            )
            for status, count in result.all():
                counts[status] = count
        return counts

    async def find_active_for_post(self, post_id: str) -> GenerationJob | None:
        async with self._session_factory() as session:
            return await self._find_active(session, post_id)

    async def list_for_post(self, post_id: str) -> list[GenerationJob]:
        """All jobs of a post, newest first."""
        async with self._session_factory() as session:
            result = await session.scalars(
                select(GenerationJob)
                .where(GenerationJob.post_id == post_id)
                .order_by(GenerationJob.created_at.desc())
            )
            return list(result.all())

    async def queue_position(self, job_id: str) -> int:
        """1-based position of a pending job in claim order.

        Returns:
            Number of pending jobs ahead of this one plus 1, or 0 when the
            job is unknown or not pending.
        """
        async with self._session_factory() as session:
            job = await session.get(GenerationJob, job_id)
            if job is None or job.status != JobStatus.PENDING:
                return 0

            ahead = await session.scalar(
                select(func.count())
                .select_from(GenerationJob)
                .where(
                    GenerationJob.status == JobStatus.PENDING,
                    GenerationJob.id != job.id,
                    or_(
                        GenerationJob.priority > job.priority,
                        (GenerationJob.priority == job.priority)
                        & (GenerationJob.created_at < job.created_at),
                    ),
                )
            )
            return (ahead or 0) + 1

    async def average_processing_time_ms(self, sample_size: int = 1000) -> float:
        """Mean started→completed time of the most recent completed jobs."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(GenerationJob.started_at, GenerationJob.completed_at)
                .where(
                    GenerationJob.status == JobStatus.COMPLETED,
                    GenerationJob.started_at.is_not(None),
                    GenerationJob.completed_at.is_not(None),
                )
                .order_by(GenerationJob.completed_at.desc())
                .limit(sample_size)
            )
            durations = [
                (completed_at - started_at).total_seconds() * 1000
                for started_at, completed_at in result.all()
            ]
        if not durations:
            return 0.0
        return sum(durations) / len(durations)

    async def recover_orphaned(self) -> tuple[int, int]:
        """Release jobs left in processing by a stopped worker.

        The interrupted run counts as an attempt: the job goes back to
        pending while attempts remain, otherwise it fails.

        Returns:
            Tuple of (requeued, failed) counts.
        """
        requeued = failed = 0
        now = utcnow()
        async with self._session_factory() as session:
            result = await session.scalars(
                select(GenerationJob).where(GenerationJob.status == JobStatus.PROCESSING)
            )
            for job in result.all():
                job.attempts += 1
                job.error_message = ORPHANED_JOB_MESSAGE
                job.worker_id = None
                if job.attempts >= job.max_attempts:
                    job.status = JobStatus.FAILED
                    job.completed_at = now
                    failed += 1
                else:
                    job.status = JobStatus.PENDING
                    job.started_at = None
                    job.progress_percentage = 0
                    job.available_at = None
                    requeued += 1
            await session.commit()

        if requeued or failed:
            log.warning("orphaned_jobs_recovered", requeued=requeued, failed=failed)
        return requeued, failed

    @staticmethod
    async def _find_active(session: AsyncSession, post_id: str) -> GenerationJob | None:
        return await session.scalar(
            select(GenerationJob)
            .where(
                GenerationJob.post_id == post_id,
                GenerationJob.status.in_(ACTIVE_JOB_STATUSES),
            )
            .limit(1)
        )


class PostStore:
    """Access to Post rows and their pipeline status."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get_snapshot(self, post_id: str) -> PostSnapshot | None:
        async with self._session_factory() as session:
            post = await session.get(Post, post_id)
            if post is None:
                return None
            return PostSnapshot.model_validate(post)

    async def get_status(self, post_id: str) -> PostStatus | None:
        async with self._session_factory() as session:
            return await session.scalar(select(Post.status).where(Post.id == post_id))

    async def set_status(self, post_id: str, status: PostStatus) -> PostStatus:
        """Change a post's status, enforcing Post.VALID_TRANSITIONS.

        Returns:
            The previous status.

        Raises:
            NotFoundError: If the post does not exist.
            InvalidStateTransitionError: If the transition is not allowed.
        """
        async with self._session_factory() as session:
            post = await session.get(Post, post_id)
            if post is None:
                raise NotFoundError("post", post_id)
            previous = post.status
            post.status = status
            await session.commit()

        if previous != status:
            log.info(
                "post_status_changed",
                post_id=post_id,
                from_status=previous.value,
                to_status=status.value,
            )
        return previous

    async def find_eligible(self, limit: int = 10) -> list[str]:
        """Ids of selected posts without an active job, oldest first."""
        async with self._session_factory() as session:
            result = await session.scalars(
                select(Post.id)
                .where(Post.status == PostStatus.SELECTED, ~_active_job_exists())
                .order_by(Post.created_at.asc())
                .limit(limit)
            )
            return list(result.all())

    async def find_stuck_generating(self) -> list[str]:
        """Ids of posts in generating whose job is no longer active."""
        async with self._session_factory() as session:
            result = await session.scalars(
                select(Post.id).where(Post.status == PostStatus.GENERATING, ~_active_job_exists())
            )
            return list(result.all())


class ScriptVersionStore:
    """Versioned storage of generated scripts.

    Retention Policy:
        Each new version becomes the post's only active version. Versions
        beyond ScriptVersion.MAX_VERSIONS_PER_POST (oldest first) are deleted.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def create_version(
        self,
        post_id: str,
        script: dict[str, Any],
        generation_params: dict[str, Any],
        quality_score: int | None = None,
        generation_duration_ms: int | None = None,
        job_id: str | None = None,
    ) -> ScriptVersion:
        async with self._session_factory() as session:
            latest = await session.scalar(
                select(func.max(ScriptVersion.version_number)).where(
                    ScriptVersion.post_id == post_id
                )
            )
            await session.execute(
                update(ScriptVersion)
                .where(ScriptVersion.post_id == post_id, ScriptVersion.is_active.is_(True))
                .values(is_active=False)
                .execution_options(synchronize_session=False)
            )

            version = ScriptVersion(
                post_id=post_id,
                job_id=job_id,
                version_number=(latest or 0) + 1,
                script=script,
                generation_params=generation_params,
                quality_score=quality_score,
                generation_duration_ms=generation_duration_ms,
                is_active=True,
            )
            session.add(version)
            await session.flush()

            stale_ids = (
                await session.scalars(
                    select(ScriptVersion.id)
                    .where(ScriptVersion.post_id == post_id)
                    .order_by(ScriptVersion.version_number.desc())
                    .offset(ScriptVersion.MAX_VERSIONS_PER_POST)
                )
            ).all()
            if stale_ids:
                await session.execute(
                    delete(ScriptVersion).where(ScriptVersion.id.in_(stale_ids))
                )

            await session.commit()

        log.info(
            "script_version_created",
            post_id=post_id,
            version_number=version.version_number,
            quality_score=quality_score,
            pruned=len(stale_ids),
        )
        return version

    async def get_active(self, post_id: str) -> ScriptVersion | None:
        async with self._session_factory() as session:
            return await session.scalar(
                select(ScriptVersion).where(
                    ScriptVersion.post_id == post_id,
                    ScriptVersion.is_active.is_(True),
                )
            )

    async def list_versions(self, post_id: str) -> list[ScriptVersion]:
        """Retained versions of a post, newest first."""
        async with self._session_factory() as session:
            result = await session.scalars(
                select(ScriptVersion)
                .where(ScriptVersion.post_id == post_id)
                .order_by(ScriptVersion.version_number.desc())
            )
            return list(result.all())

    async def update_quality_score(self, version_id: str, quality_score: int) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                update(ScriptVersion)
                .where(ScriptVersion.id == version_id)
                .values(quality_score=quality_score)
            )
            await session.commit()
            return result.rowcount == 1
