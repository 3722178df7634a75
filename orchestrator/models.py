"""SQLAlchemy 2.0 ORM models.

This module contains all SQLAlchemy models for the orchestration core.
All models use the Mapped[type] annotation pattern required by SQLAlchemy 2.0.

Tables:
    posts: Content items moving through the pipeline (the pipeline record).
    generation_jobs: Units of script generation work claimed by the queue.
    script_versions: Scripts produced for a post, with their quality score.

Timestamps are stored as UTC. SQLite returns them timezone-naive, so code
never mixes loaded timestamps with datetime.now() in Python arithmetic;
comparisons against "now" happen in SQL.
"""

import enum
import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship, validates

from orchestrator.exceptions import InvalidStateTransitionError


def utcnow() -> datetime:
    """Get current UTC datetime (timezone-aware)."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    """Generate an opaque identifier for a new row."""
    return str(uuid.uuid4())


class JobStatus(enum.Enum):
    """Generation job lifecycle.

    Flow:
        pending → processing → completed
        processing → pending (retry, attempts < max_attempts)
        processing → failed (attempts exhausted or terminal validation failure)
        pending → failed (cancelled by user)
    """

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


# A post may have at most one job in these statuses
ACTIVE_JOB_STATUSES = (JobStatus.PENDING, JobStatus.PROCESSING)
TERMINAL_JOB_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED)


class PostStatus(enum.Enum):
    """Coarse pipeline status of a post, written only by the PipelineController.

    Pipeline Flow (Happy Path):
        selected → generating → generated → approved

    Failure Flow:
        generating → selected (job failed, eligible for re-admission)
        generating → failed (failure budget exhausted, terminal until reset)

    Manual re-drive:
        any status → selected (reset_pipeline)
    """

    SELECTED = "selected"
    GENERATING = "generating"
    GENERATED = "generated"
    APPROVED = "approved"
    FAILED = "failed"


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class Post(Base):
    """Content item selected for video script generation.

    Attributes:
        id: Source identifier of the post (e.g., Reddit post id).
        title: Post title.
        content: Post body text.
        author: Post author.
        subreddit: Community the post was taken from.
        score: Source score at selection time.
        upvotes: Upvote count at selection time.
        comments: Comment count at selection time.
        url: Permalink to the source.
        status: Pipeline status (PostStatus, indexed).
        created_at: Selection timestamp (UTC).
        updated_at: Last status change timestamp (UTC, auto-updated).
        jobs: Generation jobs created for this post.
    """

    __tablename__ = "posts"

    # Only transitions listed here are allowed, enforced by @validates.
    # SELECTED is reachable from every status (manual reset).
    VALID_TRANSITIONS = {
        PostStatus.SELECTED: [PostStatus.GENERATING, PostStatus.FAILED],
        PostStatus.GENERATING: [PostStatus.GENERATED, PostStatus.SELECTED, PostStatus.FAILED],
        PostStatus.GENERATED: [PostStatus.APPROVED, PostStatus.GENERATING, PostStatus.SELECTED],
        PostStatus.APPROVED: [PostStatus.SELECTED],
        PostStatus.FAILED: [PostStatus.SELECTED],
    }

    id: Mapped[str] = mapped_column(String(50), primary_key=True)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False, default="")
    author: Mapped[str | None] = mapped_column(String(100), nullable=True)
    subreddit: Mapped[str | None] = mapped_column(String(100), nullable=True)
    score: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    upvotes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    comments: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    url: Mapped[str | None] = mapped_column(String(500), nullable=True)

    status: Mapped[PostStatus] = mapped_column(
        Enum(
            PostStatus,
            native_enum=True,
            name="poststatus",
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
        default=PostStatus.SELECTED,
        index=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    jobs: Mapped[list["GenerationJob"]] = relationship(
        "GenerationJob",
        back_populates="post",
        cascade="all, delete-orphan",
    )

    @validates("status")
    def validate_status_change(self, key: str, value: PostStatus) -> PostStatus:
        """Validate status transition before it reaches the database.

        Args:
            key: The attribute name being validated (always "status").
            value: The new PostStatus value being assigned.

        Returns:
            The validated PostStatus value if transition is valid.

        Raises:
            InvalidStateTransitionError: If the transition is not listed in
                VALID_TRANSITIONS.

        Note:
            - Validation is skipped on creation (status is None)
            - Re-assigning the current status is a no-op, not an error
        """
        if self.status is None or self.status == value:
            return value

        allowed_transitions = self.VALID_TRANSITIONS.get(self.status, [])
        if value not in allowed_transitions:
            raise InvalidStateTransitionError(
                f"Invalid transition: {self.status.value} → {value.value}",
                from_status=self.status,
                to_status=value,
            )

        return value

    def __repr__(self) -> str:
        """Return string representation for debugging."""
        return f"<Post(id={self.id!r}, title={self.title[:40]!r}, status={self.status.value!r})>"


class GenerationJob(Base):
    """Script generation job claimed and executed by the GenerationQueue.

    Ordering:
        Workers claim pending jobs by priority (higher first), then FIFO by
        created_at. available_at delays a retried job until its retry delay
        has elapsed.

    Dedup Invariant:
        At most one job per post may be pending or processing. The partial
        unique index uq_generation_jobs_active_post enforces this even when
        two admissions race.

    Attributes:
        id: Opaque job identifier.
        post_id: Post the job generates a script for.
        status: Job lifecycle status (JobStatus).
        priority: Integer priority (higher = sooner).
        attempts: Failed attempts so far.
        max_attempts: Attempts allowed before the job fails.
        generation_params: Requested style/target duration/scene count (JSON).
        progress_percentage: Estimated progress (0-100).
        error_message: Last failure message.
        quality_score: Final quality gate score of the produced script.
        worker_id: Worker that claimed the job.
        created_at: Creation timestamp (UTC).
        available_at: Earliest claim time after a retry (UTC, nullable).
        started_at: Claim timestamp (UTC, cleared on retry).
        completed_at: Terminal timestamp (UTC).
    """

    __tablename__ = "generation_jobs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    post_id: Mapped[str] = mapped_column(
        String(50),
        ForeignKey("posts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    status: Mapped[JobStatus] = mapped_column(
        Enum(
            JobStatus,
            native_enum=True,
            name="jobstatus",
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
        default=JobStatus.PENDING,
    )
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)

    generation_params: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    progress_percentage: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    quality_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    worker_id: Mapped[str | None] = mapped_column(String(100), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )
    available_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    post: Mapped["Post"] = relationship("Post", back_populates="jobs")

    __table_args__ = (
        # Claim query: WHERE status='pending' ORDER BY priority DESC, created_at ASC
        Index("ix_generation_jobs_status_priority_created", "status", "priority", "created_at"),
        Index(
            "uq_generation_jobs_active_post",
            "post_id",
            unique=True,
            sqlite_where=text("status IN ('pending', 'processing')"),
            postgresql_where=text("status IN ('pending', 'processing')"),
        ),
    )

    @property
    def is_active(self) -> bool:
        """Whether the job is pending or processing."""
        return self.status in ACTIVE_JOB_STATUSES

    @property
    def processing_time_seconds(self) -> float | None:
        """Seconds between claim and completion, or None if not completed."""
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    def __repr__(self) -> str:
        """Return string representation for debugging."""
        return (
            f"<GenerationJob(id={self.id:.8}, post_id={self.post_id!r}, "
            f"status={self.status.value!r}, priority={self.priority}, "
            f"attempts={self.attempts}/{self.max_attempts})>"
        )


class ScriptVersion(Base):
    """Generated script stored for a post.

    Every completed generation job stores one version. Only one version per
    post is active (the latest), and only the newest MAX_VERSIONS_PER_POST
    are retained.

    Attributes:
        id: Version identifier.
        post_id: Post the script belongs to.
        job_id: Job that produced the script (nullable for imported scripts).
        version_number: 1-based sequence per post.
        script: Generated script payload (JSON).
        generation_params: Parameters the script was generated with (JSON).
        quality_score: Quality gate score (0-100).
        generation_duration_ms: Wall time spent generating.
        is_active: Whether this is the post's current script.
        created_at: Creation timestamp (UTC).
    """

    __tablename__ = "script_versions"

    MAX_VERSIONS_PER_POST = 5

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    post_id: Mapped[str] = mapped_column(
        String(50),
        ForeignKey("posts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    job_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    version_number: Mapped[int] = mapped_column(Integer, nullable=False)
    script: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    generation_params: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    quality_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    generation_duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )

    __table_args__ = (
        UniqueConstraint("post_id", "version_number", name="uq_script_versions_post_version"),
    )

    def __repr__(self) -> str:
        """Return string representation for debugging."""
        return (
            f"<ScriptVersion(post_id={self.post_id!r}, version={self.version_number}, "
            f"quality_score={self.quality_score}, active={self.is_active})>"
        )
