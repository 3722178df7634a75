"""001 initial orchestration tables

Revision ID: 001_initial_orchestration
Revises:
Create Date: 2026-10-19

Creates posts, generation_jobs and script_versions. The partial unique
index uq_generation_jobs_active_post allows at most one pending or
processing job per post.
"""

from typing import Sequence

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001_initial_orchestration"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

POST_STATUSES = ("selected", "generating", "generated", "approved", "failed")
JOB_STATUSES = ("pending", "processing", "completed", "failed")
ACTIVE_JOB_FILTER = "status IN ('pending', 'processing')"


def upgrade() -> None:
    """Create orchestration tables and indexes."""
    op.create_table(
        "posts",
        sa.Column("id", sa.String(50), nullable=False),
        sa.Column("title", sa.String(500), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("author", sa.String(100), nullable=True),
        sa.Column("subreddit", sa.String(100), nullable=True),
        sa.Column("score", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("upvotes", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("comments", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("url", sa.String(500), nullable=True),
        sa.Column(
            "status",
            sa.Enum(*POST_STATUSES, name="poststatus"),
            nullable=False,
            server_default="selected",
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_posts_status", "posts", ["status"])

    op.create_table(
        "generation_jobs",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("post_id", sa.String(50), nullable=False),
        sa.Column(
            "status",
            sa.Enum(*JOB_STATUSES, name="jobstatus"),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("generation_params", sa.JSON(), nullable=False),
        sa.Column("progress_percentage", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("quality_score", sa.Integer(), nullable=True),
        sa.Column("worker_id", sa.String(100), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("available_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(
            ["post_id"],
            ["posts.id"],
            name="fk_generation_jobs_post_id",
            ondelete="CASCADE",
        ),
    )
    op.create_index("ix_generation_jobs_post_id", "generation_jobs", ["post_id"])
    op.create_index(
        "ix_generation_jobs_status_priority_created",
        "generation_jobs",
        ["status", "priority", "created_at"],
    )
    op.create_index(
        "uq_generation_jobs_active_post",
        "generation_jobs",
        ["post_id"],
        unique=True,
        sqlite_where=sa.text(ACTIVE_JOB_FILTER),
        postgresql_where=sa.text(ACTIVE_JOB_FILTER),
    )

    op.create_table(
        "script_versions",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("post_id", sa.String(50), nullable=False),
        sa.Column("job_id", sa.String(36), nullable=True),
        sa.Column("version_number", sa.Integer(), nullable=False),
        sa.Column("script", sa.JSON(), nullable=False),
        sa.Column("generation_params", sa.JSON(), nullable=False),
        sa.Column("quality_score", sa.Integer(), nullable=True),
        sa.Column("generation_duration_ms", sa.Integer(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(
            ["post_id"],
            ["posts.id"],
            name="fk_script_versions_post_id",
            ondelete="CASCADE",
        ),
        sa.UniqueConstraint("post_id", "version_number", name="uq_script_versions_post_version"),
    )
    op.create_index("ix_script_versions_post_id", "script_versions", ["post_id"])


def downgrade() -> None:
    """Drop orchestration tables and enum types."""
    op.drop_index("ix_script_versions_post_id", table_name="script_versions")
    op.drop_table("script_versions")

    op.drop_index("uq_generation_jobs_active_post", table_name="generation_jobs")
    op.drop_index("ix_generation_jobs_status_priority_created", table_name="generation_jobs")
    op.drop_index("ix_generation_jobs_post_id", table_name="generation_jobs")
    op.drop_table("generation_jobs")

    op.drop_index("ix_posts_status", table_name="posts")
    op.drop_table("posts")

    sa.Enum(name="jobstatus").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="poststatus").drop(op.get_bind(), checkfirst=True)
