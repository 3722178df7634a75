"""Tests for GenerationExecutor (one quality-gated generation attempt).

Stores run against SQLite; the script generator is an AsyncMock.
"""

from unittest.mock import AsyncMock

import pytest

from orchestrator.exceptions import NotFoundError, ValidationFailure
from orchestrator.models import GenerationJob
from orchestrator.notifications import EventType
from orchestrator.schemas import GenerationParams
from orchestrator.services.generation_executor import GenerationExecutor
from tests.support.factories import (
    create_failing_script,
    create_passing_script,
    create_post,
    insert_posts,
)


@pytest.fixture
def generator() -> AsyncMock:
    mock = AsyncMock()
    mock.generate.return_value = create_passing_script()
    mock.regenerate.return_value = create_passing_script()
    return mock


@pytest.fixture
def executor(post_store, script_store, generator, bus) -> GenerationExecutor:
    return GenerationExecutor(post_store, script_store, generator, bus)


@pytest.fixture
async def job(session_factory, job_store):
    await insert_posts(session_factory, create_post("p1"))
    created, _ = await job_store.insert("p1", {"style": "educational", "target_duration": 90})
    return created


class TestExecutePassingScript:
    async def test_stores_version_and_returns_result(self, executor, generator, script_store, job):
        """[P0] A passing script is stored as the active version."""
        result = await executor.execute(job)

        assert result.is_valid is True
        assert result.quality_score == 100
        assert result.regenerated is False
        assert result.version_number == 1
        generator.regenerate.assert_not_called()

        snapshot, params = generator.generate.call_args.args
        assert snapshot.id == "p1"
        assert params == GenerationParams(style="educational", target_duration=90)

        active = await script_store.get_active("p1")
        assert active.id == result.script_version_id
        assert active.quality_score == 100
        assert active.job_id == job.id
        assert active.generation_params["style"] == "educational"

    async def test_missing_post_raises(self, executor):
        orphan = GenerationJob(id="j-orphan", post_id="gone", attempts=0, max_attempts=3)

        with pytest.raises(NotFoundError, match="Post not found: gone"):
            await executor.execute(orphan)


class TestExecuteRegeneration:
    async def test_failing_script_regenerated_once(self, executor, generator, script_store, bus, job):
        """[P0] A failing first script triggers exactly one regeneration."""
        generator.generate.return_value = create_failing_script()

        result = await executor.execute(job)

        assert result.regenerated is True
        assert result.is_valid is True
        generator.regenerate.assert_awaited_once()
        _, regen_params, hints = generator.regenerate.call_args.args
        assert "content quality and engagement" in hints.focus_areas
        assert regen_params.style == "educational"

        checks = bus.events_of(EventType.GENERATION_QUALITY_CHECK)
        assert len(checks) == 1
        assert checks[0].payload["regenerating"] is True
        assert checks[0].payload["job_id"] == job.id

        active = await script_store.get_active("p1")
        assert active.quality_score == 100

    async def test_both_attempts_failing_raises_validation_failure(
        self, executor, generator, script_store, job
    ):
        """[P0] No result is returned for a script that fails the gate."""
        generator.generate.return_value = create_failing_script()
        generator.regenerate.return_value = create_failing_script()

        with pytest.raises(ValidationFailure) as exc_info:
            await executor.execute(job)

        assert exc_info.value.score < 70
        assert any(issue.severity == "critical" for issue in exc_info.value.issues)
        # The rejected script is still kept for inspection
        assert (await script_store.get_active("p1")).quality_score == exc_info.value.score

    async def test_better_script_kept(self, executor, generator, script_store, job):
        """[P1] When regeneration is worse, the original script is kept."""
        original = create_passing_script(script_content="Too short. Subscribe!")
        generator.generate.return_value = original
        generator.regenerate.return_value = create_failing_script()

        with pytest.raises(ValidationFailure):
            await executor.execute(job)

        active = await script_store.get_active("p1")
        assert active.script["script_content"] == "Too short. Subscribe!"

    async def test_no_regeneration_on_last_attempt(self, executor, generator, job):
        """[P1] The last allowed attempt skips regeneration."""
        generator.generate.return_value = create_failing_script()
        job.attempts = job.max_attempts - 1

        with pytest.raises(ValidationFailure):
            await executor.execute(job)

        generator.regenerate.assert_not_called()

    async def test_gate_not_enforced(self, post_store, script_store, generator, bus, job):
        executor = GenerationExecutor(
            post_store, script_store, generator, bus, enforce_quality_gate=False
        )
        generator.generate.return_value = create_failing_script()
        generator.regenerate.return_value = create_failing_script()

        result = await executor.execute(job)

        assert result.is_valid is False
        assert result.regenerated is True
        assert result.issue_count > 0

    async def test_generator_error_propagates(self, executor, generator, job):
        generator.generate.side_effect = RuntimeError("upstream exploded")

        with pytest.raises(RuntimeError, match="upstream exploded"):
            await executor.execute(job)
