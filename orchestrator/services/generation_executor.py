"""Executes one generation job: generate, score, regenerate once, persist.

The GenerationQueue calls GenerationExecutor.execute() for every claimed
job and owns retries, timeouts and job status. The executor owns the
quality-gated work inside one attempt.

Attempt Flow:
    1. Load a snapshot of the post (NotFoundError if it is gone)
    2. Generate a script with the job's GenerationParams
    3. Score it with the ContentValidator
    4. If the gate asks for regeneration and this is not the job's last
       attempt: publish generation-quality-check, regenerate once with the
       gate's hints, score again and keep the better script
    5. Persist the kept script as the post's active ScriptVersion
    6. Raise ValidationFailure if the kept script still fails the gate
       (when enforcement is on); the queue treats it as terminal
"""

import time
from dataclasses import dataclass

from orchestrator.exceptions import NotFoundError, ValidationFailure
from orchestrator.models import GenerationJob
from orchestrator.notifications import EventType, NotificationBus
from orchestrator.schemas import GeneratedScript, GenerationParams
from orchestrator.services.content_validator import ContentValidator, ValidationResult
from orchestrator.services.script_generator import ScriptGenerator
from orchestrator.store import PostStore, ScriptVersionStore
from orchestrator.utils.logging import get_logger

log = get_logger(__name__)


@dataclass
class ExecutionResult:
    """What one successful attempt produced."""

    quality_score: int
    is_valid: bool
    script_version_id: str
    version_number: int
    generation_duration_ms: int
    regenerated: bool
    issue_count: int
    suggestions: list[str]


class GenerationExecutor:
    """Runs the quality-gated generation of a single job."""

    def __init__(
        self,
        post_store: PostStore,
        script_store: ScriptVersionStore,
        generator: ScriptGenerator,
        bus: NotificationBus,
        validator: ContentValidator | None = None,
        enforce_quality_gate: bool = True,
    ):
        self.post_store = post_store
        self.script_store = script_store
        self.generator = generator
        self.bus = bus
        self.validator = validator or ContentValidator()
        self.enforce_quality_gate = enforce_quality_gate

    async def execute(self, job: GenerationJob) -> ExecutionResult:
        """Run one attempt of job.

        Raises:
            NotFoundError: If the post no longer exists.
            ValidationFailure: If the final script fails the gate.
            Exception: Any generator failure, propagated for the queue to retry.
        """
        job_log = log.bind(job_id=job.id, post_id=job.post_id, attempt=job.attempts + 1)

        snapshot = await self.post_store.get_snapshot(job.post_id)
        if snapshot is None:
            raise NotFoundError("post", job.post_id)

        params = GenerationParams.model_validate(job.generation_params or {})
        started = time.monotonic()

        script = await self.generator.generate(snapshot, params)
        result = self.validator.evaluate(script)
        job_log.info("script_scored", score=result.score, is_valid=result.is_valid)

        regenerated = False
        if self.validator.should_regenerate(result) and job.attempts + 1 < job.max_attempts:
            hints = self.validator.get_regeneration_hints(result)
            job_log.warning(
                "script_quality_below_threshold",
                score=result.score,
                focus_areas=hints.focus_areas,
            )
            self.bus.publish(
                EventType.GENERATION_QUALITY_CHECK,
                {
                    "job_id": job.id,
                    "post_id": job.post_id,
                    "score": result.score,
                    "regenerating": True,
                    "focus_areas": hints.focus_areas,
                },
            )

            regen_params = params.model_copy(update=hints.parameter_overrides)
            regen_script = await self.generator.regenerate(snapshot, regen_params, hints)
            regen_result = self.validator.evaluate(regen_script)
            regenerated = True

            job_log.info(
                "regenerated_script_scored",
                original_score=result.score,
                new_score=regen_result.score,
                improved=regen_result.score > result.score,
            )
            if _is_better(regen_result, result):
                script, result, params = regen_script, regen_result, regen_params

        duration_ms = int((time.monotonic() - started) * 1000)
        version = await self.script_store.create_version(
            post_id=job.post_id,
            script=_storable(script),
            generation_params=params.model_dump(mode="json"),
            quality_score=result.score,
            generation_duration_ms=duration_ms,
            job_id=job.id,
        )

        if not result.is_valid and self.enforce_quality_gate:
            job_log.warning(
                "script_rejected_by_quality_gate",
                score=result.score,
                issue_count=len(result.issues),
            )
            raise ValidationFailure(result.score, result.issues)

        return ExecutionResult(
            quality_score=result.score,
            is_valid=result.is_valid,
            script_version_id=version.id,
            version_number=version.version_number,
            generation_duration_ms=duration_ms,
            regenerated=regenerated,
            issue_count=len(result.issues),
            suggestions=result.suggestions[:3],
        )


def _is_better(candidate: ValidationResult, current: ValidationResult) -> bool:
    """A passing script beats a failing one; otherwise the higher score wins."""
    if candidate.is_valid != current.is_valid:
        return candidate.is_valid
    return candidate.score > current.score


def _storable(script: GeneratedScript | dict) -> dict:
    if isinstance(script, GeneratedScript):
        return script.to_storage()
    return GeneratedScript.model_validate(script).to_storage()
