"""Quality gate for generated video scripts.

This module scores a GeneratedScript and decides whether it is accepted,
regenerated once with hints, or rejected. All checks are pure functions of
the script: no I/O, no clock.

Scoring:
    Five sub-scores (0-100) combined as a weighted average and rounded:
        structure 25%, content 25%, metadata 20%, engagement 15%, technical 15%

    A script is valid when the score is at least minimum_score (70) AND no
    issue has critical severity.

Regeneration Hints:
    Issues are grouped by field ("scene_3_duration" counts as "scene") to
    pick focus areas and parameter overrides for the second attempt.

Usage:
    validator = ContentValidator()
    result = validator.evaluate(script)
    if validator.should_regenerate(result):
        hints = validator.get_regeneration_hints(result)
"""

import re
from dataclasses import dataclass, field
from typing import Any, Literal

from orchestrator.schemas import GeneratedScript
from orchestrator.utils.logging import get_logger

log = get_logger(__name__)

IssueKind = Literal["error", "warning"]
Severity = Literal["critical", "major", "minor"]

ENGAGEMENT_KEYWORDS = (
    "imagine",
    "think about",
    "consider",
    "what if",
    "have you ever",
    "let's",
    "discover",
    "explore",
    "amazing",
    "incredible",
)
TITLE_HOOK_WORDS = ("how", "why", "what", "best", "top", "secret", "amazing")
CALL_TO_ACTION_WORDS = ("subscribe", "like", "comment", "share")
OPENING_HOOK = re.compile(r"^(did you know|imagine|what if|have you ever)", re.IGNORECASE)
HASHTAG = re.compile(r"#\w+")
SENTENCE_SPLIT = re.compile(r"[.!?]+")
NUMBERED_FIELD = re.compile(r"^(scene|title)_\d+")


@dataclass(frozen=True)
class ValidationThresholds:
    minimum_score: int = 70
    critical_fields: tuple[str, ...] = (
        "script_content",
        "scene_breakdown",
        "titles",
        "description",
        "duration_estimate",
    )
    min_scene_count: int = 3
    max_scene_count: int = 7
    min_scene_duration: float = 10
    max_scene_duration: float = 30
    min_total_duration: float = 30
    max_total_duration: float = 180
    min_title_count: int = 3
    min_description_length: int = 100
    max_description_length: int = 5000
    min_hashtags: int = 3
    max_hashtags: int = 30
    min_keywords: int = 5


@dataclass(frozen=True)
class ValidationIssue:
    kind: IssueKind
    field: str
    message: str
    severity: Severity


@dataclass(frozen=True)
class ValidationDetails:
    structure_score: int
    content_score: int
    metadata_score: int
    engagement_score: int
    technical_score: int


@dataclass
class ValidationResult:
    """Outcome of one quality gate evaluation."""

    is_valid: bool
    score: int
    issues: list[ValidationIssue]
    suggestions: list[str]
    details: ValidationDetails

    @property
    def has_critical_issues(self) -> bool:
        return any(issue.severity == "critical" for issue in self.issues)


@dataclass
class RegenerationHints:
    """Guidance for the second generation attempt.

    parameter_overrides keys match GenerationParams fields
    (scene_count, style, target_duration).
    """

    focus_areas: list[str] = field(default_factory=list)
    parameter_overrides: dict[str, Any] = field(default_factory=dict)


class ContentValidator:
    """Scores generated scripts against fixed quality thresholds."""

    def __init__(self, thresholds: ValidationThresholds | None = None):
        self.thresholds = thresholds or ValidationThresholds()

    def evaluate(self, script: GeneratedScript | dict[str, Any]) -> ValidationResult:
        """Score a script and collect issues and suggestions.

        Args:
            script: Generated script (model or raw dict from the generator).

        Returns:
            ValidationResult with the weighted score and ordered issues.
        """
        if not isinstance(script, GeneratedScript):
            script = GeneratedScript.model_validate(script)

        issues: list[ValidationIssue] = []
        suggestions: list[str] = []

        structure_score = self._validate_structure(script, issues, suggestions)
        content_score = self._validate_content(script, issues, suggestions)
        metadata_score = self._validate_metadata(script, issues, suggestions)
        engagement_score = self._calculate_engagement_score(script, suggestions)
        technical_score = self._validate_technical(script, issues, suggestions)

        overall_score = round(
            structure_score * 0.25
            + content_score * 0.25
            + metadata_score * 0.2
            + engagement_score * 0.15
            + technical_score * 0.15
        )

        is_valid = overall_score >= self.thresholds.minimum_score and not any(
            issue.severity == "critical" for issue in issues
        )

        log.info(
            "script_validation_completed",
            score=overall_score,
            is_valid=is_valid,
            issue_count=len(issues),
        )

        return ValidationResult(
            is_valid=is_valid,
            score=overall_score,
            issues=issues,
            suggestions=suggestions,
            details=ValidationDetails(
                structure_score=structure_score,
                content_score=content_score,
                metadata_score=metadata_score,
                engagement_score=engagement_score,
                technical_score=technical_score,
            ),
        )

    def _validate_structure(
        self,
        script: GeneratedScript,
        issues: list[ValidationIssue],
        suggestions: list[str],
    ) -> int:
        t = self.thresholds
        score = 100

        for name in t.critical_fields:
            if not getattr(script, name, None):
                issues.append(
                    ValidationIssue("error", name, f"Missing required field: {name}", "critical")
                )
                score -= 20

        scene_count = len(script.scene_breakdown)
        if scene_count < t.min_scene_count:
            issues.append(
                ValidationIssue(
                    "error",
                    "scene_breakdown",
                    f"Too few scenes: {scene_count} (minimum: {t.min_scene_count})",
                    "major",
                )
            )
            score -= 15
            suggestions.append(
                f"Add {t.min_scene_count - scene_count} more scenes for better pacing"
            )
        elif scene_count > t.max_scene_count:
            issues.append(
                ValidationIssue(
                    "warning",
                    "scene_breakdown",
                    f"Too many scenes: {scene_count} (maximum: {t.max_scene_count})",
                    "minor",
                )
            )
            score -= 10
            suggestions.append("Consider consolidating scenes for better flow")

        for number, scene in enumerate(script.scene_breakdown, start=1):
            if len(scene.narration.strip()) < 20:
                issues.append(
                    ValidationIssue(
                        "error",
                        f"scene_{number}",
                        f"Scene {number} has insufficient narration",
                        "major",
                    )
                )
                score -= 10

            if not scene.visual_keywords:
                issues.append(
                    ValidationIssue(
                        "warning",
                        f"scene_{number}_keywords",
                        f"Scene {number} lacks visual keywords",
                        "minor",
                    )
                )
                score -= 5

            if scene.duration < t.min_scene_duration:
                issues.append(
                    ValidationIssue(
                        "warning",
                        f"scene_{number}_duration",
                        f"Scene {number} is too short ({scene.duration:g}s)",
                        "minor",
                    )
                )
                score -= 5
            elif scene.duration > t.max_scene_duration:
                issues.append(
                    ValidationIssue(
                        "warning",
                        f"scene_{number}_duration",
                        f"Scene {number} is too long ({scene.duration:g}s)",
                        "minor",
                    )
                )
                score -= 5

        return max(0, score)

    def _validate_content(
        self,
        script: GeneratedScript,
        issues: list[ValidationIssue],
        suggestions: list[str],
    ) -> int:
        score = 100
        content = script.script_content

        if len(content.strip()) < 100:
            issues.append(
                ValidationIssue("error", "script_content", "Script content is too short", "critical")
            )
            score -= 30

        if content:
            # The trailing fragment after the last terminator counts as a sentence
            sentences = SENTENCE_SPLIT.split(content)
            unique_sentences = {sentence.strip().lower() for sentence in sentences}
            if len(unique_sentences) / len(sentences) < 0.8:
                issues.append(
                    ValidationIssue(
                        "warning",
                        "script_content",
                        "Script contains repetitive content",
                        "minor",
                    )
                )
                score -= 10
                suggestions.append("Vary the language to avoid repetition")

        scenes = script.scene_breakdown
        if len(scenes) > 1 and not all(scene.narration for scene in scenes[1:]):
            issues.append(
                ValidationIssue(
                    "warning", "scene_breakdown", "Scenes lack smooth transitions", "minor"
                )
            )
            score -= 10
            suggestions.append("Add transitional phrases between scenes")

        lowered = content.lower()
        if not any(keyword in lowered for keyword in ENGAGEMENT_KEYWORDS):
            suggestions.append("Add engagement hooks to capture viewer attention")
            score -= 5

        return max(0, score)

    def _validate_metadata(
        self,
        script: GeneratedScript,
        issues: list[ValidationIssue],
        suggestions: list[str],
    ) -> int:
        t = self.thresholds
        score = 100

        if len(script.titles) < t.min_title_count:
            issues.append(
                ValidationIssue(
                    "error",
                    "titles",
                    f"Insufficient title variations (minimum: {t.min_title_count})",
                    "major",
                )
            )
            score -= 20
        else:
            for number, title in enumerate(script.titles, start=1):
                if len(title) < 10 or len(title) > 100:
                    issues.append(
                        ValidationIssue(
                            "warning",
                            f"title_{number}",
                            f"Title {number} length is suboptimal",
                            "minor",
                        )
                    )
                    score -= 5

                if number == 1 and not any(word in title.lower() for word in TITLE_HOOK_WORDS):
                    suggestions.append(f'Consider adding engaging words to title: "{title}"')

        description = script.description
        if not description:
            issues.append(
                ValidationIssue("error", "description", "Missing video description", "major")
            )
            score -= 20
        elif len(description) < t.min_description_length:
            issues.append(
                ValidationIssue("warning", "description", "Description is too short for SEO", "minor")
            )
            score -= 10
            suggestions.append("Expand description with keywords and timestamps")
        elif len(description) > t.max_description_length:
            issues.append(
                ValidationIssue(
                    "warning", "description", "Description exceeds recommended length", "minor"
                )
            )
            score -= 5

        hashtag_count = len(HASHTAG.findall(description))
        if hashtag_count < t.min_hashtags:
            suggestions.append("Add relevant hashtags to improve discoverability")
            score -= 5
        elif hashtag_count > t.max_hashtags:
            issues.append(ValidationIssue("warning", "description", "Too many hashtags", "minor"))
            score -= 5

        if not script.thumbnail_concepts:
            issues.append(
                ValidationIssue(
                    "warning", "thumbnail_concepts", "No thumbnail concepts provided", "minor"
                )
            )
            score -= 10
            suggestions.append("Generate thumbnail concepts for better visual appeal")

        return max(0, score)

    def _calculate_engagement_score(self, script: GeneratedScript, suggestions: list[str]) -> int:
        score = 70
        scenes = script.scene_breakdown

        if scenes:
            if OPENING_HOOK.match(scenes[0].narration):
                score += 10
            else:
                suggestions.append("Add a strong hook in the opening scene")

        lowered = script.script_content.lower()
        if any(word in lowered for word in CALL_TO_ACTION_WORDS):
            score += 10
        else:
            suggestions.append("Include a call-to-action for viewer engagement")

        if len(scenes) > 2:
            if len({scene.emotion for scene in scenes}) > 1:
                score += 10
            else:
                suggestions.append("Vary emotional tones across scenes for better engagement")

        return min(100, score)

    def _validate_technical(
        self,
        script: GeneratedScript,
        issues: list[ValidationIssue],
        suggestions: list[str],
    ) -> int:
        t = self.thresholds
        score = 100
        total_duration = script.duration_estimate or 0

        if total_duration < t.min_total_duration:
            issues.append(
                ValidationIssue(
                    "error",
                    "duration_estimate",
                    f"Video too short: {total_duration:g}s (minimum: {t.min_total_duration:g}s)",
                    "major",
                )
            )
            score -= 20
        elif total_duration > t.max_total_duration:
            issues.append(
                ValidationIssue(
                    "warning",
                    "duration_estimate",
                    f"Video too long: {total_duration:g}s (maximum: {t.max_total_duration:g}s)",
                    "minor",
                )
            )
            score -= 10
            suggestions.append("Consider splitting into multiple videos")

        if script.scene_breakdown:
            scene_duration_sum = sum(scene.duration or 0 for scene in script.scene_breakdown)
            if abs(scene_duration_sum - total_duration) > 5:
                issues.append(
                    ValidationIssue(
                        "warning",
                        "duration",
                        f"Scene durations don't match total: "
                        f"{scene_duration_sum:g}s vs {total_duration:g}s",
                        "minor",
                    )
                )
                score -= 10

        if len(script.keywords) < t.min_keywords:
            issues.append(
                ValidationIssue("warning", "keywords", "Insufficient keywords for SEO", "minor")
            )
            score -= 10
            suggestions.append("Add more relevant keywords for better discoverability")

        if script.generation_params is None:
            issues.append(
                ValidationIssue(
                    "warning", "generation_params", "Missing generation parameters", "minor"
                )
            )
            score -= 5

        return max(0, score)

    def should_regenerate(self, result: ValidationResult) -> bool:
        """Regenerate when the score is below threshold or any issue is critical."""
        return result.score < self.thresholds.minimum_score or result.has_critical_issues

    def get_regeneration_hints(self, result: ValidationResult) -> RegenerationHints:
        """Derive focus areas and parameter overrides from a failed evaluation."""
        t = self.thresholds
        hints = RegenerationHints()

        issues_by_group: dict[str, int] = {}
        for issue in result.issues:
            group = _issue_group(issue.field)
            issues_by_group[group] = issues_by_group.get(group, 0) + 1

        if issues_by_group.get("scene", 0) > 2:
            hints.focus_areas.append("scene structure and pacing")
            hints.parameter_overrides["scene_count"] = 4

        if issues_by_group.get("script_content"):
            hints.focus_areas.append("content quality and engagement")

        if issues_by_group.get("titles") or issues_by_group.get("description"):
            hints.focus_areas.append("metadata and SEO optimization")

        if result.details.engagement_score < 70:
            hints.focus_areas.append("viewer engagement and hooks")
            hints.parameter_overrides["style"] = "entertainment"

        duration_issue = next(
            (issue for issue in result.issues if issue.field == "duration_estimate"), None
        )
        if duration_issue is not None:
            if "too short" in duration_issue.message:
                hints.parameter_overrides["target_duration"] = int(t.min_total_duration + 15)
            elif "too long" in duration_issue.message:
                hints.parameter_overrides["target_duration"] = int(t.max_total_duration - 30)

        return hints


def _issue_group(field_name: str) -> str:
    """Group numbered fields: scene_2_duration -> scene, title_1 -> title."""
    match = NUMBERED_FIELD.match(field_name)
    return match.group(1) if match else field_name


def format_validation_report(result: ValidationResult) -> str:
    """Render a validation result as a human-readable multi-line report."""
    details = result.details
    lines = [
        "=== Script Validation Report ===",
        f"Overall Score: {result.score}/100 ({'PASS' if result.is_valid else 'FAIL'})",
        "",
        "Score Breakdown:",
        f"  Structure: {details.structure_score}/100",
        f"  Content: {details.content_score}/100",
        f"  Metadata: {details.metadata_score}/100",
        f"  Engagement: {details.engagement_score}/100",
        f"  Technical: {details.technical_score}/100",
        "",
    ]

    if result.issues:
        lines.append(f"Issues Found ({len(result.issues)}):")
        for issue in result.issues:
            marker = "ERROR" if issue.kind == "error" else "WARN"
            lines.append(f"  {marker} [{issue.severity}] {issue.field}: {issue.message}")
        lines.append("")

    if result.suggestions:
        lines.append("Improvement Suggestions:")
        lines.extend(f"  - {suggestion}" for suggestion in result.suggestions)

    return "\n".join(lines)
