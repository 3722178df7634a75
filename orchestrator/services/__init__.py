"""Business logic services for the orchestration layer."""

from orchestrator.services.content_validator import (
    ContentValidator,
    RegenerationHints,
    ValidationIssue,
    ValidationResult,
    format_validation_report,
)
from orchestrator.services.generation_executor import ExecutionResult, GenerationExecutor
from orchestrator.services.pipeline_controller import (
    PipelineController,
    PipelineHistory,
    PipelineMetrics,
    PipelineSettings,
)
from orchestrator.services.script_generator import HTTPScriptGenerator, ScriptGenerator

__all__ = [
    "ContentValidator",
    "ExecutionResult",
    "GenerationExecutor",
    "HTTPScriptGenerator",
    "PipelineController",
    "PipelineHistory",
    "PipelineMetrics",
    "PipelineSettings",
    "RegenerationHints",
    "ScriptGenerator",
    "ValidationIssue",
    "ValidationResult",
    "format_validation_report",
]
