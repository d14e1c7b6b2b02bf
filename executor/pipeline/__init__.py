from __future__ import annotations

# Pipeline validation, reference resolution and sandboxed execution.

from .errors import (
    PipelineError,
    PipelineRejected,
    SchemaViolation,
    UnknownReference,
    UnsafePath,
    ToolError,
    ToolUnavailable,
    ToolExecutionFailure,
    ToolTimeout,
    StepFailed,
    GeneratorError,
    GeneratorMalformedOutput,
    PipelineInternalError,
    error_envelope,
)
from .model import ALLOWED_TOOLS, PipelineCommand, PipelineResult, PipelineStep, step_ref_id
from .validator import check_pipeline, validate_pipeline
from .resolver import resolve_args
from .runner import ToolResult, run_tool, run_tool_blocking
from .executor import execute_pipeline

__all__ = [
    "PipelineError",
    "PipelineRejected",
    "SchemaViolation",
    "UnknownReference",
    "UnsafePath",
    "ToolError",
    "ToolUnavailable",
    "ToolExecutionFailure",
    "ToolTimeout",
    "StepFailed",
    "GeneratorError",
    "GeneratorMalformedOutput",
    "PipelineInternalError",
    "error_envelope",
    "ALLOWED_TOOLS",
    "PipelineCommand",
    "PipelineResult",
    "PipelineStep",
    "step_ref_id",
    "check_pipeline",
    "validate_pipeline",
    "resolve_args",
    "ToolResult",
    "run_tool",
    "run_tool_blocking",
    "execute_pipeline",
]
