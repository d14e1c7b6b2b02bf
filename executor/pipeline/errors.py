from __future__ import annotations

from typing import Optional


class PipelineError(Exception):
    """
    Base of every failure the pipeline engine reports.

    kind: "rejected" | "tool" | "generator" | "internal"
    code: taxonomy tag, e.g. "unsafe_path" or "timeout"
    step: 1-based step index the failure belongs to (None when not step-bound)
    """

    kind = "internal"
    code = "internal"

    def __init__(self, msg: str, *, step: Optional[int] = None):
        super().__init__(msg)
        self.reason = msg
        self.step = step

    def __str__(self) -> str:
        if self.step:
            return f"step {self.step}: {self.reason}"
        return self.reason


# ---- rejected before any process spawns ----

class PipelineRejected(PipelineError):
    kind = "rejected"
    code = "rejected"


class SchemaViolation(PipelineRejected):
    code = "schema_violation"


class UnknownReference(PipelineRejected):
    code = "unknown_reference"


class UnsafePath(PipelineRejected):
    code = "unsafe_path"


# ---- raised by the process runner ----

class ToolError(PipelineError):
    kind = "tool"
    code = "tool_error"

    def __init__(self, msg: str, *, tool: str = "", step: Optional[int] = None, stderr: str = ""):
        super().__init__(msg, step=step)
        self.tool = tool
        self.stderr = stderr


class ToolUnavailable(ToolError):
    code = "tool_unavailable"


class ToolExecutionFailure(ToolError):
    code = "tool_failed"

    def __init__(self, msg: str, *, tool: str = "", step: Optional[int] = None, stderr: str = "", returncode: Optional[int] = None):
        super().__init__(msg, tool=tool, step=step, stderr=stderr)
        self.returncode = returncode


class ToolTimeout(ToolError):
    code = "timeout"


class StepFailed(PipelineError):
    """A runner failure localized to the pipeline step that caused it."""

    kind = "tool"

    def __init__(self, step: int, cause: ToolError):
        super().__init__(cause.reason, step=step)
        self.cause = cause
        self.code = cause.code


# ---- generator boundary ----

class GeneratorError(PipelineError):
    kind = "generator"
    code = "generator_error"


class GeneratorMalformedOutput(GeneratorError):
    code = "generator_malformed"


class PipelineInternalError(PipelineError):
    kind = "internal"
    code = "internal"


def error_envelope(e: PipelineError) -> dict:
    return {"error": {"kind": e.kind, "code": e.code, "step": e.step, "message": e.reason}}
