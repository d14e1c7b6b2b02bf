from __future__ import annotations

import logging
import os
from typing import Awaitable, Callable, Dict, Iterable, Mapping, Optional, Sequence

from .errors import PipelineInternalError, StepFailed, ToolError
from .model import PipelineCommand, PipelineResult, step_ref_id
from .resolver import resolve_args, unresolved_placeholders
from .runner import ToolResult, run_tool
from .validator import validate_pipeline

log = logging.getLogger(__name__)

# runner(tool, argv, timeout_s, cwd) -> ToolResult
Runner = Callable[[str, Sequence[str], Optional[float], Optional[str]], Awaitable[ToolResult]]


def output_name_for(index: int, total: int, ext: str) -> str:
    ext = ext.lower()
    if index == total:
        return f"output.{ext}"
    return f"{step_ref_id(index)}.{ext}"


async def execute_pipeline(
    command: PipelineCommand,
    reference_table: Mapping[str, str],
    workspace: str,
    *,
    runner: Optional[Runner] = None,
    timeout_s: Optional[float] = None,
    available_ids: Optional[Iterable[str]] = None,
) -> PipelineResult:
    """
    Validate `command`, then run its steps in order inside `workspace`.

    `workspace` must be a fresh directory owned by the caller, who also
    disposes of it. Each step's output is registered as `step-N` in a
    private copy of `reference_table` so later steps can consume it.
    `available_ids` defaults to the keys of `reference_table`.
    """
    run = runner or run_tool
    validate_pipeline(command, available_ids if available_ids is not None else reference_table.keys())
    if not os.path.isdir(workspace):
        raise PipelineInternalError(f"scratch workspace {workspace!r} does not exist")

    table: Dict[str, str] = dict(reference_table)
    total = len(command.steps)
    result = PipelineResult(output_path="", output_name="")

    for i, step in enumerate(command.steps, start=1):
        name = output_name_for(i, total, step.output_ext)
        out_path = os.path.join(workspace, name)
        argv = resolve_args(step, table, out_path)
        leftover = unresolved_placeholders(argv)
        if leftover:
            # Validation guaranteed every reference; reaching here is a bug, not bad input.
            log.error("pipeline.step.unresolved step=%d args=%r", i, leftover)
            raise PipelineInternalError(f"unresolved placeholders {leftover!r}", step=i)

        log.info("pipeline.step.start step=%d/%d tool=%s argv=%r", i, total, step.tool, argv)
        try:
            res = await run(step.tool, argv, timeout_s, workspace)
        except ToolError as ex:
            log.error("pipeline.step.failed step=%d tool=%s code=%s reason=%s", i, step.tool, ex.code, ex.reason)
            raise StepFailed(i, ex) from ex

        table[step_ref_id(i)] = out_path
        result.steps.append(
            {
                "step": i,
                "tool": step.tool,
                "argv": argv,
                "output_path": out_path,
                "duration_ms": getattr(res, "duration_ms", 0),
            }
        )
        log.info("pipeline.step.ok step=%d tool=%s dur_ms=%d", i, step.tool, getattr(res, "duration_ms", 0))

        if i == total:
            result.output_path = out_path
            result.output_name = name

    log.info("pipeline.done steps=%d output=%s", total, result.output_name)
    return result
