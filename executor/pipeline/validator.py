from __future__ import annotations

import logging
import re
from typing import Any, Dict, Iterable, List, Set, Tuple

from .errors import PipelineRejected, SchemaViolation, UnknownReference, UnsafePath
from .model import ALLOWED_TOOLS, PipelineCommand, PipelineStep, step_ref_id
from . import tokens as T

log = logging.getLogger(__name__)

_OUTPUT_EXT_RE = re.compile(r"^[A-Za-z0-9]{2,6}$")
_FORBIDDEN_CHARS = ("\n", "\r", "\x00")
_DRIVE_RE = re.compile(r"^[A-Za-z]:[\\/]")
# Characters after which tool syntax starts a new value: option=value,
# proto:path, @listfile, quoted strings, filter separators.
_VALUE_SEPARATORS = "=:@,;'\""
_SEGMENT_SPLIT_RE = re.compile(r"[/\\=:@,;'\"]")


def _is_absolute_like(s: str) -> bool:
    return s.startswith(("/", "\\", "~")) or bool(_DRIVE_RE.match(s))


def is_forbidden_path_like(arg: str) -> bool:
    """
    True when `arg` looks like it addresses the filesystem outside the
    scratch workspace: absolute, home-relative, drive-letter or UNC paths,
    any `..` segment, and the same forms embedded after a value separator
    (`fontfile=/x`, `file:/x`, `@/x`, `http://x`).
    """
    if _is_absolute_like(arg):
        return True
    if "../" in arg or "..\\" in arg:
        return True
    if any(seg == ".." for seg in _SEGMENT_SPLIT_RE.split(arg)):
        return True
    for i, ch in enumerate(arg):
        if ch in _VALUE_SEPARATORS and _is_absolute_like(arg[i + 1 :]):
            return True
    return False


_PATH_CHAR_RE = re.compile(r"[A-Za-z0-9._~/\\-]")
_STEP_ID_RE = re.compile(r"^step-\d+$")


def _joined_placeholder(tokens: Tuple[T.Token, ...]) -> bool:
    """
    True when a placeholder inside a larger argument touches filename text or
    another placeholder (`{input:a}.wav`, `x{input:a}`, `{input:a}/y`).
    A substituted path may only be delimited by tool syntax.
    """
    for i, t in enumerate(tokens):
        if isinstance(t, T.Literal):
            continue
        for j, edge in ((i - 1, -1), (i + 1, 0)):
            if j < 0 or j >= len(tokens):
                continue
            n = tokens[j]
            if not isinstance(n, T.Literal):
                return True
            if n.text and _PATH_CHAR_RE.match(n.text[edge]):
                return True
    return False


def _neutral_text(tokens: Tuple[T.Token, ...]) -> str:
    # Placeholders become an inert marker so `/{input:a}` still reads as absolute.
    return "".join(t.text if isinstance(t, T.Literal) else "_" for t in tokens)


def validate_step(step: PipelineStep, available_ids: Set[str], index: int) -> None:
    """Raise a PipelineRejected subclass when `step` (1-based `index`) violates the contract."""
    if step.tool not in ALLOWED_TOOLS:
        raise SchemaViolation(f"unsupported tool {step.tool!r}", step=index)

    if not step.args:
        raise SchemaViolation("command arguments are empty", step=index)
    for arg in step.args:
        if not isinstance(arg, str):
            raise SchemaViolation(f"command arguments must be strings, got {type(arg).__name__}", step=index)

    if not isinstance(step.output_ext, str) or not _OUTPUT_EXT_RE.match(step.output_ext):
        raise SchemaViolation(f"invalid output extension {step.output_ext!r}", step=index)

    parsed = T.parse_args(step.args)
    flat: List[T.Token] = [t for toks in parsed for t in toks]

    outputs = sum(1 for t in flat if isinstance(t, T.OutputToken))
    if outputs == 0:
        raise SchemaViolation("arguments must contain the {output} placeholder", step=index)
    if outputs > 1:
        raise SchemaViolation(f"arguments must contain exactly one {{output}} placeholder (found {outputs})", step=index)

    placeholder_ids = [t.ref_id for t in flat if isinstance(t, T.InputToken)]
    has_legacy = any(isinstance(t, T.LegacyInputToken) for t in flat)
    if not placeholder_ids and not has_legacy:
        raise SchemaViolation("arguments must contain at least one {input:<file-id>} placeholder", step=index)

    if has_legacy:
        if not step.input_file_id:
            raise SchemaViolation("{input} placeholder requires inputFileId", step=index)
        if step.input_file_id not in available_ids:
            raise UnknownReference(f"unknown reference {step.input_file_id!r}: referenced file does not exist", step=index)
    for ref in step.input_file_ids:
        if ref not in available_ids:
            raise UnknownReference(f"unknown reference {ref!r}: declared input does not exist", step=index)
    for ref in placeholder_ids:
        if ref not in available_ids:
            raise UnknownReference(f"unknown reference {ref!r}: referenced file does not exist", step=index)

    for arg in step.args:
        if any(c in arg for c in _FORBIDDEN_CHARS):
            raise SchemaViolation("arguments must not contain newline or NUL characters", step=index)

    for arg, toks in zip(step.args, parsed):
        if T.is_single_placeholder(toks):
            continue
        if _joined_placeholder(toks):
            raise UnsafePath(f"placeholder must not be joined to path text in argument {arg!r}", step=index)
        if is_forbidden_path_like(_neutral_text(toks)):
            raise UnsafePath(f"unauthorized path in argument {arg!r}", step=index)


def validate_pipeline(command: PipelineCommand, available_ids: Iterable[str]) -> None:
    """
    All-or-nothing check of a candidate pipeline.

    `available_ids` is not modified; a working copy gains `step-N` after step N
    passes, so only strictly earlier outputs are referenceable.
    """
    if not command.steps:
        raise SchemaViolation("no processing steps were generated", step=0)
    # Step ids are minted here only; a caller-supplied `step-N` never counts.
    known: Set[str] = {i for i in available_ids if not _STEP_ID_RE.match(i)}
    for i, step in enumerate(command.steps, start=1):
        validate_step(step, known, i)
        known.add(step_ref_id(i))
    log.debug("pipeline.validate.ok steps=%d", len(command.steps))


def check_pipeline(command: PipelineCommand, available_ids: Iterable[str]) -> Dict[str, Any]:
    """Envelope-friendly variant of validate_pipeline."""
    try:
        validate_pipeline(command, available_ids)
    except PipelineRejected as e:
        log.info("pipeline.validate.rejected step=%s code=%s reason=%s", e.step, e.code, e.reason)
        return {"ok": False, "step": e.step, "code": e.code, "reason": e.reason}
    return {"ok": True, "step": None, "code": None, "reason": None}
