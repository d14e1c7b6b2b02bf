from __future__ import annotations

from typing import Dict, List, Mapping

from .model import PipelineStep
from . import tokens as T


def resolve_arg(tokens: tuple, step: PipelineStep, table: Mapping[str, str], output_path: str) -> str:
    parts: List[str] = []
    for t in tokens:
        if isinstance(t, T.Literal):
            parts.append(t.text)
        elif isinstance(t, T.OutputToken):
            parts.append(output_path)
        elif isinstance(t, T.InputToken):
            parts.append(table.get(t.ref_id, "{input:%s}" % t.ref_id))
        else:
            path = table.get(step.input_file_id) if step.input_file_id else None
            parts.append(path if path else T.LEGACY_INPUT_PLACEHOLDER)
    return "".join(parts)


def resolve_args(step: PipelineStep, table: Mapping[str, str], output_path: str) -> List[str]:
    """
    Substitute placeholders with concrete paths. No I/O, never raises.

    A reference missing from `table` is left as its literal placeholder text;
    the executor treats a leftover placeholder as an internal error.
    """
    return [resolve_arg(T.parse_arg(arg), step, table, output_path) for arg in step.args]


def unresolved_placeholders(argv: List[str]) -> List[str]:
    return [a for a in argv if T.has_placeholder(T.parse_arg(a))]


def build_reference_table(**groups: Mapping[str, str]) -> Dict[str, str]:
    """
    Merge id -> path groups (uploads, artifacts, aliases).

    Raises ValueError when an id appears in more than one group.
    """
    out: Dict[str, str] = {}
    owner: Dict[str, str] = {}
    for name, g in groups.items():
        for ref_id, path in g.items():
            if ref_id in out:
                raise ValueError(f"reference id {ref_id!r} is defined by both {owner[ref_id]} and {name}")
            out[ref_id] = path
            owner[ref_id] = name
    return out
