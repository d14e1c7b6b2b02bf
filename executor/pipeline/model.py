from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

# Fixed allow-list of external tools: video, image, audio.
ALLOWED_TOOLS = frozenset({"ffmpeg", "magick", "sox"})


def step_ref_id(index: int) -> str:
    """Synthetic reference id of the output of 1-based step `index`."""
    return f"step-{index}"


def _pick(d: Dict[str, Any], *keys: str) -> Any:
    for k in keys:
        if k in d:
            return d[k]
    return None


@dataclass(frozen=True)
class PipelineStep:
    tool: str
    args: Tuple[Any, ...]
    output_ext: str
    input_file_id: Optional[str] = None
    input_file_ids: Tuple[str, ...] = ()
    reasoning: Optional[str] = None

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "PipelineStep":
        # Values are carried as produced; the validator decides what is acceptable.
        args = d.get("args")
        declared = _pick(d, "inputFileIds", "input_file_ids")
        legacy = _pick(d, "inputFileId", "input_file_id")
        ext = _pick(d, "outputExt", "output_ext")
        reasoning = d.get("reasoning")
        return cls(
            tool=d.get("tool") if isinstance(d.get("tool"), str) else "",
            args=tuple(args) if isinstance(args, list) else (),
            output_ext=ext if isinstance(ext, str) else "",
            input_file_id=legacy if isinstance(legacy, str) and legacy else None,
            input_file_ids=tuple(str(x) for x in declared) if isinstance(declared, list) else (),
            reasoning=reasoning if isinstance(reasoning, str) else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "tool": self.tool,
            "args": list(self.args),
            "outputExt": self.output_ext,
        }
        if self.input_file_id:
            out["inputFileId"] = self.input_file_id
        if self.input_file_ids:
            out["inputFileIds"] = list(self.input_file_ids)
        if self.reasoning:
            out["reasoning"] = self.reasoning
        return out


@dataclass(frozen=True)
class PipelineCommand:
    steps: Tuple[PipelineStep, ...] = ()

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "PipelineCommand":
        raw = d.get("steps") if isinstance(d, dict) else None
        if not isinstance(raw, list):
            return cls(())
        return cls(tuple(PipelineStep.from_dict(s) if isinstance(s, dict) else PipelineStep.from_dict({}) for s in raw))

    @classmethod
    def single(cls, step: PipelineStep) -> "PipelineCommand":
        return cls((step,))

    def to_dict(self) -> Dict[str, Any]:
        return {"steps": [s.to_dict() for s in self.steps]}


@dataclass
class PipelineResult:
    output_path: str
    output_name: str
    steps: List[Dict[str, Any]] = field(default_factory=list)
