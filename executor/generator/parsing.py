from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Union

from media_json import JSONParser

from executor.pipeline.model import PipelineCommand, PipelineStep


@dataclass(frozen=True)
class ParsedCommand:
    command: PipelineCommand


@dataclass(frozen=True)
class ParsedSingleStep:
    step: PipelineStep

    @property
    def command(self) -> PipelineCommand:
        return PipelineCommand.single(self.step)


@dataclass(frozen=True)
class ParseError:
    reason: str


ParseResult = Union[ParsedCommand, ParsedSingleStep, ParseError]


def _looks_like_step(obj: Any) -> bool:
    return isinstance(obj, dict) and isinstance(obj.get("tool"), str) and isinstance(obj.get("args"), list)


def parse_generator_reply(text: Any) -> ParseResult:
    """
    Classify a generator reply.

    Only the shape is checked here: an object with a `steps` list, or a bare
    step object. Whether the steps are safe is the validator's job.
    """
    if not isinstance(text, str) or not text.strip():
        return ParseError("empty reply")
    parser = JSONParser()
    obj = parser.extract(text, {"steps": list})
    if obj is None:
        return ParseError("reply is not JSON")
    if isinstance(obj, list) and obj and all(_looks_like_step(s) for s in obj):
        # A bare list of steps is accepted as the command body.
        obj = {"steps": obj}
    if isinstance(obj, dict) and isinstance(obj.get("steps"), list):
        if not all(isinstance(s, dict) for s in obj["steps"]):
            return ParseError("`steps` must be a list of objects")
        return ParsedCommand(PipelineCommand.from_dict(obj))
    if _looks_like_step(obj):
        return ParsedSingleStep(PipelineStep.from_dict(obj))
    return ParseError("reply does not match the pipeline shape ({\"steps\": [...]})")
