"""
Placeholder grammar shared by the validator and the resolver.

    {output}          the step's output path (exactly one per step)
    {input:<ref-id>}  path of a known reference, ref-id is [A-Za-z0-9-]+
    {input}           legacy form, resolves through the step's inputFileId

Every argument is split into a tuple of tokens. Text around or between
placeholders becomes Literal segments, so `movie={input:file-2}` parses to
(Literal("movie="), InputToken("file-2")).
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, List, Tuple, Union

OUTPUT_PLACEHOLDER = "{output}"
LEGACY_INPUT_PLACEHOLDER = "{input}"

_PLACEHOLDER_RE = re.compile(r"\{output\}|\{input(?::([A-Za-z0-9-]+))?\}")


@dataclass(frozen=True)
class Literal:
    text: str


@dataclass(frozen=True)
class OutputToken:
    pass


@dataclass(frozen=True)
class InputToken:
    ref_id: str


@dataclass(frozen=True)
class LegacyInputToken:
    pass


Token = Union[Literal, OutputToken, InputToken, LegacyInputToken]


def parse_arg(arg: str) -> Tuple[Token, ...]:
    out: List[Token] = []
    pos = 0
    for m in _PLACEHOLDER_RE.finditer(arg):
        if m.start() > pos:
            out.append(Literal(arg[pos : m.start()]))
        if m.group(0) == OUTPUT_PLACEHOLDER:
            out.append(OutputToken())
        elif m.group(1):
            out.append(InputToken(m.group(1)))
        else:
            out.append(LegacyInputToken())
        pos = m.end()
    if pos < len(arg) or not out:
        out.append(Literal(arg[pos:]))
    return tuple(out)


def parse_args(args: Iterable[str]) -> List[Tuple[Token, ...]]:
    return [parse_arg(a) for a in args]


def is_single_placeholder(tokens: Tuple[Token, ...]) -> bool:
    return len(tokens) == 1 and not isinstance(tokens[0], Literal)


def has_placeholder(tokens: Tuple[Token, ...]) -> bool:
    return any(not isinstance(t, Literal) for t in tokens)

