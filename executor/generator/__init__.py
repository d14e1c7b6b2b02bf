from __future__ import annotations

# Boundary to the chat model that turns a prompt into a pipeline command.

from .client import generate_command
from .parsing import ParsedCommand, ParsedSingleStep, ParseError, parse_generator_reply

__all__ = [
    "generate_command",
    "ParsedCommand",
    "ParsedSingleStep",
    "ParseError",
    "parse_generator_reply",
]
