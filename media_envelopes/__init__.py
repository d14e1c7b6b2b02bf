from __future__ import annotations

from .tool_envelope import ToolEnvelope

__all__ = ["ToolEnvelope"]
