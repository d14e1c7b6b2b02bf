from __future__ import annotations

# Shared JSON utilities for media-tools.
# Exposes the tolerant JSONParser used for generator replies, form fields
# and the persisted session state.

from .json_parser import JSONParser  # re-export for convenience
