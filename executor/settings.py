from __future__ import annotations

import logging
import os
import tempfile

log = logging.getLogger(__name__)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, str(default))
    try:
        return int(str(raw).strip() or str(default))
    except ValueError:
        log.warning("bad %s=%r; defaulting to %d", name, raw, default)
        return default


def _env_str(name: str, default: str = "") -> str:
    return (os.getenv(name, default) or default).strip()


# Durable state: artifacts/<id>.<ext> plus state.json.
DATA_DIR = _env_str("DATA_DIR", os.path.join(os.getcwd(), "data"))
ARTIFACT_CAPACITY = _env_int("ARTIFACT_CAPACITY", 10)

# Scratch workspaces (one mkdtemp per request) live here.
SCRATCH_ROOT = _env_str("SCRATCH_ROOT", tempfile.gettempdir())

EXEC_TIMEOUT_SEC = _env_int("EXEC_TIMEOUT_SEC", 120)
EXEC_KILL_GRACE_SEC = _env_int("EXEC_KILL_GRACE_SEC", 5)
STDERR_MAX_CHARS = _env_int("STDERR_MAX_CHARS", 2000)

LOG_DIR = _env_str("LOG_DIR", os.path.join(DATA_DIR, "logs"))
LOG_FILE = _env_str("LOG_FILE", "")
LOG_LEVEL = _env_str("LOG_LEVEL", "INFO").upper()

# Command generator (OpenAI-compatible chat completions).
AI_API_KEY = _env_str("AI_API_KEY")
AI_BASE_URL = _env_str("AI_BASE_URL", "https://api.openai.com/v1")
AI_MODEL = _env_str("AI_MODEL", "gpt-4o-mini")
GENERATOR_TIMEOUT_SEC = _env_int("GENERATOR_TIMEOUT_SEC", 120)
