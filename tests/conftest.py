from __future__ import annotations

import os
import sys
import tempfile
from pathlib import Path


_REPO_ROOT = Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

# Keep the app's log file out of the working tree.
os.environ.setdefault("LOG_DIR", tempfile.mkdtemp(prefix="media-tools-logs-"))

import pytest

from executor.pipeline import PipelineCommand


@pytest.fixture
def make_command():
    def _make(*steps):
        return PipelineCommand.from_dict({"steps": list(steps)})

    return _make
