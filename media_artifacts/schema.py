"""
Canonical artifact definitions.

Artifacts are the persisted final outputs of completed pipelines. Their ids
double as pipeline reference ids (`{input:<artifact-id>}`), so they are
restricted to `[A-Za-z0-9-]` and safe for URLs and filenames as-is.
"""
from __future__ import annotations

import hashlib
import os
import re
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

CONTENT_TYPES: Dict[str, str] = {
    "mp4": "video/mp4",
    "mov": "video/quicktime",
    "mp3": "audio/mpeg",
    "wav": "audio/wav",
    "flac": "audio/flac",
    "png": "image/png",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "webp": "image/webp",
    "gif": "image/gif",
}
DEFAULT_CONTENT_TYPE = "application/octet-stream"

_ID_RE = re.compile(r"^[A-Za-z0-9-]+$")


def content_type_for(ext: str, fallback: Optional[str] = None) -> str:
    return CONTENT_TYPES.get((ext or "").lower().lstrip("."), fallback or DEFAULT_CONTENT_TYPE)


def is_valid_artifact_id(artifact_id: Any) -> bool:
    return isinstance(artifact_id, str) and bool(_ID_RE.match(artifact_id))


def generate_artifact_id(suffix_data: Any = None) -> str:
    """
    Format: {ms-timestamp-hex}-{10 hex chars}

    Sorting ids lexically follows creation order for ids minted in the same
    era of the clock; uniqueness comes from hashing a fresh UUID together with
    the timestamp and any caller-provided suffix data.
    """
    now_ms = int(time.time() * 1000)
    hash_input = f"{now_ms}:{uuid.uuid4().hex}"
    if suffix_data is not None:
        hash_input += f":{suffix_data}"
    return f"{now_ms:x}-{hashlib.sha256(hash_input.encode()).hexdigest()[:10]}"


def artifact_filename(artifact_id: str, ext: str) -> str:
    ext = (ext or "").lower().lstrip(".")
    return f"{artifact_id}.{ext}" if ext else artifact_id


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class Artifact:
    id: str
    name: str
    ext: str
    content_type: str
    path: str
    size: int
    created_at: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "ext": self.ext,
            "contentType": self.content_type,
            "path": self.path,
            "size": self.size,
            "createdAt": self.created_at,
        }

    def public_dict(self) -> Dict[str, Any]:
        """Listing shape for clients: no filesystem path."""
        return {
            "id": self.id,
            "name": self.name,
            "contentType": self.content_type,
            "size": self.size,
            "createdAt": self.created_at,
            "url": f"/artifacts/{self.id}",
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> Optional["Artifact"]:
        """None when the record is unusable (no valid id or path)."""
        artifact_id = d.get("id")
        path = d.get("path")
        if not is_valid_artifact_id(artifact_id) or not isinstance(path, str) or not path:
            return None
        ext = str(d.get("ext") or os.path.splitext(path)[1].lstrip(".")).lower()
        size = d.get("size")
        return cls(
            id=artifact_id,
            name=str(d.get("name") or os.path.basename(path)),
            ext=ext,
            content_type=str(d.get("contentType") or content_type_for(ext)),
            path=path,
            size=int(size) if isinstance(size, (int, float)) else 0,
            created_at=str(d.get("createdAt") or _now_iso()),
        )


def build_artifact(*, artifact_id: str, name: str, ext: str, content_type: Optional[str], path: str, size: int) -> Artifact:
    ext = (ext or "").lower().lstrip(".")
    return Artifact(
        id=artifact_id,
        name=name or artifact_filename(artifact_id, ext),
        ext=ext,
        content_type=content_type or content_type_for(ext),
        path=path,
        size=int(size),
        created_at=_now_iso(),
    )
