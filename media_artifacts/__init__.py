from __future__ import annotations

# Artifact schema and the bounded artifact store shared by the pipeline
# service and its HTTP layer.

from .schema import (
    CONTENT_TYPES,
    Artifact,
    build_artifact,
    content_type_for,
    generate_artifact_id,
    is_valid_artifact_id,
)
from .store import ArtifactStore, prune_artifacts

__all__ = [
    "CONTENT_TYPES",
    "Artifact",
    "build_artifact",
    "content_type_for",
    "generate_artifact_id",
    "is_valid_artifact_id",
    "ArtifactStore",
    "prune_artifacts",
]
