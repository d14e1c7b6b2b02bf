from __future__ import annotations

import json
import logging
import os
import shutil
import threading
import uuid
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Set, Tuple

from media_json import JSONParser

from .schema import (
    Artifact,
    _now_iso,
    artifact_filename,
    build_artifact,
    content_type_for,
    generate_artifact_id,
    is_valid_artifact_id,
)

log = logging.getLogger(__name__)

DEFAULT_CAPACITY = 10
TMP_SUFFIX = ".tmp"


def _remove_file(path: str) -> None:
    # Best-effort: a failed delete never blocks eviction.
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as ex:
        log.warning("artifacts.remove_failed path=%s err=%r", path, ex)


def prune_artifacts(
    artifacts: Sequence[Artifact],
    capacity: int = DEFAULT_CAPACITY,
    *,
    pinned: Iterable[str] = (),
) -> Tuple[List[Artifact], List[Artifact]]:
    """
    Keep the most recent `capacity` entries (insertion order, oldest first).

    Returns (kept, evicted). Backing files of evicted entries are deleted,
    except for ids in `pinned`, whose deletion is left to the caller.
    """
    items = list(artifacts)
    if len(items) <= capacity:
        return items, []
    cut = len(items) - capacity
    evicted, kept = items[:cut], items[cut:]
    hold = set(pinned)
    for a in evicted:
        if a.id not in hold:
            _remove_file(a.path)
    log.info("artifacts.prune evicted=%s", [a.id for a in evicted])
    return kept, evicted


def write_state_atomic(path: str, state: Dict[str, Any]) -> None:
    os.makedirs(os.path.dirname(path), exist_ok=True)
    tmp = path + ".tmp"
    with open(tmp, "w", encoding="utf-8") as f:
        f.write(json.dumps(state, ensure_ascii=False, indent=2))
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp, path)


class ArtifactStore:
    """
    Bounded, durable store of pipeline outputs plus the session transcript.

    Layout under `data_dir`:
        artifacts/<id>.<ext>
        state.json   {"artifacts": [...], "messages": [...]}

    One instance per process, opened at startup and closed at shutdown. All
    mutations are serialized by one lock, so concurrent completions cannot
    both skip eviction or mint colliding ids. The store is the only code that
    deletes artifact files.
    """

    def __init__(self, data_dir: str, capacity: int = DEFAULT_CAPACITY):
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.data_dir = data_dir
        self.capacity = capacity
        self.artifacts_dir = os.path.join(data_dir, "artifacts")
        self.state_path = os.path.join(data_dir, "state.json")
        self._lock = threading.Lock()
        self._artifacts: List[Artifact] = []
        self._messages: List[Dict[str, Any]] = []
        self._pins: Dict[str, int] = {}
        self._deferred: Dict[str, Artifact] = {}
        self._reserved: Set[str] = set()
        self._opened = False

    # ---------------- lifecycle ----------------

    def open(self) -> "ArtifactStore":
        with self._lock:
            os.makedirs(self.artifacts_dir, exist_ok=True)
            self._artifacts, self._messages = self._load_state()
            self._artifacts, _ = prune_artifacts(self._artifacts, self.capacity)
            self._save_locked()
            self._opened = True
        log.info("artifacts.open dir=%s count=%d capacity=%d", self.data_dir, len(self._artifacts), self.capacity)
        return self

    def close(self) -> None:
        with self._lock:
            if not self._opened:
                return
            for a in self._deferred.values():
                _remove_file(a.path)
            self._deferred.clear()
            self._pins.clear()
            self._save_locked()
            self._opened = False
        log.info("artifacts.close dir=%s", self.data_dir)

    def __enter__(self) -> "ArtifactStore":
        return self.open()

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def _load_state(self) -> Tuple[List[Artifact], List[Dict[str, Any]]]:
        try:
            with open(self.state_path, "r", encoding="utf-8") as f:
                raw = f.read()
        except FileNotFoundError:
            return [], []
        parser = JSONParser()
        state = parser.parse(raw, {"artifacts": list, "messages": list})
        if parser.errors and not state.get("artifacts") and not state.get("messages"):
            log.warning("artifacts.state_unreadable path=%s errors=%s", self.state_path, parser.errors[:3])
        artifacts = [a for a in (Artifact.from_dict(d) for d in state["artifacts"] if isinstance(d, dict)) if a]
        messages = [m for m in state["messages"] if isinstance(m, dict)]
        return artifacts, messages

    def _save_locked(self) -> None:
        write_state_atomic(
            self.state_path,
            {"artifacts": [a.to_dict() for a in self._artifacts], "messages": self._messages},
        )

    # ---------------- artifacts ----------------

    def persist(self, data: bytes, ext: str, content_type: Optional[str], name: str) -> Artifact:
        """Write `data` under a fresh id, append it, evict beyond capacity."""
        artifact = self._reserve(ext, content_type, name, len(data))

        def write(tmp: str) -> None:
            with open(tmp, "wb") as f:
                f.write(data)

        return self._commit(artifact, write)

    def persist_file(self, src_path: str, ext: str, content_type: Optional[str], name: str) -> Artifact:
        """Like persist, copying an existing file (e.g. a pipeline's scratch output)."""
        artifact = self._reserve(ext, content_type, name, os.path.getsize(src_path))
        return self._commit(artifact, lambda tmp: shutil.copyfile(src_path, tmp))

    def _reserve(self, ext: str, content_type: Optional[str], name: str, size: int) -> Artifact:
        with self._lock:
            os.makedirs(self.artifacts_dir, exist_ok=True)
            taken = {a.id for a in self._artifacts} | self._reserved
            artifact_id = generate_artifact_id()
            while artifact_id in taken:
                artifact_id = generate_artifact_id(artifact_id)
            self._reserved.add(artifact_id)
        path = os.path.join(self.artifacts_dir, artifact_filename(artifact_id, ext))
        return build_artifact(
            artifact_id=artifact_id,
            name=name,
            ext=ext,
            content_type=content_type or content_type_for(ext),
            path=path,
            size=size,
        )

    def _commit(self, artifact: Artifact, write: Callable[[str], None]) -> Artifact:
        # Bytes land outside the lock; only the listing update is serialized.
        tmp = artifact.path + TMP_SUFFIX
        try:
            write(tmp)
            os.replace(tmp, artifact.path)
        except OSError:
            _remove_file(tmp)
            with self._lock:
                self._reserved.discard(artifact.id)
            raise
        with self._lock:
            self._reserved.discard(artifact.id)
            self._append_locked(artifact)
        return artifact

    def _append_locked(self, artifact: Artifact) -> None:
        kept, evicted = prune_artifacts(self._artifacts + [artifact], self.capacity, pinned=self._pins.keys())
        for a in evicted:
            if a.id in self._pins:
                log.info("artifacts.evict_deferred id=%s pins=%d", a.id, self._pins[a.id])
                self._deferred[a.id] = a
        self._artifacts = kept
        self._save_locked()
        log.info("artifacts.persist id=%s name=%s size=%d count=%d", artifact.id, artifact.name, artifact.size, len(kept))

    def artifacts(self) -> List[Artifact]:
        with self._lock:
            return list(self._artifacts)

    def lookup(self, artifact_id: str) -> Optional[Artifact]:
        if not is_valid_artifact_id(artifact_id):
            return None
        with self._lock:
            for a in self._artifacts:
                if a.id == artifact_id:
                    return a
            if artifact_id in self._deferred:
                return None
        return self._recover(artifact_id)

    def _recover(self, artifact_id: str) -> Optional[Artifact]:
        """Find `<id>.*` on disk when the listing lost track of it."""
        try:
            names = os.listdir(self.artifacts_dir)
        except FileNotFoundError:
            return None
        for name in sorted(names):
            if name.startswith(f"{artifact_id}.") and not name.endswith(TMP_SUFFIX):
                path = os.path.join(self.artifacts_dir, name)
                log.warning("artifacts.lookup_recovered id=%s path=%s", artifact_id, path)
                ext = os.path.splitext(name)[1].lstrip(".").lower()
                return build_artifact(
                    artifact_id=artifact_id,
                    name=name,
                    ext=ext,
                    content_type=content_type_for(ext),
                    path=path,
                    size=os.path.getsize(path),
                )
        return None

    def pin(self, artifact_ids: Iterable[str]) -> List[str]:
        """
        Hold artifacts used as inputs of an in-flight pipeline. Eviction still
        removes them from the listing; their files go when the last pin drops.
        Returns the ids to hand back to unpin.
        """
        ids = sorted({i for i in artifact_ids if i})
        with self._lock:
            for i in ids:
                self._pins[i] = self._pins.get(i, 0) + 1
        return ids

    def unpin(self, ids: Iterable[str]) -> None:
        with self._lock:
            for i in ids:
                n = self._pins.get(i, 0) - 1
                if n > 0:
                    self._pins[i] = n
                    continue
                self._pins.pop(i, None)
                deferred = self._deferred.pop(i, None)
                if deferred is not None:
                    _remove_file(deferred.path)
                    log.info("artifacts.evict_released id=%s", i)

    @contextmanager
    def pinned(self, artifact_ids: Iterable[str]) -> Iterator[None]:
        ids = self.pin(artifact_ids)
        try:
            yield
        finally:
            self.unpin(ids)

    def reset(self) -> None:
        """
        New session: drop every artifact file and the transcript.

        Files of pinned ids are deferred to their last unpin, and files still
        being written by persist are left for it to finish.
        """
        with self._lock:
            held = set(self._pins)
            listed = {a.id: a for a in self._artifacts}
            try:
                names = sorted(os.listdir(self.artifacts_dir))
            except FileNotFoundError:
                names = []
            for name in names:
                path = os.path.join(self.artifacts_dir, name)
                artifact_id = name.split(".", 1)[0]
                if artifact_id in self._reserved:
                    continue
                if artifact_id not in held:
                    _remove_file(path)
                elif artifact_id not in self._deferred:
                    self._deferred[artifact_id] = listed.get(artifact_id) or build_artifact(
                        artifact_id=artifact_id,
                        name=name,
                        ext=os.path.splitext(name)[1],
                        content_type=None,
                        path=path,
                        size=0,
                    )
            os.makedirs(self.artifacts_dir, exist_ok=True)
            self._artifacts = []
            self._messages = []
            self._save_locked()
        log.info("artifacts.reset dir=%s deferred=%d", self.data_dir, len(held))

    # ---------------- transcript ----------------

    def append_message(self, role: str, content: str, artifact_ids: Sequence[str] = ()) -> Dict[str, Any]:
        msg: Dict[str, Any] = {
            "id": uuid.uuid4().hex,
            "role": role,
            "content": content,
            "createdAt": _now_iso(),
        }
        if artifact_ids:
            msg["artifactIds"] = list(artifact_ids)
        with self._lock:
            self._messages.append(msg)
            self._save_locked()
        return msg

    def messages(self) -> List[Dict[str, Any]]:
        with self._lock:
            return list(self._messages)
