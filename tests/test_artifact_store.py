from __future__ import annotations

import os
import threading

import pytest

from media_artifacts import ArtifactStore, build_artifact, is_valid_artifact_id, prune_artifacts


@pytest.fixture
def store(tmp_path):
    s = ArtifactStore(str(tmp_path / "data"), capacity=10).open()
    yield s
    s.close()


def _fill(store, n):
    return [store.persist(b"%d" % i, "mp4", None, f"out-{i}.mp4") for i in range(n)]


def test_persist_writes_file_and_lists_it(store):
    a = store.persist(b"hello", "PNG", None, "output.png")
    assert is_valid_artifact_id(a.id)
    assert a.ext == "png"
    assert a.content_type == "image/png"
    assert os.path.basename(a.path) == f"{a.id}.png"
    with open(a.path, "rb") as f:
        assert f.read() == b"hello"
    assert [x.id for x in store.artifacts()] == [a.id]
    assert a.public_dict()["url"] == f"/artifacts/{a.id}"


def test_capacity_evicts_oldest_and_deletes_files(store):
    made = _fill(store, 12)
    listed = store.artifacts()
    assert len(listed) == 10
    assert [a.id for a in listed] == [a.id for a in made[2:]]
    assert not os.path.exists(made[0].path)
    assert not os.path.exists(made[1].path)
    assert all(os.path.exists(a.path) for a in made[2:])
    assert len({a.id for a in made}) == 12


def test_state_survives_reopen(tmp_path):
    data = str(tmp_path / "data")
    with ArtifactStore(data) as s:
        a = s.persist(b"x", "wav", None, "output.wav")
        s.append_message("user", "make it quieter", [a.id])
    with ArtifactStore(data) as s:
        assert [x.id for x in s.artifacts()] == [a.id]
        assert s.messages()[0]["content"] == "make it quieter"
        assert s.messages()[0]["artifactIds"] == [a.id]


def test_corrupt_state_yields_empty_session(tmp_path):
    data = tmp_path / "data"
    data.mkdir()
    (data / "state.json").write_text("{{{ not json", encoding="utf-8")
    with ArtifactStore(str(data)) as s:
        assert s.artifacts() == []
        assert s.messages() == []


def test_lookup_falls_back_to_disk(tmp_path):
    data = str(tmp_path / "data")
    with ArtifactStore(data) as s:
        a = s.persist(b"x", "mp3", None, "output.mp3")
    os.remove(os.path.join(data, "state.json"))
    with ArtifactStore(data) as s:
        assert s.artifacts() == []
        found = s.lookup(a.id)
        assert found is not None
        assert found.path == a.path
        assert found.content_type == "audio/mpeg"
        assert s.lookup("nope-0000") is None
        assert s.lookup("../etc") is None


def test_pinned_artifact_file_outlives_eviction(store):
    first = store.persist(b"keep", "mp4", None, "first.mp4")
    with store.pinned([first.id]):
        _fill(store, 10)
        assert first.id not in [a.id for a in store.artifacts()]
        assert os.path.exists(first.path)
        assert store.lookup(first.id) is None
    assert not os.path.exists(first.path)


def test_nested_pins_release_on_last(store):
    first = store.persist(b"keep", "mp4", None, "first.mp4")
    with store.pinned([first.id]):
        with store.pinned([first.id]):
            _fill(store, 10)
        assert os.path.exists(first.path)
    assert not os.path.exists(first.path)


def test_reset_clears_everything(store):
    made = _fill(store, 3)
    store.append_message("user", "hi")
    store.reset()
    assert store.artifacts() == []
    assert store.messages() == []
    assert not any(os.path.exists(a.path) for a in made)
    # Still usable afterwards.
    assert store.persist(b"x", "gif", None, "o.gif").content_type == "image/gif"


def test_reset_respects_pins(store):
    a, b = _fill(store, 2)
    with store.pinned([a.id]):
        store.reset()
        assert os.path.exists(a.path)
        assert not os.path.exists(b.path)
    assert not os.path.exists(a.path)


def test_reset_with_pin_removes_unlisted_files(store):
    a = store.persist(b"keep", "mp4", None, "a.mp4")
    stray = os.path.join(store.artifacts_dir, "ffff-0123456789.wav")
    with open(stray, "wb") as f:
        f.write(b"left over")
    with store.pinned([a.id]):
        store.reset()
        assert not os.path.exists(stray)
        assert os.path.exists(a.path)
        assert store.lookup("ffff-0123456789") is None
        assert store.lookup(a.id) is None
    assert os.listdir(store.artifacts_dir) == []


def test_pin_and_unpin(store):
    a = store.persist(b"keep", "mp4", None, "a.mp4")
    ids = store.pin([a.id, a.id, ""])
    assert ids == [a.id]
    _fill(store, 10)
    assert os.path.exists(a.path)
    store.unpin(ids)
    assert not os.path.exists(a.path)
    # Unpinning again is harmless.
    store.unpin(ids)


def test_concurrent_persists_respect_capacity(store):
    made = []
    barrier = threading.Barrier(20)

    def work(i):
        barrier.wait()
        made.append(store.persist(b"%d" % i, "mp4", None, f"out-{i}.mp4"))

    threads = [threading.Thread(target=work, args=(i,)) for i in range(20)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len({a.id for a in made}) == 20
    listed = store.artifacts()
    assert len(listed) == 10
    on_disk = sorted(os.listdir(store.artifacts_dir))
    assert len(on_disk) == 10
    assert not any(n.endswith(".tmp") for n in on_disk)
    assert on_disk == sorted(os.path.basename(a.path) for a in listed)


def test_persist_file_copies_scratch_output(store, tmp_path):
    src = tmp_path / "output.flac"
    src.write_bytes(b"flac")
    a = store.persist_file(str(src), "flac", None, "output.flac")
    assert a.size == 4
    assert src.exists()
    with open(a.path, "rb") as f:
        assert f.read() == b"flac"


def test_prune_artifacts_function(tmp_path):
    items = []
    for i in range(4):
        p = tmp_path / f"a{i}.bin"
        p.write_bytes(b"x")
        items.append(build_artifact(artifact_id=f"a-{i}", name="", ext="bin", content_type=None, path=str(p), size=1))
    kept, evicted = prune_artifacts(items, 2, pinned=["a-0"])
    assert [a.id for a in kept] == ["a-2", "a-3"]
    assert [a.id for a in evicted] == ["a-0", "a-1"]
    assert (tmp_path / "a0.bin").exists()
    assert not (tmp_path / "a1.bin").exists()


def test_capacity_must_be_positive(tmp_path):
    with pytest.raises(ValueError):
        ArtifactStore(str(tmp_path), capacity=0)
