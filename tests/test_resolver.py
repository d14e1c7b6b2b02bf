from __future__ import annotations

import pytest

from executor.pipeline import PipelineStep
from executor.pipeline.resolver import build_reference_table, resolve_args, unresolved_placeholders


def _step(args, **extra):
    return PipelineStep.from_dict({"tool": "ffmpeg", "args": args, "outputExt": "mp4", **extra})


def test_placeholders_resolve_to_paths():
    table = {"file-1": "/w/file-1.mp4", "file-2": "/w/file-2.png"}
    argv = resolve_args(
        _step(["-i", "{input:file-1}", "-vf", "movie={input:file-2}[wm];[0][wm]overlay", "{output}"]),
        table,
        "/w/output.mp4",
    )
    assert argv == ["-i", "/w/file-1.mp4", "-vf", "movie=/w/file-2.png[wm];[0][wm]overlay", "/w/output.mp4"]
    assert unresolved_placeholders(argv) == []


def test_literal_arguments_pass_through_unchanged():
    argv = resolve_args(_step(["-y", "-c:v", "libx264", "{input:file-1}", "{output}"]), {"file-1": "a"}, "b")
    assert argv[:3] == ["-y", "-c:v", "libx264"]


def test_missing_reference_stays_literal():
    argv = resolve_args(_step(["-i", "{input:file-9}", "{output}"]), {}, "/w/out.mp4")
    assert argv == ["-i", "{input:file-9}", "/w/out.mp4"]
    assert unresolved_placeholders(argv) == ["{input:file-9}"]


def test_legacy_placeholder_uses_input_file_id():
    step = _step(["-i", "{input}", "{output}"], inputFileId="file-1")
    assert resolve_args(step, {"file-1": "/w/in.wav"}, "/w/o.mp4") == ["-i", "/w/in.wav", "/w/o.mp4"]
    assert resolve_args(_step(["-i", "{input}", "{output}"]), {"file-1": "x"}, "o")[1] == "{input}"


def test_resolution_does_not_touch_the_table():
    table = {"file-1": "/w/a"}
    resolve_args(_step(["{input:file-1}", "{output}"]), table, "/w/o")
    assert table == {"file-1": "/w/a"}


def test_build_reference_table_merges_groups():
    table = build_reference_table(uploads={"a": "1"}, artifacts={"b": "2"}, aliases={"c": "3"})
    assert table == {"a": "1", "b": "2", "c": "3"}


def test_build_reference_table_rejects_shared_ids():
    with pytest.raises(ValueError) as ei:
        build_reference_table(uploads={"step-1": "/w/a"}, aliases={"step-1": "/d/b"})
    assert "uploads" in str(ei.value)
    assert "aliases" in str(ei.value)


def test_resolution_is_repeatable_without_filesystem(tmp_path):
    # Paths need not exist: resolution never looks at the disk.
    table = {"file-1": str(tmp_path / "missing" / "a.mp4")}
    step = _step(["-i", "{input:file-1}", "-filter:a", "volume=2", "{output}"])
    first = resolve_args(step, table, str(tmp_path / "nowhere" / "o.mp4"))
    second = resolve_args(step, table, str(tmp_path / "nowhere" / "o.mp4"))
    assert first == second
    assert not (tmp_path / "nowhere").exists()
