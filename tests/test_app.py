from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from executor import settings
from executor.app import main
from executor.pipeline import PipelineCommand, ToolExecutionFailure, ToolResult


def _command(*steps):
    return PipelineCommand.from_dict({"steps": list(steps)})


@pytest.fixture
def client(tmp_path, monkeypatch):
    scratch = tmp_path / "scratch"
    scratch.mkdir()
    monkeypatch.setattr(settings, "DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setattr(settings, "SCRATCH_ROOT", str(scratch))
    with TestClient(main.app) as c:
        yield c


@pytest.fixture
def fake_tools(monkeypatch):
    """Generator returns whatever the test queues; the runner writes b"OUT" to {output}."""
    state = {"commands": [], "descriptors": [], "runs": []}

    async def fake_generate(prompt, files, *, api_key=None, base_url=None, model=None):
        state["descriptors"].append(list(files))
        return state["commands"].pop(0)

    async def fake_run(tool, argv, timeout_s=None, cwd=None):
        state["runs"].append((tool, list(argv), cwd))
        with open(argv[-1], "wb") as f:
            f.write(b"OUT")
        return ToolResult(stdout="", stderr="", returncode=0, duration_ms=1)

    monkeypatch.setattr(main, "generate_command", fake_generate)
    monkeypatch.setattr(main, "run_tool", fake_run)
    return state


def _upload(client, prompt="extract audio", **data):
    return client.post(
        "/process",
        data={"prompt": prompt, **data},
        files=[("files", ("clip.mp4", b"video-bytes", "video/mp4"))],
    )


def test_healthz(client):
    assert client.get("/healthz").json() == {"status": "ok"}


def test_validate_accepts_and_rejects(client):
    ok = client.post(
        "/pipeline.validate",
        json={
            "command": {"steps": [{"tool": "sox", "args": ["{input:file-1}", "{output}"], "outputExt": "wav"}]},
            "ids": ["file-1"],
        },
    ).json()
    assert ok["ok"] is True
    assert ok["result"] == {"steps": 1}

    bad = client.post(
        "/pipeline.validate",
        json={
            "command": {"steps": [{"tool": "sox", "args": ["/etc/passwd", "{input:file-1}", "{output}"], "outputExt": "wav"}]},
            "ids": ["file-1"],
        },
    ).json()
    assert bad["ok"] is False
    assert bad["error"]["code"] == "unsafe_path"
    assert bad["error"]["step"] == 1

    malformed = client.post("/pipeline.validate", json={"command": [], "ids": ["file-1"]}).json()
    assert malformed["error"]["code"] == "invalid_request"


def test_empty_session_and_unknown_action(client):
    assert client.get("/session").json() == {"artifacts": [], "messages": []}
    r = client.post("/session", json={"action": "explode"})
    assert r.status_code == 400
    assert "error" in r.json()


def test_unknown_artifact_is_404(client):
    assert client.get("/artifacts/ffff-0123456789").status_code == 404
    assert client.get("/artifacts/not_an_id").status_code == 404


def test_process_requires_prompt_and_files(client, fake_tools):
    assert client.post("/process", data={"prompt": "  "}).status_code == 400
    r = client.post("/process", data={"prompt": "do it"})
    assert r.status_code == 400
    assert r.json()["error"] == "no files uploaded"
    assert fake_tools["runs"] == []


def test_process_runs_pipeline_and_persists(client, fake_tools):
    fake_tools["commands"].append(
        _command(
            {"tool": "ffmpeg", "args": ["-i", "{input:file-1}", "{output}"], "outputExt": "MP4"},
            {"tool": "ffmpeg", "args": ["-i", "{input:step-1}", "-vn", "{output}"], "outputExt": "mp3"},
        )
    )
    r = _upload(client)
    assert r.status_code == 200, r.text
    assert r.content == b"OUT"
    assert r.headers["content-type"].startswith("audio/mpeg")
    assert r.headers["x-output-filename"] == "output.mp3"
    assert 'filename="output.mp3"' in r.headers["content-disposition"]
    artifact_id = r.headers["x-artifact-id"]

    assert fake_tools["descriptors"][0] == [{"id": "file-1", "name": "clip.mp4", "type": "video/mp4"}]
    first_argv = fake_tools["runs"][0][1]
    assert first_argv[1].endswith("file-1.mp4")
    assert first_argv[2].endswith("step-1.mp4")

    session = client.get("/session").json()
    assert [a["id"] for a in session["artifacts"]] == [artifact_id]
    assert session["artifacts"][0]["url"] == f"/artifacts/{artifact_id}"
    assert [m["role"] for m in session["messages"]] == ["user", "assistant"]
    assert session["messages"][1]["artifactIds"] == [artifact_id]

    got = client.get(f"/artifacts/{artifact_id}")
    assert got.status_code == 200
    assert got.content == b"OUT"
    assert got.headers["content-disposition"].startswith("inline")


def test_stored_artifact_can_feed_a_new_pipeline(client, fake_tools):
    fake_tools["commands"].append(
        _command({"tool": "sox", "args": ["{input:file-1}", "{output}"], "outputExt": "wav"})
    )
    first = _upload(client).headers["x-artifact-id"]

    fake_tools["commands"].append(
        _command(
            {"tool": "sox", "args": ["{input:%s}" % first, "{input:prev}", "{output}"], "outputExt": "flac"}
        )
    )
    r = client.post(
        "/process",
        data={"prompt": "louder", "artifactIds": first, "aliases": '{"prev": "%s"}' % first},
    )
    assert r.status_code == 200, r.text
    ids = [d["id"] for d in fake_tools["descriptors"][1]]
    assert ids == [first, "prev"]
    argv = fake_tools["runs"][-1][1]
    assert argv[0] == argv[1]
    assert argv[0].endswith(f"{first}.wav")
    assert len(client.get("/session").json()["artifacts"]) == 2


def test_unknown_stored_artifact_is_rejected(client, fake_tools):
    r = client.post("/process", data={"prompt": "x", "artifactIds": "ffff-0123456789"})
    assert r.status_code == 400
    assert "unknown artifact" in r.json()["error"]
    r = client.post("/process", data={"prompt": "x", "aliases": "[1, 2]"})
    assert r.status_code == 400


def test_rejected_command_is_400_and_never_runs(client, fake_tools):
    fake_tools["commands"].append(
        _command({"tool": "ffmpeg", "args": ["-i", "{input:file-1}", "-vf", "movie=/etc/x.png", "{output}"], "outputExt": "mp4"})
    )
    r = _upload(client)
    assert r.status_code == 400
    body = r.json()
    assert body["code"] == "unsafe_path"
    assert body["step"] == 1
    assert body["error"].startswith("step 1:")
    assert fake_tools["runs"] == []
    assert client.get("/session").json()["artifacts"] == []


def test_tool_failure_is_500(client, fake_tools, monkeypatch):
    async def failing(tool, argv, timeout_s=None, cwd=None):
        raise ToolExecutionFailure("ffmpeg rejected an argument", tool=tool, returncode=1)

    monkeypatch.setattr(main, "run_tool", failing)
    fake_tools["commands"].append(
        _command({"tool": "ffmpeg", "args": ["-i", "{input:file-1}", "{output}"], "outputExt": "mp4"})
    )
    r = _upload(client)
    assert r.status_code == 500
    assert r.json()["code"] == "tool_failed"
    assert r.json()["kind"] == "tool"


def test_reset_clears_session(client, fake_tools):
    fake_tools["commands"].append(
        _command({"tool": "magick", "args": ["{input:file-1}", "{output}"], "outputExt": "png"})
    )
    artifact_id = _upload(client).headers["x-artifact-id"]
    assert client.post("/session", json={"action": "reset"}).json() == {"ok": True}
    assert client.get("/session").json() == {"artifacts": [], "messages": []}
    assert client.get(f"/artifacts/{artifact_id}").status_code == 404


@pytest.mark.parametrize("alias", ["step-1", "file-1", "file-2"])
def test_alias_may_not_shadow_minted_ids(client, fake_tools, alias):
    fake_tools["commands"].append(
        _command({"tool": "sox", "args": ["{input:file-1}", "{output}"], "outputExt": "wav"})
    )
    stored = _upload(client).headers["x-artifact-id"]
    runs = len(fake_tools["runs"])

    r = _upload(client, aliases='{"%s": "%s"}' % (alias, stored))
    assert r.status_code == 400
    assert "clashes" in r.json()["error"]
    assert len(fake_tools["runs"]) == runs
    assert fake_tools["commands"] == []


def test_alias_may_not_shadow_referenced_artifact(client, fake_tools):
    fake_tools["commands"].append(
        _command({"tool": "sox", "args": ["{input:file-1}", "{output}"], "outputExt": "wav"})
    )
    stored = _upload(client).headers["x-artifact-id"]
    r = client.post(
        "/process",
        data={"prompt": "x", "artifactIds": stored, "aliases": '{"%s": "%s"}' % (stored, stored)},
    )
    assert r.status_code == 400
    assert len(fake_tools["runs"]) == 1


def test_process_releases_pins(client, fake_tools):
    step = {"tool": "sox", "args": ["{input:file-1}", "{output}"], "outputExt": "wav"}
    fake_tools["commands"].append(_command(step))
    stored = _upload(client).headers["x-artifact-id"]
    fake_tools["commands"].append(
        _command({"tool": "sox", "args": ["{input:%s}" % stored, "{output}"], "outputExt": "wav"})
    )
    r = client.post("/process", data={"prompt": "again", "artifactIds": stored})
    assert r.status_code == 200, r.text
    assert main.app.state.store._pins == {}
    assert client.get(f"/artifacts/{stored}").content == b"OUT"
