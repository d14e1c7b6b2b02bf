from __future__ import annotations
# HARD BAN (permanent): No Pydantic, no SQLAlchemy/ORM, no CSV/Parquet. JSON/NDJSON only.

import os
import re
import shutil
import tempfile
from typing import Any, Dict, List, Optional, Tuple
import logging, sys
from logging.handlers import RotatingFileHandler

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from starlette.concurrency import run_in_threadpool
from starlette.datastructures import UploadFile

from executor import settings
from executor.generator import generate_command
from executor.pipeline import (
    PipelineCommand,
    PipelineError,
    PipelineRejected,
    GeneratorError,
    check_pipeline,
    error_envelope,
    execute_pipeline,
    run_tool,
)
from executor.pipeline.resolver import build_reference_table
from media_artifacts import ArtifactStore, content_type_for, is_valid_artifact_id
from media_envelopes import ToolEnvelope
from media_json import JSONParser


app = FastAPI(title="Media Tools", version="0.1.0")
try:
    os.makedirs(settings.LOG_DIR, exist_ok=True)
    _log_file = settings.LOG_FILE or os.path.join(settings.LOG_DIR, "media-tools.log")
    _lvl = getattr(logging, settings.LOG_LEVEL or "INFO", logging.INFO)
    logging.basicConfig(
        level=_lvl,
        format="%(asctime)s.%(msecs)03d %(levelname)s %(process)d/%(threadName)s %(name)s %(funcName)s:%(lineno)d - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=[
            logging.StreamHandler(sys.stdout),
            RotatingFileHandler(_log_file, maxBytes=50 * 1024 * 1024, backupCount=5, encoding="utf-8"),
        ],
        force=True,
    )
    logging.getLogger("executor.logging").info("logging configured file=%r level=%s", _log_file, logging.getLevelName(_lvl))
except OSError as _ex:
    logging.basicConfig(level=logging.INFO, stream=sys.stdout, force=True)
    logging.getLogger("executor.logging").warning("file logging disabled: %s", _ex)
log = logging.getLogger("executor")

_UPLOAD_EXT_RE = re.compile(r"^\.[A-Za-z0-9]{1,10}$")
_ALIAS_RE = re.compile(r"^[A-Za-z0-9-]+$")
# Ids minted by the service itself; an alias may not shadow them.
_RESERVED_ID_RE = re.compile(r"^(?:file|step)-\d+$")


@app.on_event("startup")
async def _startup():
    store = ArtifactStore(settings.DATA_DIR, capacity=settings.ARTIFACT_CAPACITY)
    app.state.store = await run_in_threadpool(store.open)


@app.on_event("shutdown")
async def _shutdown():
    store = getattr(app.state, "store", None)
    if store is not None:
        await run_in_threadpool(store.close)


def _store(request: Request) -> ArtifactStore:
    return request.app.state.store


def _error(status: int, message: str, **extra: Any) -> JSONResponse:
    return JSONResponse(status_code=status, content={"error": message, **extra})


def _pipeline_error(e: PipelineError) -> JSONResponse:
    # Bad input and generator problems are the caller's to fix; tool and
    # internal failures are ours.
    status = 400 if isinstance(e, (PipelineRejected, GeneratorError)) else 500
    fields = error_envelope(e)["error"]
    return _error(status, str(e), kind=fields["kind"], code=fields["code"], step=fields["step"])


def _read_bytes(path: str) -> Optional[bytes]:
    try:
        with open(path, "rb") as f:
            return f.read()
    except FileNotFoundError:
        return None


def _write_bytes(path: str, data: bytes) -> None:
    with open(path, "wb") as f:
        f.write(data)


def _parse_id_list(raw: Any) -> List[str]:
    """`a,b` or `["a","b"]`."""
    if not isinstance(raw, str) or not raw.strip():
        return []
    text = raw.strip()
    if text.startswith("["):
        items = JSONParser().parse(text, [str])
    else:
        items = text.split(",")
    return [i.strip() for i in items if isinstance(i, str) and i.strip()]


def _parse_aliases(raw: Any) -> Dict[str, str]:
    """JSON object alias -> artifact id; ValueError for anything else."""
    if not isinstance(raw, str) or not raw.strip():
        return {}
    parsed = JSONParser().extract(raw, {})
    if not isinstance(parsed, dict):
        raise ValueError("aliases must be a JSON object")
    return {str(k).strip(): str(v).strip() for k, v in parsed.items() if isinstance(v, str)}


def _form_str(form: Any, key: str) -> Optional[str]:
    v = form.get(key)
    return v if isinstance(v, str) else None


async def _save_uploads(files: List[Any], workdir: str) -> List[Dict[str, str]]:
    saved: List[Dict[str, str]] = []
    for index, f in enumerate(files, start=1):
        if not isinstance(f, UploadFile):
            continue
        file_id = f"file-{index}"
        client_name = f.filename or file_id
        ext = os.path.splitext(client_name)[1]
        if not _UPLOAD_EXT_RE.match(ext):
            ext = ""
        path = os.path.join(workdir, f"{file_id}{ext.lower()}")
        await run_in_threadpool(_write_bytes, path, await f.read())
        saved.append(
            {
                "id": file_id,
                "name": client_name,
                "type": f.content_type or "application/octet-stream",
                "path": path,
            }
        )
    return saved


def _check_aliases(aliases: Dict[str, str], artifact_ids: List[str]) -> None:
    for alias in aliases:
        if not _ALIAS_RE.match(alias):
            raise ValueError(f"invalid alias {alias!r}")
        if _RESERVED_ID_RE.match(alias):
            raise ValueError(f"alias {alias!r} clashes with an upload or step id")
        if alias in artifact_ids:
            raise ValueError(f"alias {alias!r} clashes with a referenced artifact id")


def _resolve_stored(
    store: ArtifactStore, artifact_ids: List[str], aliases: Dict[str, str]
) -> Tuple[Dict[str, str], Dict[str, str], List[Dict[str, str]]]:
    """Map referenced artifacts and aliases to paths; raises ValueError on unknown ids."""
    artifact_paths: Dict[str, str] = {}
    alias_paths: Dict[str, str] = {}
    described: List[Dict[str, str]] = []
    for aid in artifact_ids:
        a = store.lookup(aid)
        if a is None:
            raise ValueError(f"unknown artifact {aid!r}")
        artifact_paths[a.id] = a.path
        described.append({"id": a.id, "name": a.name, "type": a.content_type})
    for alias, aid in aliases.items():
        a = store.lookup(aid)
        if a is None:
            raise ValueError(f"unknown artifact {aid!r} for alias {alias!r}")
        alias_paths[alias] = a.path
        described.append({"id": alias, "name": a.name, "type": a.content_type})
    return artifact_paths, alias_paths, described


@app.get("/healthz")
async def healthz():
    return {"status": "ok"}


@app.post("/process")
async def process(request: Request):
    store = _store(request)
    form = await request.form()
    prompt = _form_str(form, "prompt")
    if not prompt or not prompt.strip():
        return _error(400, "missing processing prompt")
    artifact_ids = list(dict.fromkeys(_parse_id_list(_form_str(form, "artifactIds"))))
    try:
        aliases = _parse_aliases(_form_str(form, "aliases"))
        _check_aliases(aliases, artifact_ids)
    except ValueError as ex:
        return _error(400, str(ex))
    files = [f for f in form.getlist("files") if isinstance(f, UploadFile)]
    if not files and not artifact_ids and not aliases:
        return _error(400, "no files uploaded")
    for aid in artifact_ids + list(aliases.values()):
        if not is_valid_artifact_id(aid):
            return _error(400, f"invalid artifact id {aid!r}")

    workdir = tempfile.mkdtemp(prefix="media-tools-", dir=settings.SCRATCH_ROOT)
    pins = await run_in_threadpool(store.pin, artifact_ids + list(aliases.values()))
    try:
        try:
            artifact_paths, alias_paths, described = await run_in_threadpool(_resolve_stored, store, artifact_ids, aliases)
            uploads = await _save_uploads(files, workdir)
            table = build_reference_table(
                uploads={u["id"]: u["path"] for u in uploads},
                artifacts=artifact_paths,
                aliases=alias_paths,
            )
        except ValueError as ex:
            return _error(400, str(ex))
        log.info("process.inputs uploads=%s artifacts=%s aliases=%s", [u["id"] for u in uploads], artifact_ids, list(aliases))

        descriptors = [{"id": u["id"], "name": u["name"], "type": u["type"]} for u in uploads] + described
        try:
            command = await generate_command(
                prompt,
                descriptors,
                api_key=_form_str(form, "apiKey"),
                base_url=_form_str(form, "baseUrl"),
                model=_form_str(form, "model"),
            )
            log.info("process.command %s", command.to_dict())
            result = await execute_pipeline(
                command,
                table,
                workdir,
                runner=run_tool,
                timeout_s=settings.EXEC_TIMEOUT_SEC,
            )
        except PipelineError as e:
            log.error("process.failed kind=%s code=%s step=%s reason=%s", e.kind, e.code, e.step, e.reason)
            return _pipeline_error(e)

        data = await run_in_threadpool(_read_bytes, result.output_path)
        if data is None:
            return _error(500, f"{command.steps[-1].tool} did not produce {result.output_name}")
        ext = command.steps[-1].output_ext.lower()
        content_type = content_type_for(ext)
        artifact = await run_in_threadpool(store.persist_file, result.output_path, ext, content_type, result.output_name)
    finally:
        await run_in_threadpool(store.unpin, pins)
        await run_in_threadpool(shutil.rmtree, workdir, True)

    await run_in_threadpool(store.append_message, "user", prompt, artifact_ids + list(aliases.values()))
    await run_in_threadpool(
        store.append_message,
        "assistant",
        f"Generated {result.output_name} in {len(command.steps)} step(s).",
        [artifact.id],
    )
    log.info("process.done artifact=%s name=%s size=%d", artifact.id, result.output_name, len(data))
    return Response(
        content=data,
        media_type=content_type,
        headers={
            "Content-Disposition": f'attachment; filename="{result.output_name}"',
            "X-Output-Filename": result.output_name,
            "X-Artifact-Id": artifact.id,
        },
    )


@app.post("/pipeline.validate")
async def pipeline_validate(body: Dict[str, Any]):
    cmd = body.get("command")
    ids = body.get("ids")
    if not isinstance(cmd, dict):
        return ToolEnvelope.failure(code="invalid_request", message="command must be an object", status=400)
    if not isinstance(ids, list) or not all(isinstance(i, str) for i in ids):
        return ToolEnvelope.failure(code="invalid_request", message="ids must be a list of strings", status=400)
    res = check_pipeline(PipelineCommand.from_dict(cmd), ids)
    if not res["ok"]:
        return ToolEnvelope.failure(code=res["code"], message=res["reason"], status=422, step=res["step"])
    return ToolEnvelope.success(result={"steps": len(cmd.get("steps") or [])})


@app.get("/session")
async def session(request: Request):
    store = _store(request)
    artifacts = await run_in_threadpool(store.artifacts)
    messages = await run_in_threadpool(store.messages)
    return {"artifacts": [a.public_dict() for a in artifacts], "messages": messages}


@app.post("/session")
async def session_action(body: Dict[str, Any]):
    if body.get("action") == "reset":
        await run_in_threadpool(app.state.store.reset)
        return {"ok": True}
    return _error(400, "unsupported action")


@app.get("/artifacts/{artifact_id}")
async def get_artifact(artifact_id: str, request: Request):
    artifact = await run_in_threadpool(_store(request).lookup, artifact_id)
    data = await run_in_threadpool(_read_bytes, artifact.path) if artifact is not None else None
    if data is None:
        log.warning("artifacts.not_found id=%s", artifact_id)
        return _error(404, "artifact not found")
    return Response(
        content=data,
        media_type=content_type_for(artifact.ext, artifact.content_type),
        headers={
            "Content-Disposition": f'inline; filename="{artifact.name}"',
            "Cache-Control": "no-store",
        },
    )
