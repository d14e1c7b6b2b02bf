from __future__ import annotations

import uuid
from typing import Any, Dict, Optional

from fastapi.responses import JSONResponse


def _build_success_envelope(*, result: Dict[str, Any] | None, request_id: str) -> Dict[str, Any]:
    """
    Canonical success envelope for pipeline routes.
    Always includes schema_version, request_id, ok, result, error.
    """
    return {
        "schema_version": 1,
        "request_id": request_id if isinstance(request_id, str) else "",
        "ok": True,
        "result": dict(result or {}),
        "error": None,
    }


def _build_error_envelope(
    *,
    code: str,
    message: str,
    request_id: str,
    status: int,
    step: Optional[int] = None,
    details: Dict[str, Any] | None = None,
) -> Dict[str, Any]:
    """
    Canonical error envelope for pipeline routes.

    HTTP status is always 200; semantic status lives on error.status.
    `step` is the 1-based pipeline step the error belongs to, when known.
    """
    err_details: Dict[str, Any] = dict(details or {})
    err_details.setdefault("status", int(status))
    return {
        "schema_version": 1,
        "request_id": request_id if isinstance(request_id, str) else "",
        "ok": False,
        "result": None,
        "error": {
            "code": code,
            "message": message,
            "status": int(status),
            "step": step,
            "details": err_details,
        },
    }


class ToolEnvelope:
    @staticmethod
    def success(*, result: Dict[str, Any], request_id: str | None = None) -> JSONResponse:
        env = _build_success_envelope(result=result, request_id=request_id or uuid.uuid4().hex)
        return JSONResponse(env, status_code=200)

    @staticmethod
    def failure(
        *,
        code: str,
        message: str,
        status: int,
        step: Optional[int] = None,
        details: Dict[str, Any] | None = None,
        request_id: str | None = None,
    ) -> JSONResponse:
        env = _build_error_envelope(
            code=code,
            message=message,
            request_id=request_id or uuid.uuid4().hex,
            status=int(status),
            step=step,
            details=details,
        )
        return JSONResponse(env, status_code=200)
