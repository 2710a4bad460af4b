from __future__ import annotations

import contextlib
import logging
import os
import time
from collections.abc import AsyncIterator
from datetime import datetime, timezone
from typing import Any, Literal

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from src.preview_errors import PreviewError
from src.preview_runtime import PreviewRuntime
from src.preview_servers.manager import process_memory_bytes
from src.workspace_files.workspace_fs import FileUpdate

# Load local env after imports to keep linting (E402) happy.
load_dotenv()

logger = logging.getLogger(__name__)

_runtime: PreviewRuntime | None = None
_started_at = time.monotonic()


def _csv_env(name: str) -> list[str]:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return []
    return [p.strip() for p in raw.split(",") if p.strip()]


def _env_int(name: str, default: int) -> int:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return int(default)
    try:
        return int(raw)
    except Exception:
        return int(default)


@contextlib.asynccontextmanager
async def _lifespan(_app: FastAPI) -> AsyncIterator[None]:
    global _runtime
    async with PreviewRuntime() as runtime:
        _runtime = runtime
        try:
            yield
        finally:
            _runtime = None


app = FastAPI(lifespan=_lifespan)

# Middleware must be registered before the app starts serving requests.
_cors_origins = _csv_env("CORS_ALLOW_ORIGINS")
if _cors_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=_cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )


class CreatePreviewRequest(BaseModel):
    project_id: str = Field(min_length=1)
    project_name: str | None = None
    files: dict[str, str] = Field(default_factory=dict)


class FileUpdateModel(BaseModel):
    path: str = Field(min_length=1)
    content: str | None = None
    operation: Literal["create", "update", "delete"] = "update"


class UpdatePreviewRequest(BaseModel):
    server_id: str = Field(min_length=1)
    files: list[FileUpdateModel]


def _get_runtime() -> PreviewRuntime:
    if _runtime is None:
        raise RuntimeError("preview runtime is not running")
    return _runtime


def _error_body(error: PreviewError) -> dict[str, Any]:
    handler = _get_runtime().handler
    return {
        "success": False,
        "error": {
            **error.to_dict(),
            "severity": handler.get_severity(error),
            "action": handler.get_actionable_message(error),
        },
    }


def _error_response(error: PreviewError, status_code: int | None = None) -> JSONResponse:
    if status_code is None:
        # Budget rejections are caused by the request payload.
        status_code = 400 if error.context == "memory" else 500
    return JSONResponse(_error_body(error), status_code=status_code)


def _not_found(server_id: str) -> JSONResponse:
    runtime = _get_runtime()
    logger.info("Server not found: %s", server_id)
    err = runtime.handler.classify(LookupError("Server not found"), "server lookup")
    return _error_response(err, 404)


def _invalid_request(message: str, details: str) -> JSONResponse:
    return JSONResponse(
        {
            "success": False,
            "error": {
                "type": "UNKNOWN",
                "message": message,
                "details": details[:200],
                "retryable": False,
            },
        },
        status_code=400,
    )


@app.exception_handler(RequestValidationError)
async def _validation_error(_request: Request, exc: RequestValidationError) -> JSONResponse:
    return _invalid_request("Invalid request", str(exc.errors()))


@app.get("/")
async def root() -> dict[str, Any]:
    return {
        "name": "Preview Server",
        "status": "running",
        "endpoints": {
            "create": "POST /api/preview/create",
            "update": "POST /api/preview/update",
            "list": "GET /api/preview/list",
            "health": "GET /api/preview/health/{server_id}",
            "metrics": "GET /api/preview/metrics/{server_id}",
            "status": "GET /api/preview/status",
            "destroy": "DELETE /api/preview/{server_id}",
        },
    }


@app.get("/health")
async def health() -> dict[str, Any]:
    runtime = _get_runtime()
    return {
        "status": "ok",
        "uptime_s": round(time.monotonic() - _started_at, 3),
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "active_servers": len(runtime.orchestrator),
        "active_previews": len(runtime.governor),
        "memory": {"max_rss": process_memory_bytes()},
    }


@app.post("/api/preview/create")
async def api_create_preview(body: CreatePreviewRequest) -> JSONResponse:
    runtime = _get_runtime()
    logger.info("Creating preview for project: %s", body.project_id)
    try:
        res = await runtime.on_files(
            body.project_id, body.project_name or body.project_id, body.files, live=True
        )
    except ValueError as e:
        return _invalid_request("Invalid file path", str(e))
    if not res.success or res.error is not None:
        return _error_response(res.error)

    server = runtime.orchestrator.find_by_project(body.project_id)
    if server is None:
        return _not_found(body.project_id)
    return JSONResponse({"success": True, "server": server.to_dict()}, status_code=200)


@app.post("/api/preview/update")
async def api_update_preview(body: UpdatePreviewRequest) -> JSONResponse:
    runtime = _get_runtime()
    if runtime.orchestrator.get_server(body.server_id) is None:
        return _not_found(body.server_id)

    try:
        updates = [
            FileUpdate(path=f.path, content=f.content, operation=f.operation)
            for f in body.files
        ]
    except ValueError as e:
        return _invalid_request("Invalid file update", str(e))

    res = await runtime.apply_updates(body.server_id, updates)
    if not res.success or res.error is not None:
        return _error_response(res.error)
    return JSONResponse(
        {"success": True, "updated": res.value, "message": "Files updated successfully"},
        status_code=200,
    )


@app.get("/api/preview/list")
async def api_list_previews() -> JSONResponse:
    servers = _get_runtime().orchestrator.list_servers()
    return JSONResponse(
        {
            "success": True,
            "count": len(servers),
            "servers": [s.to_dict() for s in servers],
        },
        status_code=200,
    )


@app.get("/api/preview/health/{server_id}")
async def api_preview_health(server_id: str) -> JSONResponse:
    runtime = _get_runtime()
    server = runtime.orchestrator.get_server(server_id)
    if server is None:
        return _not_found(server_id)
    return JSONResponse(
        {
            "success": True,
            "healthy": runtime.orchestrator.health_check(server_id),
            "server": {"id": server.id, "status": server.status, "url": server.url},
        },
        status_code=200,
    )


@app.get("/api/preview/metrics/{server_id}")
async def api_preview_metrics(server_id: str) -> JSONResponse:
    metrics = _get_runtime().status.get_server_metrics(server_id)
    if metrics is None:
        return _not_found(server_id)
    return JSONResponse({"success": True, "metrics": metrics}, status_code=200)


@app.get("/api/preview/status")
async def api_preview_status() -> JSONResponse:
    return JSONResponse({"success": True, **_get_runtime().status.get_status()}, status_code=200)


@app.delete("/api/preview/{server_id}")
async def api_destroy_preview(server_id: str) -> JSONResponse:
    destroyed = await _get_runtime().destroy_server(server_id)
    if destroyed:
        logger.info("Destroyed server: %s", server_id)
    return JSONResponse(
        {"success": True, "message": "Server destroyed successfully"}, status_code=200
    )


def main() -> None:
    logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO").upper())
    uvicorn.run(
        app,
        host=os.environ.get("HOST") or "0.0.0.0",
        port=_env_int("PORT", 3001),
    )


if __name__ == "__main__":
    main()
