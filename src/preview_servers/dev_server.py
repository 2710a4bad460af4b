"""Embedded development server for one preview workspace.

Each preview gets its own FastAPI app served by an in-process uvicorn server
bound to a pre-opened socket, so port 0 resolves to an OS-assigned port
before the server starts. The app serves the workspace files, allows iframe
embedding, and pushes reload notifications over a WebSocket.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import socket
import time
from collections.abc import Iterator, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import uvicorn
from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, HTMLResponse, Response

from src.workspace_files.policy import resolve_in_workspace

logger = logging.getLogger(__name__)

HMR_PATH = "/__preview__/hmr"
STATUS_PATH = "/__preview__/status"

_HMR_CLIENT = """<script type="module">
(() => {
  const proto = location.protocol === "https:" ? "wss" : "ws";
  const ws = new WebSocket(`${proto}://${location.host}__HMR_PATH__`);
  ws.addEventListener("message", (ev) => {
    try {
      const msg = JSON.parse(ev.data);
      if (msg.type === "full-reload") location.reload();
    } catch (_e) {}
  });
})();
</script>
""".replace("__HMR_PATH__", HMR_PATH)


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class RequestStats:
    request_count: int = 0
    error_count: int = 0
    last_activity_ms: int = field(default_factory=_now_ms)

    def touch(self) -> None:
        self.last_activity_ms = _now_ms()


class ReloadHub:
    """Tracks connected hot-reload clients and fans messages out to them."""

    def __init__(self) -> None:
        self._clients: set[WebSocket] = set()

    @property
    def client_count(self) -> int:
        return len(self._clients)

    def add(self, ws: WebSocket) -> None:
        self._clients.add(ws)

    def discard(self, ws: WebSocket) -> None:
        self._clients.discard(ws)

    async def broadcast(self, payload: dict[str, Any]) -> int:
        delivered = 0
        for ws in list(self._clients):
            try:
                await ws.send_json(payload)
                delivered += 1
            except Exception:
                # Client went away between messages.
                self._clients.discard(ws)
        return delivered

    async def close_all(self) -> None:
        for ws in list(self._clients):
            with contextlib.suppress(Exception):
                await ws.close(code=1001)
        self._clients.clear()


def inject_hmr_client(html: str) -> str:
    lower = html.lower()
    for marker in ("</head>", "</body>"):
        idx = lower.rfind(marker)
        if idx != -1:
            return html[:idx] + _HMR_CLIENT + html[idx:]
    return html + _HMR_CLIENT


def resolve_request_path(root: Path, request_path: str) -> Path | None:
    """Map a URL path onto a workspace file, or None for a 404."""
    rel = request_path.strip().lstrip("/")
    if not rel:
        index = root / "index.html"
        return index if index.is_file() else None

    try:
        target = resolve_in_workspace(root, rel)
    except ValueError:
        return None

    if target.is_dir():
        index = target / "index.html"
        return index if index.is_file() else None
    if target.is_file():
        return target

    # Client-side routes like /todos/42 fall back to the SPA entrypoint.
    if "." not in rel.rsplit("/", 1)[-1]:
        index = root / "index.html"
        return index if index.is_file() else None
    return None


def build_dev_app(
    workspace_dir: Path,
    *,
    stats: RequestStats,
    hub: ReloadHub,
    cors: bool = True,
    hmr: bool = True,
    frame_ancestors: str = "'self' http://localhost:*",
    cors_allow_origins: Sequence[str] = ("*",),
) -> FastAPI:
    root = Path(workspace_dir)
    app = FastAPI(docs_url=None, redoc_url=None, openapi_url=None)

    @app.middleware("http")
    async def _track_and_frame(request: Request, call_next):
        stats.request_count += 1
        stats.touch()
        try:
            response = await call_next(request)
        except Exception:
            stats.error_count += 1
            raise
        if response.status_code >= 500:
            stats.error_count += 1
        response.headers["X-Frame-Options"] = "SAMEORIGIN"
        response.headers["Content-Security-Policy"] = f"frame-ancestors {frame_ancestors}"
        response.headers["Cache-Control"] = "no-cache, no-store, must-revalidate"
        return response

    # Registered after the tracking middleware so it wraps it (preflights never reach files).
    if cors:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=list(cors_allow_origins),
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.get(STATUS_PATH)
    async def _status() -> dict:
        return {
            "status": "running",
            "hmr": hmr,
            "clients": hub.client_count,
            "timestamp_ms": _now_ms(),
        }

    if hmr:

        @app.websocket(HMR_PATH)
        async def _hmr(ws: WebSocket) -> None:
            await ws.accept()
            hub.add(ws)
            try:
                await ws.send_json({"type": "connected"})
                while True:
                    await ws.receive_text()
            except WebSocketDisconnect:
                pass
            finally:
                hub.discard(ws)

    @app.api_route("/{file_path:path}", methods=["GET", "HEAD"])
    async def _serve(file_path: str) -> Response:
        target = await asyncio.to_thread(resolve_request_path, root, file_path)
        if target is None:
            raise HTTPException(status_code=404, detail="file not found")
        if hmr and target.suffix.lower() in (".html", ".htm"):
            text = await asyncio.to_thread(
                target.read_text, encoding="utf-8", errors="replace"
            )
            return HTMLResponse(inject_hmr_client(text))
        return FileResponse(target)

    return app


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves process signal handling to the host application."""

    def install_signal_handlers(self) -> None:
        return

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield


class DevServer:
    def __init__(self, app: FastAPI, *, host: str, port: int = 0) -> None:
        self.app = app
        self.host = host
        self.requested_port = int(port)
        self.port = 0
        self._sock: socket.socket | None = None
        self._server: _EmbeddedServer | None = None
        self._task: asyncio.Task[None] | None = None

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.port}" if self.port else ""

    def _bind(self) -> socket.socket:
        infos = socket.getaddrinfo(
            self.host, self.requested_port, type=socket.SOCK_STREAM, flags=socket.AI_PASSIVE
        )
        family, socktype, proto, _canon, addr = infos[0]
        sock = socket.socket(family, socktype, proto)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind(addr)
        except BaseException:
            sock.close()
            raise
        return sock

    async def start(self, *, timeout_s: float) -> int:
        """Bind, start serving and wait until the listener is up. Returns the port."""
        self._sock = self._bind()
        self.port = int(self._sock.getsockname()[1])

        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            lifespan="off",
            log_config=None,
            log_level="warning",
            access_log=False,
        )
        self._server = _EmbeddedServer(config)
        self._task = asyncio.create_task(
            self._server.serve(sockets=[self._sock]), name=f"dev-server:{self.port}"
        )
        try:
            await asyncio.wait_for(self._wait_started(), timeout=timeout_s)
        except TimeoutError as exc:
            await self.stop()
            raise TimeoutError(
                f"Preview server startup timeout after {timeout_s:.0f}s"
            ) from exc
        except BaseException:
            await self.stop()
            raise
        return self.port

    async def _wait_started(self) -> None:
        assert self._server is not None and self._task is not None
        while not self._server.started:
            if self._task.done():
                exc = None if self._task.cancelled() else self._task.exception()
                raise RuntimeError(f"Preview server exited during startup: {exc}") from exc
            await asyncio.sleep(0.02)

    def is_listening(self) -> bool:
        srv = self._server
        if srv is None or self._task is None or self._task.done():
            return False
        if not srv.started or srv.should_exit:
            return False
        servers = getattr(srv, "servers", None) or []
        return bool(servers) and all(s.is_serving() for s in servers)

    async def stop(self, *, timeout_s: float = 5.0) -> None:
        srv, task, sock = self._server, self._task, self._sock
        self._server = None
        self._task = None
        self._sock = None
        try:
            if srv is not None and task is not None and not task.done():
                srv.should_exit = True
                try:
                    await asyncio.wait_for(task, timeout=timeout_s)
                except TimeoutError:
                    logger.warning("Dev server on port %s did not stop in %.0fs", self.port, timeout_s)
                except Exception:
                    logger.warning("Dev server on port %s failed while stopping", self.port, exc_info=True)
        finally:
            if sock is not None:
                sock.close()
