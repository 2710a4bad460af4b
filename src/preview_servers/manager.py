"""Lifecycle management for live preview servers.

Each ``PreviewServer`` owns one workspace directory and one embedded dev
server. The manager provisions them, applies file batches, checks liveness,
and tears everything down again.

Usage:
    manager = PreviewServerManager(handler=PreviewErrorHandler())
    res = await manager.create_server(PreviewServerConfig(project_id="p1"))
    server = res.value
    await manager.update_files(server.id, [FileUpdate("index.html", "<h1>hi</h1>", "create")])
    print(server.url)
    await manager.destroy_all()
"""

from __future__ import annotations

import asyncio
import logging
import resource
import socket
import sys
import time
import uuid
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from src.concurrency import KeyedLock, PeriodicTask
from src.preview_errors import OperationResult, PreviewErrorHandler
from src.preview_servers.config import OrchestratorSettings, PreviewServerConfig
from src.preview_servers.dev_server import DevServer, ReloadHub, RequestStats, build_dev_app
from src.workspace_files.workspace_fs import (
    FileUpdate,
    WorkspaceFs,
    create_temp_workspace,
    remove_workspace,
)

logger = logging.getLogger(__name__)

ServerStatus = Literal["starting", "running", "stopped", "error"]


class PreviewCancelledError(RuntimeError):
    pass


def _now_ms() -> int:
    return int(time.time() * 1000)


def process_memory_bytes() -> int:
    # ru_maxrss is KiB on Linux and bytes on macOS.
    rss = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
    return int(rss if sys.platform == "darwin" else rss * 1024)


def _check_cancel(cancel: asyncio.Event | None) -> None:
    if cancel is not None and cancel.is_set():
        raise PreviewCancelledError("Preview operation cancelled")


def _error_context(exc: BaseException, default: str) -> str:
    return "cancelled" if isinstance(exc, PreviewCancelledError) else default


@dataclass
class PreviewServer:
    id: str
    project_id: str
    workspace_dir: Path
    host: str
    port: int = 0
    url: str = ""
    status: ServerStatus = "starting"
    started_at_ms: int | None = None
    stats: RequestStats = field(default_factory=RequestStats)
    hub: ReloadHub = field(default_factory=ReloadHub)
    dev_server: DevServer | None = field(default=None, repr=False)
    cleanup_callbacks: list[Callable[[], Awaitable[None]]] = field(
        default_factory=list, repr=False
    )
    # Files written through update_files; None when the workspace held unknown content.
    written_files: dict[str, str] | None = field(default=None, repr=False)

    @property
    def request_count(self) -> int:
        return self.stats.request_count

    @property
    def error_count(self) -> int:
        return self.stats.error_count

    @property
    def workspace(self) -> WorkspaceFs:
        return WorkspaceFs(self.workspace_dir)

    def on_cleanup(self, callback: Callable[[], Awaitable[None]]) -> None:
        self.cleanup_callbacks.append(callback)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "url": self.url,
            "port": self.port,
            "status": self.status,
            "workspace_dir": str(self.workspace_dir),
            "started_at_ms": self.started_at_ms,
            "request_count": self.request_count,
            "error_count": self.error_count,
        }


def _record_written(server: PreviewServer, update: FileUpdate) -> None:
    written = server.written_files
    if written is None:
        return
    if update.operation == "delete":
        prefix = update.path + "/"
        for path in [p for p in written if p == update.path or p.startswith(prefix)]:
            del written[path]
    else:
        written[update.path] = update.content or ""


def get_available_port(preferred_port: int = 0, host: str = "localhost") -> int:
    """Ask the OS for a free port (or confirm ``preferred_port`` is free)."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1" if host == "localhost" else host, preferred_port))
        return int(sock.getsockname()[1])


class PreviewServerManager:
    def __init__(
        self,
        settings: OrchestratorSettings | None = None,
        *,
        handler: PreviewErrorHandler,
    ) -> None:
        self.settings = settings or OrchestratorSettings()
        self._handler = handler
        self._servers: dict[str, PreviewServer] = {}
        self._locks = KeyedLock()
        self._stale_sweeper: PeriodicTask | None = None

    def __len__(self) -> int:
        return len(self._servers)

    async def create_server(
        self,
        config: PreviewServerConfig,
        *,
        cancel: asyncio.Event | None = None,
    ) -> OperationResult[PreviewServer]:
        owns_workspace = not config.base_dir
        try:
            if config.base_dir:
                workspace_dir = Path(config.base_dir)
                await asyncio.to_thread(workspace_dir.mkdir, parents=True, exist_ok=True)
            else:
                workspace_dir = await asyncio.to_thread(
                    create_temp_workspace,
                    config.project_id,
                    tmp_root=self.settings.tmp_root,
                    prefix=self.settings.workspace_prefix,
                )
        except Exception as exc:
            err = self._handler.classify(exc, "server start")
            logger.error("Failed to provision workspace for %s: %s", config.project_id, err.message)
            return OperationResult.fail(err)

        server = PreviewServer(
            id=uuid.uuid4().hex[:12],
            project_id=config.project_id,
            workspace_dir=workspace_dir,
            host=config.host or self.settings.host,
        )
        if owns_workspace:

            async def _remove_workspace() -> None:
                await asyncio.to_thread(remove_workspace, workspace_dir)

            server.on_cleanup(_remove_workspace)
            server.written_files = {}

        app = build_dev_app(
            workspace_dir,
            stats=server.stats,
            hub=server.hub,
            cors=config.cors,
            hmr=config.hmr,
            frame_ancestors=self.settings.frame_ancestors,
            cors_allow_origins=self.settings.cors_allow_origins,
        )
        server.dev_server = DevServer(app, host=server.host, port=config.port)
        timeout_s = config.startup_timeout_s or self.settings.startup_timeout_s

        try:
            logger.info("Starting preview server for project %s", config.project_id)
            server.port = await server.dev_server.start(timeout_s=timeout_s)
            server.url = server.dev_server.url
            _check_cancel(cancel)
        except (Exception, asyncio.CancelledError) as exc:
            server.status = "error"
            server.stats.error_count += 1
            await self._teardown(server)
            if isinstance(exc, asyncio.CancelledError):
                raise
            err = self._handler.classify(exc, _error_context(exc, "server start"))
            logger.error(
                "Failed to start preview server for %s: %s",
                config.project_id,
                self._handler.format_for_logging(err),
            )
            return OperationResult.fail(err)

        server.status = "running"
        server.started_at_ms = _now_ms()
        server.stats.touch()
        self._servers[server.id] = server
        logger.info("Preview server started: %s (id: %s)", server.url, server.id)
        return OperationResult.ok(server)

    async def create_preview_from_files(
        self,
        project_id: str,
        files: Mapping[str, str],
        *,
        cors: bool = True,
        hmr: bool = True,
        cancel: asyncio.Event | None = None,
    ) -> OperationResult[PreviewServer]:
        """Start a server for ``project_id`` and write the initial snapshot into it."""
        res = await self.create_server(
            PreviewServerConfig(project_id=project_id, cors=cors, hmr=hmr), cancel=cancel
        )
        if not res.success or res.value is None or not files:
            return res
        server = res.value
        upd = await self.update_files(server.id, FileUpdate.from_snapshot(files), cancel=cancel)
        if not upd.success:
            await self.destroy_server(server.id)
            return OperationResult.fail(upd.error)
        logger.info("Created %d files for %s", len(files), project_id)
        return res

    def get_server(self, server_id: str) -> PreviewServer | None:
        return self._servers.get(server_id)

    def list_servers(self) -> list[PreviewServer]:
        return list(self._servers.values())

    def find_by_project(self, project_id: str) -> PreviewServer | None:
        for server in self._servers.values():
            if server.project_id == project_id:
                return server
        return None

    async def _teardown(self, server: PreviewServer) -> None:
        dev = server.dev_server
        server.dev_server = None
        if dev is not None:
            await server.hub.close_all()
            await dev.stop()
        callbacks = list(server.cleanup_callbacks)
        server.cleanup_callbacks.clear()
        for callback in callbacks:
            try:
                await callback()
            except Exception:
                logger.error(
                    "Cleanup callback failed for preview server %s", server.id, exc_info=True
                )

    async def destroy_server(self, server_id: str) -> None:
        async with self._locks.lock(server_id):
            server = self._servers.get(server_id)
            if server is None:
                return
            await self._teardown(server)
            server.status = "stopped"
            self._servers.pop(server_id, None)
            logger.info("Preview server stopped: %s", server_id)

    async def destroy_all(self) -> None:
        ids = list(self._servers)
        if ids:
            await asyncio.gather(*(self.destroy_server(sid) for sid in ids))
        logger.info("All preview servers stopped (%d)", len(ids))

    async def update_files(
        self,
        server_id: str,
        updates: Sequence[FileUpdate],
        *,
        cancel: asyncio.Event | None = None,
    ) -> OperationResult[int]:
        async with self._locks.lock(server_id):
            server = self._servers.get(server_id)
            if server is None or server.status != "running":
                logger.warning("Cannot update files, preview server not running: %s", server_id)
                return OperationResult.fail(
                    self._handler.classify(
                        LookupError("Preview server not running"), "server update"
                    )
                )

            fs = server.workspace
            applied = 0
            try:
                for update in updates:
                    _check_cancel(cancel)
                    await asyncio.to_thread(fs.apply, update)
                    applied += 1
                    _record_written(server, update)
                    logger.debug("%s %s in %s", update.operation, update.path, server_id)
            except Exception as exc:
                server.stats.error_count += 1
                err = self._handler.classify(exc, _error_context(exc, "file update"))
                logger.error(
                    "Failed to update files in %s after %d/%d: %s",
                    server_id,
                    applied,
                    len(updates),
                    self._handler.format_for_logging(err),
                )
                return OperationResult.fail(err)
            finally:
                server.stats.touch()
                if applied:
                    # One reload per batch, even when the batch stopped early.
                    await server.hub.broadcast({"type": "full-reload", "path": "*"})

            logger.info("Updated %d files in server %s", applied, server_id)
            return OperationResult.ok(applied)

    def health_check(self, server_id: str) -> bool:
        server = self._servers.get(server_id)
        if server is None or server.status != "running" or server.dev_server is None:
            return False
        try:
            return server.dev_server.is_listening()
        except Exception:
            return False

    async def cleanup_stale_servers(self, max_age_s: float | None = None) -> list[str]:
        """Destroy servers that fail the health check or have been idle past ``max_age_s``."""
        now = _now_ms()
        stale: list[str] = []
        for server_id, server in list(self._servers.items()):
            if not self.health_check(server_id):
                stale.append(server_id)
            elif max_age_s is not None and now - server.stats.last_activity_ms > max_age_s * 1000:
                stale.append(server_id)

        for server_id in stale:
            logger.info("Cleaning up stale server: %s", server_id)
            await self.destroy_server(server_id)
        return stale

    def get_metrics(self, server_id: str) -> dict[str, Any] | None:
        server = self._servers.get(server_id)
        if server is None:
            return None
        uptime = _now_ms() - server.started_at_ms if server.started_at_ms else 0
        return {
            "server_id": server.id,
            "uptime_ms": uptime,
            "request_count": server.request_count,
            "error_count": server.error_count,
            "last_activity_ms": server.stats.last_activity_ms,
            "memory_usage": process_memory_bytes(),
        }

    @property
    def stale_sweeper_running(self) -> bool:
        return self._stale_sweeper is not None and self._stale_sweeper.running

    def start_stale_sweeper(
        self, interval_s: float | None = None, *, max_age_s: float | None = None
    ) -> None:
        if self.stale_sweeper_running:
            return

        async def _sweep() -> None:
            removed = await self.cleanup_stale_servers(max_age_s)
            if removed:
                logger.info("Stale server sweep removed %d server(s)", len(removed))

        self._stale_sweeper = PeriodicTask(
            "preview-server-sweep",
            interval_s or self.settings.stale_sweep_interval_s,
            _sweep,
        )
        self._stale_sweeper.start()

    async def stop_stale_sweeper(self) -> None:
        sweeper = self._stale_sweeper
        self._stale_sweeper = None
        if sweeper is not None:
            await sweeper.stop()
