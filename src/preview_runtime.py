"""Process-wide composition of the preview subsystem.

``PreviewRuntime`` wires one error handler, the instance governor, the server
orchestrator and the status facade together, and owns both background sweep
timers as a single scoped resource:

    async with PreviewRuntime() as runtime:
        res = await runtime.on_files("p1", "Todo App", files, live=True)
        url = runtime.status.get_preview_url("p1")
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Mapping, Sequence
from typing import Any

from src.concurrency import KeyedLock
from src.preview_errors import OperationResult, PreviewErrorHandler
from src.preview_governor.config import PreviewManagerConfig
from src.preview_governor.manager import PreviewManager
from src.preview_servers.config import OrchestratorSettings, PreviewServerConfig
from src.preview_servers.manager import PreviewServerManager
from src.preview_status import PreviewStatusFacade
from src.workspace_files.workspace_fs import FileUpdate, diff_snapshots

logger = logging.getLogger(__name__)


class PreviewRuntime:
    def __init__(
        self,
        governor_config: PreviewManagerConfig | None = None,
        settings: OrchestratorSettings | None = None,
        *,
        handler: PreviewErrorHandler | None = None,
    ) -> None:
        self.handler = handler or PreviewErrorHandler()
        self.governor = PreviewManager(
            governor_config or PreviewManagerConfig.from_env(),
            handler=self.handler,
            on_evict=self._release_server,
        )
        self.orchestrator = PreviewServerManager(
            settings or OrchestratorSettings.from_env(), handler=self.handler
        )
        self.status = PreviewStatusFacade(self.governor, self.orchestrator)
        self._project_locks = KeyedLock()
        self._stack: contextlib.AsyncExitStack | None = None

    @property
    def started(self) -> bool:
        return self._stack is not None

    async def start(self) -> None:
        if self._stack is not None:
            return
        stack = contextlib.AsyncExitStack()
        # Callbacks run in reverse: stop server sweep, stop servers, then instances.
        self.governor.start_sweeper()
        stack.push_async_callback(self.governor.dispose)
        stack.push_async_callback(self.orchestrator.destroy_all)
        self.orchestrator.start_stale_sweeper()
        stack.push_async_callback(self.orchestrator.stop_stale_sweeper)
        self._stack = stack
        logger.info("Preview runtime started")

    async def close(self) -> None:
        stack = self._stack
        self._stack = None
        if stack is not None:
            await stack.aclose()
            logger.info("Preview runtime stopped")

    async def __aenter__(self) -> PreviewRuntime:
        await self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        await self.close()

    async def _release_server(self, project_id: str) -> None:
        # Evicted instances must not leave their dev server running.
        server = self.orchestrator.find_by_project(project_id)
        if server is not None:
            logger.info("Stopping server %s of evicted preview %s", server.id, project_id)
            await self.orchestrator.destroy_server(server.id)

    async def on_files(
        self,
        project_id: str,
        project_name: str,
        files: Mapping[str, str],
        *,
        live: bool = False,
        cancel: asyncio.Event | None = None,
    ) -> OperationResult[str]:
        """Accept a full file snapshot from the generator for ``project_id``.

        The snapshot replaces the previous one wholesale; callers sending
        partial batches must merge upstream first. With ``live`` the project's
        dev server is started if needed and receives only the changed files.
        Returns the preview URL when a server is running. Invalid paths raise
        ``ValueError`` before anything is stored.
        """
        FileUpdate.from_snapshot(files)
        async with self._project_locks.lock(project_id):
            if project_id not in self.governor:
                res = await self.governor.create_preview(project_id, project_name, files)
            else:
                res = await self.governor.update_preview(project_id, files)
            if not res.success:
                return OperationResult.fail(res.error)

            if not live:
                return OperationResult.ok(self.status.get_preview_url(project_id))

            server = self.orchestrator.find_by_project(project_id)
            if server is None or not self.orchestrator.health_check(server.id):
                if server is not None:
                    await self.orchestrator.destroy_server(server.id)
                created = await self.orchestrator.create_server(
                    PreviewServerConfig(project_id=project_id), cancel=cancel
                )
                if not created.success or created.value is None:
                    return OperationResult.fail(created.error)
                server = created.value

            # Diff against what is on disk, not the stored snapshot, so a failed
            # or cancelled sync is repaired by sending the same snapshot again.
            written = server.written_files
            if written is None:
                written = await asyncio.to_thread(server.workspace.read_snapshot)
            updates = diff_snapshots(dict(written), files)
            if updates:
                synced = await self.orchestrator.update_files(server.id, updates, cancel=cancel)
                if not synced.success:
                    return OperationResult.fail(synced.error)
            return OperationResult.ok(server.url)

    async def apply_updates(
        self,
        server_id: str,
        updates: Sequence[FileUpdate],
        *,
        cancel: asyncio.Event | None = None,
    ) -> OperationResult[int]:
        """Apply an incremental batch to a running server and its preview instance.

        The merged snapshot is budget-checked by the governor first, so a batch
        that would exceed the memory limit never reaches the workspace.
        """
        server = self.orchestrator.get_server(server_id)
        if server is None:
            return await self.orchestrator.update_files(server_id, updates, cancel=cancel)

        async with self._project_locks.lock(server.project_id):
            known = self.governor.get_preview(server.project_id)
            if known is not None:
                merged = dict(known.files)
                for update in updates:
                    if update.operation == "delete":
                        merged.pop(update.path, None)
                    else:
                        merged[update.path] = update.content or ""
                res = await self.governor.update_preview(server.project_id, merged)
                if not res.success:
                    return OperationResult.fail(res.error)
            return await self.orchestrator.update_files(server_id, updates, cancel=cancel)

    async def destroy_server(self, server_id: str) -> bool:
        """Stop a server and release the preview instance of its project."""
        server = self.orchestrator.get_server(server_id)
        if server is None:
            return False
        async with self._project_locks.lock(server.project_id):
            await self.orchestrator.destroy_server(server_id)
            await self.governor.destroy_preview(server.project_id)
        return True
