from __future__ import annotations

from typing import Any

from src.preview_governor.manager import PreviewManager
from src.preview_servers.manager import PreviewServerManager


class PreviewStatusFacade:
    """Read-only view over preview instances and live servers for status panels."""

    def __init__(self, governor: PreviewManager, orchestrator: PreviewServerManager) -> None:
        self._governor = governor
        self._orchestrator = orchestrator

    def get_status(self) -> dict[str, Any]:
        status = self._governor.get_status()
        servers = [
            {
                "id": s.id,
                "project_id": s.project_id,
                "url": s.url,
                "status": s.status,
                "healthy": self._orchestrator.health_check(s.id),
            }
            for s in self._orchestrator.list_servers()
        ]
        return {**status, "server_count": len(servers), "servers": servers}

    def get_server_metrics(self, server_id: str) -> dict[str, Any] | None:
        return self._orchestrator.get_metrics(server_id)

    def get_preview_url(self, project_id: str) -> str | None:
        server = self._orchestrator.find_by_project(project_id)
        if server is None or server.status != "running":
            return None
        return server.url
