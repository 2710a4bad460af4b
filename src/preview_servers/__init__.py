"""Live preview servers: one embedded dev server plus workspace per preview."""

from src.preview_servers.config import OrchestratorSettings, PreviewServerConfig
from src.preview_servers.manager import (
    PreviewCancelledError,
    PreviewServer,
    PreviewServerManager,
    get_available_port,
)

__all__ = [
    "OrchestratorSettings",
    "PreviewCancelledError",
    "PreviewServer",
    "PreviewServerConfig",
    "PreviewServerManager",
    "get_available_port",
]
