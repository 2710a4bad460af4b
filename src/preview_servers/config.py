from __future__ import annotations

import os
from dataclasses import dataclass, field

from src.workspace_files.workspace_fs import DEFAULT_WORKSPACE_PREFIX

DEFAULT_HOST = "localhost"
DEFAULT_STARTUP_TIMEOUT_S = 30.0
DEFAULT_STALE_SWEEP_INTERVAL_S = 60 * 60
DEFAULT_FRAME_ANCESTORS = "'self' http://localhost:*"


def _env_str(name: str, default: str) -> str:
    return (os.environ.get(name) or default).strip() or default


def _env_csv(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return default
    items = tuple(p.strip() for p in raw.split(",") if p.strip())
    return items or default


def _env_float(name: str, default: float) -> float:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return float(default)
    try:
        return float(raw)
    except ValueError:
        return float(default)


@dataclass(frozen=True)
class PreviewServerConfig:
    """Per-server options passed to ``PreviewServerManager.create_server``."""

    project_id: str
    base_dir: str | None = None
    port: int = 0
    host: str | None = None
    cors: bool = True
    hmr: bool = True
    startup_timeout_s: float | None = None

    def __post_init__(self) -> None:
        if not (self.project_id or "").strip():
            raise ValueError("project_id is required")
        if not 0 <= int(self.port) <= 65535:
            raise ValueError(f"invalid port: {self.port}")


@dataclass(frozen=True)
class OrchestratorSettings:
    """Process-wide defaults for the server orchestrator."""

    host: str = DEFAULT_HOST
    tmp_root: str | None = None
    workspace_prefix: str = DEFAULT_WORKSPACE_PREFIX
    startup_timeout_s: float = DEFAULT_STARTUP_TIMEOUT_S
    stale_sweep_interval_s: float = DEFAULT_STALE_SWEEP_INTERVAL_S
    frame_ancestors: str = DEFAULT_FRAME_ANCESTORS
    cors_allow_origins: tuple[str, ...] = field(default=("*",))

    @classmethod
    def from_env(cls) -> OrchestratorSettings:
        tmp_root = (os.environ.get("PREVIEW_TMP_ROOT") or "").strip() or None
        return cls(
            host=_env_str("PREVIEW_HOST", DEFAULT_HOST),
            tmp_root=tmp_root,
            workspace_prefix=_env_str("PREVIEW_WORKSPACE_PREFIX", DEFAULT_WORKSPACE_PREFIX),
            startup_timeout_s=max(
                1.0, _env_float("PREVIEW_STARTUP_TIMEOUT_S", DEFAULT_STARTUP_TIMEOUT_S)
            ),
            stale_sweep_interval_s=max(
                1.0,
                _env_float("PREVIEW_STALE_SWEEP_INTERVAL_S", DEFAULT_STALE_SWEEP_INTERVAL_S),
            ),
            frame_ancestors=_env_str("PREVIEW_FRAME_ANCESTORS", DEFAULT_FRAME_ANCESTORS),
            cors_allow_origins=_env_csv("PREVIEW_CORS_ALLOW_ORIGINS", ("*",)),
        )
