from __future__ import annotations

import posixpath
from dataclasses import dataclass
from pathlib import Path

DENY_WRITE_PREFIXES = ("node_modules/", ".git/")


@dataclass(frozen=True)
class Policy:
    deny_write_prefixes: tuple[str, ...]


DEFAULT_POLICY = Policy(deny_write_prefixes=DENY_WRITE_PREFIXES)


def normalize_relative_path(path: str) -> str:
    """Normalize a workspace-relative POSIX path like 'src/App.tsx'."""
    raw = (path or "").strip().replace("\\", "/")
    if not raw:
        raise ValueError("empty path")
    if "\x00" in raw:
        raise ValueError("invalid path")

    # Reject traversal before normpath collapses it away.
    if ".." in raw.split("/"):
        raise ValueError("path traversal not allowed")

    norm = posixpath.normpath(raw.lstrip("/"))
    if norm in ("", "."):
        raise ValueError("invalid path")
    return norm


def is_denied_path(path: str, *, policy: Policy = DEFAULT_POLICY) -> bool:
    normalized = path.rstrip("/") + "/"
    return any(normalized.startswith(p) for p in policy.deny_write_prefixes)


def require_mutation_allowed(path: str, *, policy: Policy = DEFAULT_POLICY) -> str:
    p = normalize_relative_path(path)
    if is_denied_path(p, policy=policy):
        raise PermissionError(f"writes not allowed for '{p}'")
    return p


def resolve_in_workspace(root: Path, path: str) -> Path:
    """Return the absolute location of ``path`` inside ``root``."""
    base = root.resolve()
    full = (base / normalize_relative_path(path)).resolve()
    # Symlinks inside the workspace must not lead out of it.
    if full != base and base not in full.parents:
        raise ValueError("path escapes workspace")
    return full
