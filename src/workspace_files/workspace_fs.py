from __future__ import annotations

import logging
import os
import re
import secrets
import shutil
import tempfile
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

from src.workspace_files.policy import (
    normalize_relative_path,
    require_mutation_allowed,
    resolve_in_workspace,
)

logger = logging.getLogger(__name__)

Operation = Literal["create", "update", "delete"]

DEFAULT_WORKSPACE_PREFIX = "ai-preview"

_UNSAFE_SEGMENT = re.compile(r"[^A-Za-z0-9._-]+")


@dataclass(frozen=True)
class FileUpdate:
    path: str
    content: str | None
    operation: Operation

    def __post_init__(self) -> None:
        if self.operation not in ("create", "update", "delete"):
            raise ValueError(f"unknown operation: {self.operation!r}")
        if self.operation == "delete":
            if self.content is not None:
                raise ValueError("delete must not carry content")
        elif self.content is None:
            raise ValueError(f"{self.operation} requires content")
        # Normalized form is what gets written; keep the caller's spelling out.
        object.__setattr__(self, "path", normalize_relative_path(self.path))

    @classmethod
    def from_snapshot(cls, files: Mapping[str, str]) -> list[FileUpdate]:
        return [cls(path=p, content=c, operation="create") for p, c in files.items()]


def snapshot_size_bytes(files: Mapping[str, str]) -> int:
    """Total UTF-8 byte length of all file contents."""
    return sum(len((content or "").encode("utf-8")) for content in files.values())


def diff_snapshots(
    previous: Mapping[str, str] | None, current: Mapping[str, str]
) -> list[FileUpdate]:
    """Updates that turn a workspace holding ``previous`` into ``current``."""
    prev = previous or {}
    out: list[FileUpdate] = []
    for path, content in current.items():
        if path not in prev:
            out.append(FileUpdate(path=path, content=content, operation="create"))
        elif prev[path] != content:
            out.append(FileUpdate(path=path, content=content, operation="update"))
    for path in prev:
        if path not in current:
            out.append(FileUpdate(path=path, content=None, operation="delete"))
    return out


def _safe_segment(value: str) -> str:
    cleaned = _UNSAFE_SEGMENT.sub("-", value or "").strip("-.")
    return cleaned[:64] or "project"


def create_temp_workspace(
    project_id: str,
    *,
    tmp_root: str | None = None,
    prefix: str = DEFAULT_WORKSPACE_PREFIX,
) -> Path:
    """Create ``<tmp>/<prefix>/<project>/<random>`` and return it."""
    base = Path(tmp_root or tempfile.gettempdir()) / prefix / _safe_segment(project_id)
    base.mkdir(parents=True, exist_ok=True)
    while True:
        candidate = base / secrets.token_hex(6)
        try:
            candidate.mkdir()
        except FileExistsError:
            continue
        return candidate


def remove_workspace(root: Path) -> bool:
    if not root.exists():
        return False
    shutil.rmtree(root)
    logger.debug("Removed workspace %s", root)
    return True


class WorkspaceFs:
    """Materializes file snapshots and incremental updates under one root."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def apply(self, update: FileUpdate) -> None:
        rel = require_mutation_allowed(update.path)
        target = resolve_in_workspace(self.root, rel)

        if update.operation == "delete":
            if target.is_dir() and not target.is_symlink():
                shutil.rmtree(target)
            elif target.exists() or target.is_symlink():
                target.unlink()
            return

        target.parent.mkdir(parents=True, exist_ok=True)
        # newline="" keeps the caller's line endings byte-for-byte.
        with open(target, "w", encoding="utf-8", newline="") as f:
            f.write(update.content or "")

    def apply_all(self, updates: Iterable[FileUpdate]) -> int:
        count = 0
        for update in updates:
            self.apply(update)
            count += 1
        return count

    def write_snapshot(self, files: Mapping[str, str]) -> int:
        return self.apply_all(FileUpdate.from_snapshot(files))

    def read(self, path: str) -> str:
        target = resolve_in_workspace(self.root, path)
        if not target.is_file():
            raise FileNotFoundError(f"file not found: {path}")
        with open(target, encoding="utf-8", newline="") as f:
            return f.read()

    def read_snapshot(self) -> dict[str, str]:
        return {path: self.read(path) for path in self.list_files()}

    def exists(self, path: str) -> bool:
        try:
            return resolve_in_workspace(self.root, path).exists()
        except ValueError:
            return False

    def list_files(self) -> list[str]:
        out: list[str] = []
        if not self.root.is_dir():
            return out
        for dirpath, dirs, files in os.walk(self.root):
            dirs[:] = [d for d in dirs if d not in ("node_modules", ".git")]
            for fn in files:
                rel = Path(dirpath, fn).relative_to(self.root)
                out.append(rel.as_posix())
        out.sort()
        return out

    def disk_usage_bytes(self) -> int:
        total = 0
        for rel in self.list_files():
            try:
                total += (self.root / rel).stat().st_size
            except OSError:
                continue
        return total
