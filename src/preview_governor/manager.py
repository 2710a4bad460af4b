"""Admission, eviction and bookkeeping for preview instances.

A preview instance is the in-memory file snapshot of one project plus the
timestamps the eviction policies need. It exists independently of whether a
dev server is running for the project.

Usage:
    handler = PreviewErrorHandler()
    manager = PreviewManager(PreviewManagerConfig(max_instances=3), handler=handler)
    manager.start_sweeper()

    res = await manager.create_preview("p1", "Todo App", {"index.html": "..."})
    if not res.success:
        print(handler.get_actionable_message(res.error))

    await manager.dispose()
"""

from __future__ import annotations

import itertools
import logging
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any

from src.concurrency import KeyedLock, PeriodicTask
from src.preview_errors import OperationResult, PreviewError, PreviewErrorHandler
from src.preview_governor.config import PreviewManagerConfig
from src.preview_governor.eviction import (
    AgeIdleReaper,
    EvictionPolicy,
    LeastRecentlyAccessed,
)
from src.workspace_files.workspace_fs import snapshot_size_bytes

logger = logging.getLogger(__name__)

_MB = 1024 * 1024


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class PreviewInstance:
    id: str
    project_name: str
    files: dict[str, str]
    created_at_ms: int
    last_accessed_at_ms: int
    memory_usage_bytes: int = 0
    # Tie-breaker for equal millisecond timestamps; higher means touched later.
    access_seq: int = 0


class PreviewManager:
    def __init__(
        self,
        config: PreviewManagerConfig | None = None,
        *,
        handler: PreviewErrorHandler,
        admission_policy: EvictionPolicy | None = None,
        sweep_policy: EvictionPolicy | None = None,
        clock: Callable[[], int] | None = None,
        on_evict: Callable[[str], Awaitable[None]] | None = None,
    ) -> None:
        self.config = config or PreviewManagerConfig()
        self._handler = handler
        self._clock = clock or _now_ms
        # Awaited with the id of every instance removed by LRU admission or sweep.
        self._on_evict = on_evict
        self._admission_policy = admission_policy or LeastRecentlyAccessed(
            self.config.max_instances
        )
        self._sweep_policy = sweep_policy or AgeIdleReaper(self.config.max_age_ms)
        self._instances: dict[str, PreviewInstance] = {}
        self._locks = KeyedLock()
        self._access_seq = itertools.count(1)
        self._sweeper = PeriodicTask(
            "preview-sweep", self.config.cleanup_interval_s, self._scheduled_sweep
        )
        logger.info(
            "Preview manager initialized (max_instances=%d, max_age=%ds, max_memory=%.0fMB)",
            self.config.max_instances,
            self.config.max_age_s,
            self.config.max_memory_per_instance / _MB,
        )

    def __len__(self) -> int:
        return len(self._instances)

    def __contains__(self, preview_id: str) -> bool:
        return preview_id in self._instances

    def _memory_error(self, memory_usage: int, what: str) -> PreviewError:
        return self._handler.classify(
            ValueError(f"{what} exceeds memory limit: {memory_usage / _MB:.2f}MB"),
            "memory",
        )

    def _touch(self, inst: PreviewInstance) -> None:
        inst.last_accessed_at_ms = max(inst.last_accessed_at_ms, self._clock())
        inst.access_seq = next(self._access_seq)

    def _drop(self, preview_id: str) -> bool:
        inst = self._instances.pop(preview_id, None)
        if inst is None:
            return False
        inst.files = {}
        return True

    async def _notify_evicted(self, preview_ids: list[str]) -> None:
        if self._on_evict is None:
            return
        for preview_id in preview_ids:
            try:
                await self._on_evict(preview_id)
            except Exception:
                logger.exception("Eviction callback failed for preview %s", preview_id)

    async def create_preview(
        self, preview_id: str, project_name: str, files: Mapping[str, str]
    ) -> OperationResult[None]:
        evicted: list[str] = []
        try:
            async with self._locks.lock(preview_id):
                logger.info("Creating preview: %s (%s)", preview_id, project_name)
                memory_usage = snapshot_size_bytes(files)
                if memory_usage > self.config.max_memory_per_instance:
                    err = self._memory_error(memory_usage, "Preview")
                    logger.warning(
                        "Rejected preview %s: %s",
                        preview_id,
                        self._handler.format_for_logging(err),
                    )
                    return OperationResult.fail(err)

                if preview_id not in self._instances:
                    now = self._clock()
                    for victim in self._admission_policy.select(self._instances, now_ms=now):
                        logger.warning(
                            "Max instances reached (%d), evicting least recently used preview %s",
                            self.config.max_instances,
                            victim,
                        )
                        if self._drop(victim):
                            evicted.append(victim)

                now = self._clock()
                self._instances[preview_id] = PreviewInstance(
                    id=preview_id,
                    project_name=project_name,
                    files=dict(files),
                    created_at_ms=now,
                    last_accessed_at_ms=now,
                    memory_usage_bytes=memory_usage,
                    access_seq=next(self._access_seq),
                )
                logger.info(
                    "Preview created: %s (%d/%d instances, %.2fMB)",
                    preview_id,
                    len(self._instances),
                    self.config.max_instances,
                    memory_usage / _MB,
                )
                return OperationResult.ok()
        except Exception as exc:
            err = self._handler.classify(exc, "preview creation")
            logger.error("Failed to create preview %s: %s", preview_id, err.message, exc_info=True)
            return OperationResult.fail(err)
        finally:
            # Outside the lock: the callback may tear down servers for other ids.
            await self._notify_evicted(evicted)

    async def update_preview(
        self, preview_id: str, files: Mapping[str, str]
    ) -> OperationResult[None]:
        try:
            async with self._locks.lock(preview_id):
                inst = self._instances.get(preview_id)
                if inst is None:
                    logger.warning("Cannot update preview, not found: %s", preview_id)
                    return OperationResult.fail(
                        self._handler.classify(LookupError("Preview not found"), "preview update")
                    )

                memory_usage = snapshot_size_bytes(files)
                if memory_usage > self.config.max_memory_per_instance:
                    err = self._memory_error(memory_usage, "Preview update")
                    logger.warning(
                        "Rejected update for preview %s: %s",
                        preview_id,
                        self._handler.format_for_logging(err),
                    )
                    return OperationResult.fail(err)

                inst.files = dict(files)
                inst.memory_usage_bytes = memory_usage
                self._touch(inst)
                logger.info("Preview updated: %s (%.2fMB)", preview_id, memory_usage / _MB)
                return OperationResult.ok()
        except Exception as exc:
            err = self._handler.classify(exc, "preview update")
            logger.error("Failed to update preview %s: %s", preview_id, err.message, exc_info=True)
            return OperationResult.fail(err)

    def get_preview(self, preview_id: str) -> PreviewInstance | None:
        inst = self._instances.get(preview_id)
        if inst is None:
            return None
        self._touch(inst)
        return inst

    def list_preview_ids(self) -> list[str]:
        return list(self._instances)

    async def destroy_preview(self, preview_id: str) -> None:
        async with self._locks.lock(preview_id):
            if self._drop(preview_id):
                logger.info(
                    "Preview destroyed: %s (%d remaining)", preview_id, len(self._instances)
                )

    async def sweep(self) -> list[str]:
        """Destroy every instance past its max age or idle for over half of it."""
        now = self._clock()
        expired = self._sweep_policy.select(self._instances, now_ms=now)
        for preview_id in expired:
            inst = self._instances.get(preview_id)
            if inst is not None:
                logger.info(
                    "Cleaning up old preview: %s (age: %.1fm, idle: %.1fm)",
                    preview_id,
                    (now - inst.created_at_ms) / 60_000,
                    (now - inst.last_accessed_at_ms) / 60_000,
                )
            await self.destroy_preview(preview_id)
        await self._notify_evicted(expired)
        if expired:
            logger.info("Cleaned up %d old preview(s)", len(expired))
        return expired

    async def _scheduled_sweep(self) -> None:
        await self.sweep()
        status = self.get_status()
        logger.info(
            "Preview status: %d/%d instances, %.2fMB used",
            status["instance_count"],
            status["max_instances"],
            status["total_memory"] / _MB,
        )

    def get_status(self) -> dict[str, Any]:
        now = self._clock()
        instances = [
            {
                "id": inst.id,
                "project_name": inst.project_name,
                "age_ms": now - inst.created_at_ms,
                "idle_time_ms": now - inst.last_accessed_at_ms,
                "memory_usage": inst.memory_usage_bytes,
            }
            for inst in self._instances.values()
        ]
        return {
            "instance_count": len(self._instances),
            "max_instances": self.config.max_instances,
            "total_memory": sum(i["memory_usage"] for i in instances),
            "max_memory": self.config.max_memory_per_instance * self.config.max_instances,
            "instances": instances,
        }

    @property
    def sweeper_running(self) -> bool:
        return self._sweeper.running

    def start_sweeper(self) -> None:
        self._sweeper.start()

    async def stop_sweeper(self) -> None:
        await self._sweeper.stop()

    async def dispose(self) -> None:
        logger.info("Disposing preview manager...")
        await self.stop_sweeper()
        for preview_id in list(self._instances):
            await self.destroy_preview(preview_id)
        logger.info("Preview manager disposed")
