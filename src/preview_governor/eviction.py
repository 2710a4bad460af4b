"""Eviction strategies for preview instances.

Two policies share one interface: ``LeastRecentlyAccessed`` picks a single
victim when admission would overflow capacity, ``AgeIdleReaper`` picks every
instance that is too old or idle for too long on the periodic sweep.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:  # pragma: no cover
    from src.preview_governor.manager import PreviewInstance


class EvictionPolicy(Protocol):
    name: str

    def select(
        self, instances: Mapping[str, PreviewInstance], *, now_ms: int
    ) -> list[str]: ...


class LeastRecentlyAccessed:
    name = "lru"

    def __init__(self, max_instances: int) -> None:
        self.max_instances = max_instances

    def select(
        self, instances: Mapping[str, PreviewInstance], *, now_ms: int
    ) -> list[str]:
        _ = now_ms
        if len(instances) < self.max_instances or not instances:
            return []
        victim = min(
            instances.values(),
            key=lambda inst: (inst.last_accessed_at_ms, inst.access_seq),
        )
        return [victim.id]


class AgeIdleReaper:
    name = "age_idle"

    def __init__(self, max_age_ms: int) -> None:
        self.max_age_ms = max_age_ms

    def select(
        self, instances: Mapping[str, PreviewInstance], *, now_ms: int
    ) -> list[str]:
        out: list[str] = []
        for inst_id, inst in instances.items():
            age = now_ms - inst.created_at_ms
            idle = now_ms - inst.last_accessed_at_ms
            if age > self.max_age_ms or idle > self.max_age_ms / 2:
                out.append(inst_id)
        return out
