from __future__ import annotations

import os
from dataclasses import dataclass

DEFAULT_MAX_INSTANCES = 3
DEFAULT_MAX_AGE_S = 60 * 60
DEFAULT_MAX_MEMORY_PER_INSTANCE = 100 * 1024 * 1024
DEFAULT_CLEANUP_INTERVAL_S = 10 * 60


def _env_int(name: str, default: int) -> int:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return int(default)
    try:
        return int(raw)
    except ValueError:
        return int(default)


@dataclass(frozen=True)
class PreviewManagerConfig:
    max_instances: int = DEFAULT_MAX_INSTANCES
    max_age_s: int = DEFAULT_MAX_AGE_S
    max_memory_per_instance: int = DEFAULT_MAX_MEMORY_PER_INSTANCE
    cleanup_interval_s: int = DEFAULT_CLEANUP_INTERVAL_S

    def __post_init__(self) -> None:
        if self.max_instances < 1:
            raise ValueError("max_instances must be >= 1")
        if self.max_age_s <= 0 or self.cleanup_interval_s <= 0:
            raise ValueError("max_age_s and cleanup_interval_s must be positive")
        if self.max_memory_per_instance <= 0:
            raise ValueError("max_memory_per_instance must be positive")

    @property
    def max_age_ms(self) -> int:
        return self.max_age_s * 1000

    @classmethod
    def from_env(cls) -> PreviewManagerConfig:
        return cls(
            max_instances=max(1, _env_int("PREVIEW_MAX_INSTANCES", DEFAULT_MAX_INSTANCES)),
            max_age_s=max(1, _env_int("PREVIEW_MAX_AGE_S", DEFAULT_MAX_AGE_S)),
            max_memory_per_instance=max(
                1, _env_int("PREVIEW_MAX_MEMORY_BYTES", DEFAULT_MAX_MEMORY_PER_INSTANCE)
            ),
            cleanup_interval_s=max(
                1, _env_int("PREVIEW_CLEANUP_INTERVAL_S", DEFAULT_CLEANUP_INTERVAL_S)
            ),
        )
