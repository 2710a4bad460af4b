from src.preview_governor.config import PreviewManagerConfig
from src.preview_governor.eviction import (
    AgeIdleReaper,
    EvictionPolicy,
    LeastRecentlyAccessed,
)
from src.preview_governor.manager import PreviewInstance, PreviewManager

__all__ = [
    "AgeIdleReaper",
    "EvictionPolicy",
    "LeastRecentlyAccessed",
    "PreviewInstance",
    "PreviewManager",
    "PreviewManagerConfig",
]
