from __future__ import annotations

from src.preview_governor.eviction import AgeIdleReaper, LeastRecentlyAccessed
from src.preview_governor.manager import PreviewInstance


def _inst(pid: str, created: int, accessed: int, seq: int = 0) -> PreviewInstance:
    return PreviewInstance(
        id=pid,
        project_name=pid,
        files={},
        created_at_ms=created,
        last_accessed_at_ms=accessed,
        access_seq=seq,
    )


def test_lru_returns_nothing_below_capacity() -> None:
    policy = LeastRecentlyAccessed(3)
    instances = {"a": _inst("a", 0, 0), "b": _inst("b", 0, 0)}
    assert policy.select(instances, now_ms=10) == []
    assert policy.select({}, now_ms=10) == []


def test_lru_picks_least_recently_accessed() -> None:
    policy = LeastRecentlyAccessed(3)
    instances = {
        "a": _inst("a", 0, 400, seq=4),
        "b": _inst("b", 100, 200, seq=2),
        "c": _inst("c", 300, 300, seq=3),
    }
    assert policy.select(instances, now_ms=500) == ["b"]


def test_lru_breaks_timestamp_ties_by_access_order() -> None:
    policy = LeastRecentlyAccessed(2)
    instances = {"a": _inst("a", 0, 100, seq=5), "b": _inst("b", 0, 100, seq=3)}
    assert policy.select(instances, now_ms=100) == ["b"]


def test_age_idle_reaper() -> None:
    reaper = AgeIdleReaper(max_age_ms=1_000)
    instances = {
        "old": _inst("old", 0, 1_400),
        "idle": _inst("idle", 900, 900),
        "fresh": _inst("fresh", 1_000, 1_400),
    }
    # now=1_500: old is 1500ms old, idle has been untouched for 600ms > 500ms.
    assert sorted(reaper.select(instances, now_ms=1_500)) == ["idle", "old"]
