from __future__ import annotations

import asyncio

import pytest

from src.preview_errors import PreviewErrorHandler, PreviewErrorType
from src.preview_governor import PreviewManager, PreviewManagerConfig


class _Clock:
    def __init__(self, now: int = 1_000) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now


def _manager(clock: _Clock, **cfg) -> PreviewManager:
    return PreviewManager(PreviewManagerConfig(**cfg), handler=PreviewErrorHandler(), clock=clock)


def test_config_defaults_and_validation() -> None:
    cfg = PreviewManagerConfig()
    assert cfg.max_instances == 3
    assert cfg.max_age_s == 3600
    assert cfg.max_memory_per_instance == 100 * 1024 * 1024
    assert cfg.cleanup_interval_s == 600
    assert cfg.max_age_ms == 3_600_000
    with pytest.raises(ValueError):
        PreviewManagerConfig(max_instances=0)


def test_config_from_env(monkeypatch) -> None:
    monkeypatch.setenv("PREVIEW_MAX_INSTANCES", "5")
    monkeypatch.setenv("PREVIEW_MAX_MEMORY_BYTES", "2048")
    monkeypatch.setenv("PREVIEW_MAX_AGE_S", "not-a-number")
    cfg = PreviewManagerConfig.from_env()
    assert cfg.max_instances == 5
    assert cfg.max_memory_per_instance == 2048
    assert cfg.max_age_s == 3600


def test_lru_eviction_keeps_recently_read_instance() -> None:
    clock = _Clock()
    mgr = _manager(clock, max_instances=3)

    async def _run() -> None:
        for pid, t in (("A", 1_000), ("B", 2_000), ("C", 3_000)):
            clock.now = t
            assert (await mgr.create_preview(pid, pid, {"index.html": pid})).success
        clock.now = 4_000
        assert mgr.get_preview("A") is not None
        clock.now = 5_000
        assert (await mgr.create_preview("D", "D", {})).success

    asyncio.run(_run())
    assert sorted(mgr.list_preview_ids()) == ["A", "C", "D"]
    assert len(mgr) == 3


def test_create_over_budget_inserts_and_evicts_nothing() -> None:
    clock = _Clock()
    mgr = _manager(clock, max_instances=1, max_memory_per_instance=10)

    async def _run():
        await mgr.create_preview("A", "A", {"a.txt": "small"})
        return await mgr.create_preview("B", "B", {"big.txt": "x" * 11})

    res = asyncio.run(_run())
    assert res.success is False
    assert res.error is not None
    assert res.error.context == "memory"
    assert res.error.type is PreviewErrorType.UNKNOWN
    assert mgr.list_preview_ids() == ["A"]


def test_recreate_existing_id_at_capacity_does_not_evict() -> None:
    clock = _Clock()
    mgr = _manager(clock, max_instances=2)

    async def _run() -> None:
        await mgr.create_preview("A", "A", {})
        await mgr.create_preview("B", "B", {})
        await mgr.create_preview("A", "A v2", {"x": "1"})

    asyncio.run(_run())
    assert sorted(mgr.list_preview_ids()) == ["A", "B"]
    inst = mgr.get_preview("A")
    assert inst is not None and inst.project_name == "A v2" and inst.files == {"x": "1"}


def test_update_replaces_files_and_touches() -> None:
    clock = _Clock()
    mgr = _manager(clock)

    async def _run():
        await mgr.create_preview("A", "A", {"a": "1", "b": "2"})
        clock.now = 2_000
        return await mgr.update_preview("A", {"c": "333"})

    assert asyncio.run(_run()).success
    inst = mgr.get_preview("A")
    assert inst is not None
    assert inst.files == {"c": "333"}
    assert inst.memory_usage_bytes == 3
    assert inst.last_accessed_at_ms == 2_000


def test_update_over_budget_leaves_instance_untouched() -> None:
    clock = _Clock()
    mgr = _manager(clock, max_memory_per_instance=10)

    async def _run():
        await mgr.create_preview("A", "A", {"a": "1"})
        clock.now = 9_000
        return await mgr.update_preview("A", {"a": "x" * 50})

    res = asyncio.run(_run())
    assert res.success is False
    assert res.error is not None and res.error.context == "memory"
    status = mgr.get_status()
    assert status["instances"][0]["memory_usage"] == 1
    assert status["instances"][0]["idle_time_ms"] == 8_000


def test_update_missing_preview_fails() -> None:
    mgr = _manager(_Clock())
    res = asyncio.run(mgr.update_preview("nope", {}))
    assert res.success is False
    assert res.error is not None and res.error.context == "preview update"


def test_get_preview_access_time_never_decreases() -> None:
    clock = _Clock(5_000)
    mgr = _manager(clock)
    asyncio.run(mgr.create_preview("A", "A", {}))
    clock.now = 4_000
    inst = mgr.get_preview("A")
    assert inst is not None and inst.last_accessed_at_ms == 5_000
    assert mgr.get_preview("missing") is None


def test_destroy_is_idempotent_and_clears_files() -> None:
    mgr = _manager(_Clock())

    async def _run():
        await mgr.create_preview("A", "A", {"a": "1"})
        inst = mgr.get_preview("A")
        await mgr.destroy_preview("A")
        await mgr.destroy_preview("A")
        await mgr.destroy_preview("never-existed")
        return inst

    inst = asyncio.run(_run())
    assert inst is not None and inst.files == {}
    assert "A" not in mgr


def test_sweep_removes_old_and_idle_instances() -> None:
    clock = _Clock(0)
    mgr = _manager(clock, max_age_s=10)

    async def _run():
        await mgr.create_preview("idle", "idle", {})
        clock.now = 5_000
        await mgr.create_preview("fresh", "fresh", {})
        clock.now = 6_000
        return await mgr.sweep()

    assert asyncio.run(_run()) == ["idle"]
    assert mgr.list_preview_ids() == ["fresh"]


def test_get_status_shape() -> None:
    clock = _Clock(1_000)
    mgr = _manager(clock, max_instances=2, max_memory_per_instance=1_000)

    async def _run() -> None:
        await mgr.create_preview("A", "Todo", {"a": "1234"})
        clock.now = 1_500

    asyncio.run(_run())
    status = mgr.get_status()
    assert status["instance_count"] == 1
    assert status["max_instances"] == 2
    assert status["total_memory"] == 4
    assert status["max_memory"] == 2_000
    assert status["instances"] == [
        {
            "id": "A",
            "project_name": "Todo",
            "age_ms": 500,
            "idle_time_ms": 500,
            "memory_usage": 4,
        }
    ]


def test_dispose_stops_sweeper_and_destroys_everything() -> None:
    mgr = _manager(_Clock(), cleanup_interval_s=60)

    async def _run() -> bool:
        mgr.start_sweeper()
        started = mgr.sweeper_running
        await mgr.create_preview("A", "A", {})
        await mgr.create_preview("B", "B", {})
        await mgr.dispose()
        return started

    assert asyncio.run(_run()) is True
    assert mgr.sweeper_running is False
    assert len(mgr) == 0


def test_eviction_callback_sees_lru_and_sweep_victims() -> None:
    clock = _Clock(0)
    evicted: list[str] = []

    async def _on_evict(preview_id: str) -> None:
        evicted.append(preview_id)

    mgr = PreviewManager(
        PreviewManagerConfig(max_instances=2, max_age_s=10),
        handler=PreviewErrorHandler(),
        clock=clock,
        on_evict=_on_evict,
    )

    async def _run() -> None:
        await mgr.create_preview("A", "A", {})
        clock.now = 1_000
        await mgr.create_preview("B", "B", {})
        clock.now = 2_000
        await mgr.create_preview("C", "C", {})
        assert evicted == ["A"]
        # Explicit destroys are not evictions.
        await mgr.destroy_preview("C")
        clock.now = 20_000
        await mgr.sweep()

    asyncio.run(_run())
    assert evicted == ["A", "B"]
    assert len(mgr) == 0


def test_eviction_callback_failure_does_not_fail_create() -> None:
    async def _on_evict(preview_id: str) -> None:
        raise RuntimeError("teardown broke")

    mgr = PreviewManager(
        PreviewManagerConfig(max_instances=1),
        handler=PreviewErrorHandler(),
        clock=_Clock(),
        on_evict=_on_evict,
    )

    async def _run():
        await mgr.create_preview("A", "A", {})
        return await mgr.create_preview("B", "B", {})

    assert asyncio.run(_run()).success is True
    assert mgr.list_preview_ids() == ["B"]
