from __future__ import annotations

import asyncio

import pytest

pytest.importorskip("uvicorn")

from src.preview_governor import PreviewManagerConfig
from src.preview_runtime import PreviewRuntime
from src.preview_servers import OrchestratorSettings
from src.workspace_files.workspace_fs import FileUpdate


def _runtime(tmp_path, **cfg) -> PreviewRuntime:
    return PreviewRuntime(
        PreviewManagerConfig(**cfg),
        OrchestratorSettings(host="127.0.0.1", tmp_root=str(tmp_path)),
    )


def test_context_manager_owns_sweepers_and_servers(tmp_path) -> None:
    runtime = _runtime(tmp_path)

    async def _run():
        async with runtime:
            running = (runtime.governor.sweeper_running, runtime.orchestrator.stale_sweeper_running)
            res = await runtime.on_files("p1", "Todo", {"index.html": "<p/>"}, live=True)
            assert res.success
            workspace = runtime.orchestrator.find_by_project("p1").workspace_dir
        return running, workspace

    running, workspace = asyncio.run(_run())
    assert running == (True, True)
    assert runtime.started is False
    assert runtime.governor.sweeper_running is False
    assert runtime.orchestrator.stale_sweeper_running is False
    assert len(runtime.governor) == 0
    assert len(runtime.orchestrator) == 0
    assert not workspace.exists()


def test_on_files_without_live_only_tracks_instance(tmp_path) -> None:
    runtime = _runtime(tmp_path)

    async def _run():
        async with runtime:
            res = await runtime.on_files("p1", "Todo", {"a.ts": "1"})
            return res, runtime.governor.list_preview_ids(), runtime.orchestrator.list_servers()

    res, ids, servers = asyncio.run(_run())
    assert res.success is True
    assert res.value is None
    assert ids == ["p1"]
    assert servers == []


def test_on_files_live_syncs_snapshot_diffs(tmp_path) -> None:
    runtime = _runtime(tmp_path)

    async def _run():
        async with runtime:
            first = await runtime.on_files(
                "p1", "Todo", {"index.html": "<p>1</p>", "src/old.ts": "old"}, live=True
            )
            second = await runtime.on_files(
                "p1", "Todo", {"index.html": "<p>2</p>", "src/new.ts": "new"}, live=True
            )
            server = runtime.orchestrator.find_by_project("p1")
            fs = server.workspace
            return first, second, server.url, fs.list_files(), fs.read("index.html")

    first, second, url, files, index = asyncio.run(_run())
    assert first.success and second.success
    assert first.value == url == second.value
    assert files == ["index.html", "src/new.ts"]
    assert index == "<p>2</p>"


def test_on_files_over_budget_starts_no_server(tmp_path) -> None:
    runtime = _runtime(tmp_path, max_memory_per_instance=8)

    async def _run():
        async with runtime:
            res = await runtime.on_files("p1", "Todo", {"a.ts": "x" * 20}, live=True)
            return res, runtime.orchestrator.list_servers()

    res, servers = asyncio.run(_run())
    assert res.success is False
    assert res.error is not None and res.error.context == "memory"
    assert servers == []


def test_on_files_rejects_bad_paths_before_storing(tmp_path) -> None:
    runtime = _runtime(tmp_path)

    async def _run() -> None:
        await runtime.on_files("p1", "Todo", {"../escape.ts": "x"})

    with pytest.raises(ValueError):
        asyncio.run(_run())
    assert len(runtime.governor) == 0


def test_apply_updates_merges_into_instance(tmp_path) -> None:
    runtime = _runtime(tmp_path)

    async def _run():
        async with runtime:
            await runtime.on_files("p1", "Todo", {"a.ts": "1", "b.ts": "2"}, live=True)
            server = runtime.orchestrator.find_by_project("p1")
            res = await runtime.apply_updates(
                server.id,
                [FileUpdate("b.ts", None, "delete"), FileUpdate("c.ts", "3", "create")],
            )
            inst = runtime.governor.get_preview("p1")
            return res, dict(inst.files), server.workspace.list_files()

    res, files, on_disk = asyncio.run(_run())
    assert res.success and res.value == 2
    assert files == {"a.ts": "1", "c.ts": "3"}
    assert on_disk == ["a.ts", "c.ts"]


def test_apply_updates_over_budget_leaves_workspace(tmp_path) -> None:
    runtime = _runtime(tmp_path, max_memory_per_instance=4)

    async def _run():
        async with runtime:
            await runtime.on_files("p1", "Todo", {"a.ts": "1"}, live=True)
            server = runtime.orchestrator.find_by_project("p1")
            res = await runtime.apply_updates(server.id, [FileUpdate("b.ts", "toolong", "create")])
            return res, server.workspace.list_files()

    res, on_disk = asyncio.run(_run())
    assert res.success is False
    assert res.error is not None and res.error.context == "memory"
    assert on_disk == ["a.ts"]


def test_destroy_server_releases_instance(tmp_path) -> None:
    runtime = _runtime(tmp_path)

    async def _run():
        async with runtime:
            await runtime.on_files("p1", "Todo", {"a.ts": "1"}, live=True)
            server = runtime.orchestrator.find_by_project("p1")
            first = await runtime.destroy_server(server.id)
            second = await runtime.destroy_server(server.id)
            return first, second, len(runtime.governor), len(runtime.orchestrator)

    assert asyncio.run(_run()) == (True, False, 0, 0)


def test_resending_snapshot_repairs_cancelled_sync(tmp_path) -> None:
    runtime = _runtime(tmp_path)

    async def _run():
        async with runtime:
            await runtime.on_files("p1", "Todo", {"index.html": "<p>1</p>"}, live=True)
            cancel = asyncio.Event()
            cancel.set()
            cancelled = await runtime.on_files(
                "p1", "Todo", {"index.html": "<p>2</p>"}, live=True, cancel=cancel
            )
            fs = runtime.orchestrator.find_by_project("p1").workspace
            stale = fs.read("index.html")
            retried = await runtime.on_files("p1", "Todo", {"index.html": "<p>2</p>"}, live=True)
            return cancelled, stale, retried, fs.read("index.html")

    cancelled, stale, retried, index = asyncio.run(_run())
    assert cancelled.success is False
    assert cancelled.error is not None and cancelled.error.context == "cancelled"
    assert stale == "<p>1</p>"
    assert retried.success is True
    assert index == "<p>2</p>"


def test_eviction_stops_servers_of_evicted_projects(tmp_path) -> None:
    runtime = _runtime(tmp_path, max_instances=2)

    async def _run():
        async with runtime:
            for pid in ("a", "b", "c", "d"):
                res = await runtime.on_files(pid, pid, {"index.html": pid}, live=True)
                assert res.success
            servers = sorted(s.project_id for s in runtime.orchestrator.list_servers())
            return servers, sorted(runtime.governor.list_preview_ids())

    servers, ids = asyncio.run(_run())
    assert ids == ["c", "d"]
    assert servers == ["c", "d"]
