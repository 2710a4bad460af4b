import sys
from pathlib import Path

import pytest

# Ensure the repo root is on sys.path so tests can import the local `src/` package.
ROOT = str(Path(__file__).resolve().parents[1])
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)


@pytest.fixture(autouse=True)
def _isolate_preview_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    # Keep workspaces out of the real temp dir and listeners on loopback only.
    monkeypatch.setenv("PREVIEW_TMP_ROOT", str(tmp_path / "previews"))
    monkeypatch.setenv("PREVIEW_HOST", "127.0.0.1")
    for name in (
        "PREVIEW_MAX_INSTANCES",
        "PREVIEW_MAX_AGE_S",
        "PREVIEW_MAX_MEMORY_BYTES",
        "PREVIEW_CLEANUP_INTERVAL_S",
        "PREVIEW_STARTUP_TIMEOUT_S",
    ):
        monkeypatch.delenv(name, raising=False)
