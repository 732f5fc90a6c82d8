"""
tests/conftest.py
~~~~~~~~~~~~~~~~~
Global pytest fixtures.

`isolate_persist_dir` makes every file-backed store write into a per-test
temporary directory, so nothing is left behind under `/data` or
`backend/local_data/` after the suite runs.  `quiet_events` makes sure no
test ever posts to a real Discord webhook.
"""

from __future__ import annotations

import os
import sys
import tempfile
from pathlib import Path

import pytest

# Modules resolve PERSIST_DIR at import time – point it somewhere harmless
# before anything from `radar` is imported.
os.environ.setdefault("PERSIST_DIR", tempfile.mkdtemp(prefix="radar-tests-"))

pytest_plugins = ["pytest_asyncio"]


class FakeClock:
    """Callable clock whose time only moves when a test says so."""

    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_states():
    """Build *n* OpenSky-shaped state vectors that pass the live filter."""

    def _make(n: int, prefix: str = "e4") -> list[list]:
        return [
            [
                f"{prefix}{i:04x}",
                f"TAM{1000 + i} ",
                "Brazil",
                1_700_000_000,
                1_700_000_000,
                -46.6 + i * 0.1,
                -23.6 + i * 0.1,
                10_000.0,
                False,
                230.0,
                45.0,
                0.0,
                None,
                10_300.0,
                "1000",
                False,
                0,
            ]
            for i in range(n)
        ]

    return _make


@pytest.fixture(autouse=True)
def isolate_persist_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """
    Redirect ``kv_store.PERSIST_DIR`` (and the file stores `main` built from
    it at import time) to *tmp_path* for every test.
    """
    persist_dir = tmp_path / "persist"
    persist_dir.mkdir(parents=True, exist_ok=True)

    monkeypatch.setenv("PERSIST_DIR", str(persist_dir))

    from radar import kv_store

    monkeypatch.setattr(kv_store, "PERSIST_DIR", persist_dir)

    # If main is already imported, swap its file-backed stores too
    main = sys.modules.get("radar.main")
    if main is not None:
        from radar.snapshot_store import SnapshotStore

        monkeypatch.setattr(
            main, "MIRROR_STORE", kv_store.JsonFileStore(persist_dir / "mirror.json")
        )
        monkeypatch.setattr(
            main.orchestrator,
            "store",
            SnapshotStore(kv_store.JsonFileStore(persist_dir / "flight_cache.json")),
        )

    yield


@pytest.fixture(autouse=True)
def quiet_events(monkeypatch: pytest.MonkeyPatch) -> None:
    """No webhook URL and a clean dedupe table for every test."""
    from radar import event_service

    monkeypatch.setattr(event_service, "DISCORD_WEBHOOK_URL", "")
    monkeypatch.setattr(event_service, "_last_api_error", {})
