"""
tests/test_refresh_service.py
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
End-to-end behaviour of one refresh cycle: optimistic cache render, live
success, and the fallback chain (cache → mirror → static → emergency →
empty) with the failure reason attached.

Collaborators are injected: an in-memory store with a fake clock, a fake
fetcher, a fake mirror and a static loader lambda.  No network.
"""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from radar import refresh_service as rs
from radar.errors import (
    MalformedResponseError,
    RateLimitedError,
    TransportError,
    UnauthorizedError,
)
from radar.kv_store import MemoryStore
from radar.snapshot_store import CachedSnapshot, SnapshotStore


# --------------------------------------------------------------------------- #
# Fakes                                                                       #
# --------------------------------------------------------------------------- #
class FakeMirror:
    """Records pushes; `pull()` returns whatever the test put in `pulled`."""

    enabled = True

    def __init__(self, pulled: CachedSnapshot | None = None) -> None:
        self.pulled = pulled
        self.pushed: list[dict] = []
        self.pulls = 0

    def push(self, snapshot) -> None:
        self.pushed.append(snapshot)

    async def pull(self) -> CachedSnapshot | None:
        self.pulls += 1
        return self.pulled

    async def drain(self) -> None:
        return None


def returning(snapshot: dict):
    calls: list[Any] = []

    async def _fetch(auth_header):
        calls.append(auth_header)
        return snapshot

    _fetch.calls = calls  # type: ignore[attr-defined]
    return _fetch


def raising(exc: Exception):
    async def _fetch(auth_header):
        raise exc

    return _fetch


@pytest.fixture
def store(clock) -> SnapshotStore:
    return SnapshotStore(MemoryStore(), clock=clock)


@pytest.fixture
def events(monkeypatch: pytest.MonkeyPatch) -> dict[str, list]:
    """Capture calls to the Discord emitters instead of posting."""
    seen: dict[str, list] = {"source_changed": [], "api_error": []}
    monkeypatch.setattr(
        rs, "emit_source_changed", lambda *a: seen["source_changed"].append(a)
    )
    monkeypatch.setattr(rs, "emit_api_error", lambda *a: seen["api_error"].append(a))
    return seen


def _orchestrator(store, fetcher, *, mirror=None, static=None, auth=None):
    return rs.RefreshOrchestrator(
        store,
        fetcher=fetcher,
        mirror=mirror,
        static_loader=lambda: static,
        auth_provider=lambda: auth,
    )


def _seed(store: SnapshotStore, clock, states, *, age: float = 0, failures: int = 0) -> None:
    store.save({"time": 1_699_000_000, "states": states})
    for _ in range(failures):
        store.record_failure()
    clock.advance(age)


# --------------------------------------------------------------------------- #
# Initial state                                                               #
# --------------------------------------------------------------------------- #
def test_starts_empty_and_idle(store) -> None:
    orch = _orchestrator(store, returning({"time": 1, "states": []}))

    current = orch.current()
    assert current["source"] == rs.EMPTY
    assert current["states"] == []
    assert current["age_seconds"] is None
    assert current["error"] is None
    assert orch.state == rs.IDLE
    assert orch.last_outcome is None


# --------------------------------------------------------------------------- #
# Live success                                                                #
# --------------------------------------------------------------------------- #
@pytest.mark.asyncio
async def test_fresh_install_live_success(store, make_states, events) -> None:
    """No persisted state, live returns 5 aircraft."""
    mirror = FakeMirror()
    snap = {"time": 1_700_000_000, "states": make_states(5)}
    orch = _orchestrator(store, returning(snap), mirror=mirror)

    outcome = await orch.run_cycle()

    assert outcome["source"] == rs.LIVE
    assert len(outcome["states"]) == 5
    assert outcome["age_seconds"] == 0.0
    assert outcome["captured_at"] == 1_700_000_000
    assert outcome["error"] is None
    assert orch.current() is outcome
    assert len(store.load().snapshot["states"]) == 5
    assert store.failure_count() == 0
    assert mirror.pushed == [snap]
    assert mirror.pulls == 0
    assert orch.cycles == 1
    assert orch.state == rs.IDLE


@pytest.mark.asyncio
async def test_success_resets_failure_count(store, clock, make_states, events) -> None:
    _seed(store, clock, make_states(2), failures=6)
    orch = _orchestrator(store, returning({"time": 2, "states": make_states(3)}))

    await orch.run_cycle()

    assert store.failure_count() == 0


@pytest.mark.asyncio
async def test_auth_header_is_passed_to_fetcher(store, make_states, events) -> None:
    fetch = returning({"time": 1, "states": make_states(1)})
    orch = _orchestrator(store, fetch, auth="Bearer abc")

    await orch.run_cycle()

    assert fetch.calls == ["Bearer abc"]


@pytest.mark.asyncio
async def test_anonymous_fetch(store, make_states, events) -> None:
    fetch = returning({"time": 1, "states": make_states(1)})
    orch = _orchestrator(store, fetch, auth=None)

    await orch.run_cycle()

    assert fetch.calls == [None]


@pytest.mark.asyncio
async def test_live_render_survives_failed_save(clock, make_states, events) -> None:
    """A full medium drops the durable save, not the render."""
    store = SnapshotStore(MemoryStore(max_bytes=100), clock=clock)
    orch = _orchestrator(store, returning({"time": 1, "states": make_states(5)}))

    outcome = await orch.run_cycle()

    assert outcome["source"] == rs.LIVE
    assert len(outcome["states"]) == 5
    assert store.load_emergency() is None


# --------------------------------------------------------------------------- #
# Empty live answer                                                           #
# --------------------------------------------------------------------------- #
@pytest.mark.asyncio
async def test_empty_live_keeps_cached_render(store, clock, make_states, events) -> None:
    _seed(store, clock, make_states(3), age=60, failures=2)
    mirror = FakeMirror()
    orch = _orchestrator(store, returning({"time": 2, "states": []}), mirror=mirror)

    outcome = await orch.run_cycle()

    assert outcome["source"] == rs.LOCAL_CACHE
    assert len(outcome["states"]) == 3
    assert outcome["error"] is None
    assert store.failure_count() == 2
    assert store.state().saved_at == clock.now - 60
    assert mirror.pushed == []
    assert events["api_error"] == []


@pytest.mark.asyncio
async def test_empty_live_on_fresh_install_stays_empty(store, events) -> None:
    orch = _orchestrator(store, returning({"time": 2, "states": []}))

    outcome = await orch.run_cycle()

    assert outcome["source"] == rs.EMPTY
    assert outcome["error"] is None
    assert store.state().snapshot is None
    assert store.failure_count() == 0


@pytest.mark.asyncio
async def test_empty_live_keeps_previous_live_render(store, make_states, events) -> None:
    """A previous live render stays on screen even after the cache expires."""
    snaps = iter(
        [{"time": 1, "states": make_states(4)}, {"time": 2, "states": []}]
    )

    async def fetch(_auth):
        return next(snaps)

    orch = _orchestrator(store, fetch)
    first = await orch.run_cycle()
    store.clear()
    second = await orch.run_cycle()

    assert second == first
    assert second["source"] == rs.LIVE


@pytest.mark.asyncio
async def test_empty_live_after_failure_clears_the_reason(store, clock, make_states, events) -> None:
    """A successful but empty answer must not keep reporting the old failure."""
    results = iter([RateLimitedError(retry_after=900), {"time": 2, "states": []}])
    static = {"time": 1, "states": make_states(3)}

    async def fetch(_auth):
        item = next(results)
        if isinstance(item, Exception):
            raise item
        return item

    orch = _orchestrator(store, fetch, static=static)
    first = await orch.run_cycle()
    assert first["source"] == rs.STATIC
    assert first["error_kind"] == "rate_limited"

    second = await orch.run_cycle()

    assert second["source"] == rs.STATIC
    assert len(second["states"]) == 3
    assert second["error"] is None
    assert second["error_kind"] is None
    assert second["retry_after"] is None
    assert orch.current()["error_kind"] is None
    assert store.failure_count() == 1


# --------------------------------------------------------------------------- #
# Fallback chain                                                              #
# --------------------------------------------------------------------------- #
@pytest.mark.asyncio
async def test_rate_limited_uses_recent_cache(store, clock, make_states, events) -> None:
    """Cache saved 2 min ago, healthy history, live says 429."""
    _seed(store, clock, make_states(3), age=120)
    orch = _orchestrator(store, raising(RateLimitedError(retry_after=900)))

    outcome = await orch.run_cycle()

    assert outcome["source"] == rs.LOCAL_CACHE
    assert len(outcome["states"]) == 3
    assert outcome["age_seconds"] == 120
    assert outcome["error_kind"] == "rate_limited"
    assert outcome["retry_after"] == 900
    assert "429" in outcome["error"]
    assert store.failure_count() == 1
    assert store.state().consecutive_failures == 1


@pytest.mark.asyncio
async def test_long_window_after_repeated_failures(store, clock, make_states, events) -> None:
    """Four prior failures, cache 10 h old: still served from local cache."""
    _seed(store, clock, make_states(3), age=10 * 3600, failures=4)
    mirror = FakeMirror(CachedSnapshot({"time": 9, "states": make_states(7)}, 5.0))
    orch = _orchestrator(store, raising(TransportError("down")), mirror=mirror)

    outcome = await orch.run_cycle()

    assert outcome["source"] == rs.LOCAL_CACHE
    assert len(outcome["states"]) == 3
    assert mirror.pulls == 0
    assert store.failure_count() == 5


@pytest.mark.asyncio
async def test_expired_cache_prefers_mirror_over_static(store, clock, make_states, events) -> None:
    _seed(store, clock, make_states(3), age=600)
    mirror = FakeMirror(CachedSnapshot({"time": 9, "states": make_states(7)}, 42.0))
    static = {"time": 1, "states": make_states(4)}
    orch = _orchestrator(store, raising(TransportError("down")), mirror=mirror, static=static)

    outcome = await orch.run_cycle()

    assert outcome["source"] == rs.REMOTE_MIRROR
    assert len(outcome["states"]) == 7
    assert outcome["age_seconds"] == 42.0
    assert outcome["captured_at"] == 9
    assert outcome["error_kind"] == "transport"


@pytest.mark.asyncio
async def test_static_when_cache_too_old_and_no_mirror(store, clock, make_states, events) -> None:
    """Four failures, cache 25 h old, no mirror, static has 4 aircraft."""
    _seed(store, clock, make_states(3), age=25 * 3600, failures=4)
    static = {"time": 1, "states": make_states(4, prefix="aa")}
    orch = _orchestrator(store, raising(TransportError("down")), static=static)

    outcome = await orch.run_cycle()

    assert outcome["source"] == rs.STATIC
    assert len(outcome["states"]) == 4
    assert outcome["age_seconds"] is None


@pytest.mark.asyncio
async def test_empty_mirror_falls_through_to_static(store, make_states, events) -> None:
    mirror = FakeMirror(CachedSnapshot({"time": 9, "states": []}, 1.0))
    static = {"time": 1, "states": make_states(2)}
    orch = _orchestrator(store, raising(TransportError("down")), mirror=mirror, static=static)

    outcome = await orch.run_cycle()

    assert mirror.pulls == 1
    assert outcome["source"] == rs.STATIC


@pytest.mark.asyncio
async def test_emergency_cache_when_nothing_else(store, clock, make_states, events) -> None:
    _seed(store, clock, make_states(3), age=30 * 3600)
    orch = _orchestrator(
        store, raising(MalformedResponseError("no states")), mirror=FakeMirror(), static=None
    )

    outcome = await orch.run_cycle()

    assert outcome["source"] == rs.LOCAL_CACHE
    assert len(outcome["states"]) == 3
    assert outcome["age_seconds"] == 30 * 3600
    assert outcome["error_kind"] == "malformed"


@pytest.mark.asyncio
async def test_empty_render_carries_the_reason(store, events) -> None:
    orch = _orchestrator(
        store,
        raising(UnauthorizedError("Unauthorized (401). Check your credentials.", status_code=401)),
        mirror=FakeMirror(),
        static={"time": 1, "states": []},
    )

    outcome = await orch.run_cycle()

    assert outcome["source"] == rs.EMPTY
    assert outcome["states"] == []
    assert outcome["error_kind"] == "unauthorized"
    assert "credentials" in outcome["error"]


@pytest.mark.asyncio
async def test_unexpected_fetch_exception_is_a_transport_failure(store, events) -> None:
    orch = _orchestrator(store, raising(KeyError("boom")))

    outcome = await orch.run_cycle()

    assert outcome["source"] == rs.EMPTY
    assert outcome["error_kind"] == "transport"
    assert outcome["error"].startswith("Unexpected error")
    assert store.failure_count() == 1


@pytest.mark.asyncio
async def test_api_error_event_carries_kind(store, events) -> None:
    orch = _orchestrator(store, raising(RateLimitedError()))

    await orch.run_cycle()

    ((api, message, kind),) = events["api_error"]
    assert api == "OpenSky"
    assert kind == "rate_limited"
    assert "429" in message


# --------------------------------------------------------------------------- #
# Ordering: optimistic render, then outcome                                   #
# --------------------------------------------------------------------------- #
@pytest.mark.asyncio
async def test_cache_is_rendered_before_slow_fetch_resolves(
    store, clock, make_states, events
) -> None:
    _seed(store, clock, make_states(3), age=30)
    release = asyncio.Event()
    live = {"time": 2, "states": make_states(6, prefix="bb")}

    async def slow_fetch(_auth):
        await release.wait()
        return live

    orch = _orchestrator(store, slow_fetch)
    channel = orch.subscribe()
    cycle = asyncio.create_task(orch.run_cycle())

    first = await asyncio.wait_for(channel.get(), timeout=1)
    assert first.kind == "cache_hit"
    assert first.snapshot["source"] == rs.LOCAL_CACHE
    assert orch.current()["source"] == rs.LOCAL_CACHE
    assert orch.state == rs.FETCHING
    assert not cycle.done()

    release.set()
    outcome = await asyncio.wait_for(cycle, timeout=1)

    second = channel.get_nowait()
    assert second.kind == "outcome"
    assert second.snapshot is outcome
    assert outcome["source"] == rs.LIVE
    assert orch.current() is outcome
    assert channel.empty()


@pytest.mark.asyncio
async def test_no_cache_hit_event_without_usable_cache(store, events) -> None:
    orch = _orchestrator(store, raising(TransportError("down")))
    channel = orch.subscribe()

    await orch.run_cycle()

    event = channel.get_nowait()
    assert event.kind == "outcome"
    assert channel.empty()


@pytest.mark.asyncio
async def test_fallback_outcome_follows_cache_hit(store, clock, make_states, events) -> None:
    _seed(store, clock, make_states(2), age=10)
    orch = _orchestrator(store, raising(TransportError("down")))
    channel = orch.subscribe()

    await orch.run_cycle()

    kinds = [channel.get_nowait().kind for _ in range(channel.qsize())]
    assert kinds == ["cache_hit", "outcome"]
    assert orch.current()["error_kind"] == "transport"


def test_subscribe_returns_the_same_channel(store) -> None:
    orch = _orchestrator(store, returning({"time": 1, "states": []}))
    assert orch.subscribe() is orch.subscribe()


# --------------------------------------------------------------------------- #
# Overlap guard                                                               #
# --------------------------------------------------------------------------- #
@pytest.mark.asyncio
async def test_second_cycle_is_skipped_while_one_is_in_flight(store, make_states, events) -> None:
    release = asyncio.Event()
    calls = 0

    async def slow_fetch(_auth):
        nonlocal calls
        calls += 1
        await release.wait()
        return {"time": 2, "states": make_states(2)}

    orch = _orchestrator(store, slow_fetch)
    first = asyncio.create_task(orch.run_cycle())
    await asyncio.sleep(0)

    skipped = await orch.run_cycle()
    assert skipped["source"] == rs.EMPTY

    release.set()
    await first
    assert calls == 1
    assert orch.cycles == 1


# --------------------------------------------------------------------------- #
# Notifications                                                               #
# --------------------------------------------------------------------------- #
@pytest.mark.asyncio
async def test_on_cycle_complete_callbacks(store, make_states, events) -> None:
    seen_sync: list = []
    seen_async: list = []

    orch = _orchestrator(store, returning({"time": 1, "states": make_states(2)}))

    @orch.on_cycle_complete
    def broken(_outcome):
        raise RuntimeError("ui went away")

    orch.on_cycle_complete(seen_sync.append)

    async def async_cb(outcome):
        seen_async.append(outcome)

    orch.on_cycle_complete(async_cb)

    outcome = await orch.run_cycle()

    assert seen_sync == [outcome]
    assert seen_async == [outcome]


@pytest.mark.asyncio
async def test_source_change_events(store, make_states, events) -> None:
    results = iter(
        [
            {"time": 1, "states": make_states(2)},
            {"time": 2, "states": make_states(3)},
            TransportError("down"),
        ]
    )

    async def fetch(_auth):
        item = next(results)
        if isinstance(item, Exception):
            raise item
        return item

    orch = _orchestrator(store, fetch)
    await orch.run_cycle()
    await orch.run_cycle()
    await orch.run_cycle()

    changes = [(a[0], a[1]) for a in events["source_changed"]]
    assert changes == [(None, rs.LIVE), (rs.LIVE, rs.LOCAL_CACHE)]


# --------------------------------------------------------------------------- #
# Background loop                                                             #
# --------------------------------------------------------------------------- #
@pytest.mark.asyncio
async def test_run_forever_repeats_and_survives_crashes(store, make_states, events) -> None:
    orch = _orchestrator(store, returning({"time": 1, "states": make_states(1)}))
    done = asyncio.Event()
    calls = 0
    real_cycle = orch.run_cycle

    async def flaky_cycle():
        nonlocal calls
        calls += 1
        if calls == 1:
            raise RuntimeError("first cycle explodes")
        if calls >= 3:
            done.set()
        return await real_cycle()

    orch.run_cycle = flaky_cycle  # type: ignore[method-assign]
    task = asyncio.create_task(orch.run_forever(initial_delay=0, interval=0))
    try:
        await asyncio.wait_for(done.wait(), timeout=2)
    finally:
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    assert calls >= 3
    assert orch.cycles >= 1
