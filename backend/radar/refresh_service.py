"""refresh_service.py
~~~~~~~~~~~~~~~~~~~~
Drive the periodic OpenSky refresh and decide **which snapshot the map
shows**.

One cycle
---------
1. Optimistic render: if the local cache is inside its freshness window,
   publish it straight away (``cache_hit`` event).
2. Live fetch (with the optional auth header).
3. Success with aircraft → save locally, push to the mirror in the
   background, publish ``live``.
   Success with zero aircraft → the aircraft on screen stay, only a stale
   failure reason from an earlier cycle is cleared.
4. Failure → bump the failure count, then try in order

   * local cache (freshness window),
   * remote mirror,
   * bundled static snapshot,
   * local cache regardless of age (emergency),

   and publish the first one with aircraft, else ``empty``.  Every fallback
   carries the failure reason so the UI can explain it.
5. ``outcome`` event, ``on_cycle_complete`` callbacks.

The outcome always supersedes the optimistic render of the same cycle:
both are emitted, in that order, on one channel.

Cadence is fixed (``REFRESH_INTERVAL_SEC``, default 5 min) regardless of
the failure count; only the cache acceptance window grows.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import os
from typing import Any, Awaitable, Callable, Final, Literal, NamedTuple, TypedDict

from .credentials import get_auth_header
from .errors import FetchError, TransportError
from .event_service import emit_api_error, emit_source_changed
from .mirror_service import RemoteMirror
from .opensky_service import fetch_flights
from .snapshot_store import CachedSnapshot, Snapshot, SnapshotStore
from .static_snapshot import load_static

LOG = logging.getLogger("refresh_service")

# ── Configuration ─────────────────────────────────────────────────────────
REFRESH_INTERVAL_SEC = int(os.getenv("REFRESH_INTERVAL_SEC", "300"))
INITIAL_DELAY_SEC: Final[float] = 1.0

Source = Literal["live", "local_cache", "remote_mirror", "static", "empty"]
LIVE: Final = "live"
LOCAL_CACHE: Final = "local_cache"
REMOTE_MIRROR: Final = "remote_mirror"
STATIC: Final = "static"
EMPTY: Final = "empty"

IDLE: Final = "idle"
FETCHING: Final = "fetching"


class RenderableSnapshot(TypedDict):
    """What the map layer gets: aircraft plus where they came from."""

    states: list[list[Any]]
    source: Source
    age_seconds: float | None
    captured_at: int | None
    error: str | None
    error_kind: str | None
    retry_after: float | None


class CycleEvent(NamedTuple):
    kind: Literal["cache_hit", "outcome"]
    snapshot: RenderableSnapshot


Fetcher = Callable[[str | None], Awaitable[Snapshot]]
CycleCallback = Callable[[RenderableSnapshot], Any]


def _render(
    source: Source,
    snapshot: Snapshot | None = None,
    age_seconds: float | None = None,
    failure: FetchError | None = None,
) -> RenderableSnapshot:
    return RenderableSnapshot(
        states=list(snapshot["states"]) if snapshot else [],
        source=source,
        age_seconds=age_seconds,
        captured_at=snapshot.get("time") if snapshot else None,
        error=str(failure) if failure else None,
        error_kind=failure.kind if failure else None,
        retry_after=getattr(failure, "retry_after", None),
    )


def _has_states(cached: CachedSnapshot | None) -> bool:
    return bool(cached and cached.snapshot.get("states"))


class RefreshOrchestrator:
    """Owns the current renderable snapshot and the refresh cycle."""

    def __init__(
        self,
        store: SnapshotStore,
        *,
        fetcher: Fetcher = fetch_flights,
        mirror: RemoteMirror | None = None,
        static_loader: Callable[[], Snapshot | None] = load_static,
        auth_provider: Callable[[], str | None] = get_auth_header,
    ) -> None:
        self.store = store
        self.mirror = mirror
        self._fetcher = fetcher
        self._static_loader = static_loader
        self._auth_provider = auth_provider

        self.state: str = IDLE
        self.cycles = 0
        self._current: RenderableSnapshot = _render(EMPTY)
        self._last_outcome: RenderableSnapshot | None = None
        self._callbacks: list[CycleCallback] = []
        self._channel: asyncio.Queue[CycleEvent] | None = None

    # ── public API ──────────────────────────────────────────────────────
    def current(self) -> RenderableSnapshot:
        """Freshest snapshot available to render right now."""
        return self._current

    @property
    def last_outcome(self) -> RenderableSnapshot | None:
        return self._last_outcome

    def on_cycle_complete(self, callback: CycleCallback) -> CycleCallback:
        """Register *callback* (sync or async) for every cycle outcome."""
        self._callbacks.append(callback)
        return callback

    def subscribe(self) -> asyncio.Queue[CycleEvent]:
        """Return the (single-consumer) event channel, creating it once."""
        if self._channel is None:
            self._channel = asyncio.Queue()
        return self._channel

    async def run_cycle(self) -> RenderableSnapshot:
        """Run one refresh cycle and return its outcome."""
        if self.state == FETCHING:
            LOG.warning("[cycle] previous cycle still in flight – skipping")
            return self._current

        previous = self._last_outcome["source"] if self._last_outcome else None
        self.state = FETCHING
        try:
            outcome = await self._cycle()
        finally:
            self.state = IDLE

        self.cycles += 1
        self._last_outcome = outcome
        if outcome["source"] != previous:
            emit_source_changed(
                previous, outcome["source"], len(outcome["states"]), outcome["error"]
            )
        await self._notify(outcome)
        return outcome

    async def run_forever(
        self,
        *,
        initial_delay: float = INITIAL_DELAY_SEC,
        interval: float | None = None,
    ) -> None:
        """First cycle shortly after start, then one every *interval* seconds."""
        interval = REFRESH_INTERVAL_SEC if interval is None else interval
        await asyncio.sleep(initial_delay)
        while True:
            try:
                await self.run_cycle()
            except Exception as exc:
                LOG.error("[loop] crashed: %s", exc, exc_info=True)
            await asyncio.sleep(interval)

    # ── cycle internals ─────────────────────────────────────────────────
    async def _cycle(self) -> RenderableSnapshot:
        cached = self.store.load()
        if _has_states(cached):
            LOG.info(
                "[cycle] Using cached flight data: %d aircraft",
                len(cached.snapshot["states"]),
            )
            self._publish("cache_hit", _render(LOCAL_CACHE, *cached))

        try:
            auth_header = self._auth_provider()
            LOG.info(
                "[cycle] Fetching flight data %s credentials",
                "with" if auth_header else "without",
            )
            snapshot = await self._fetcher(auth_header)
        except FetchError as exc:
            return await self._fallback(exc)
        except Exception as exc:  # noqa: BLE001 – collaborator bug ≈ transport failure
            LOG.error("[cycle] unexpected fetch error: %s", exc, exc_info=True)
            return await self._fallback(TransportError(f"Unexpected error: {exc}"))

        states = snapshot.get("states") or []
        if not states:
            LOG.warning("[cycle] No aircraft found in response – keeping current data")
            # The fetch itself succeeded: keep what is shown, drop any stale failure
            outcome = RenderableSnapshot(
                **{**self._current, "error": None, "error_kind": None, "retry_after": None}
            )
            self._publish("outcome", outcome)
            return outcome

        self.store.save(snapshot)
        if self.mirror is not None:
            self.mirror.push(snapshot)

        LOG.info("[cycle] Fetched %d aircraft states", len(states))
        outcome = _render(LIVE, snapshot, 0.0)
        self._publish("outcome", outcome)
        return outcome

    async def _fallback(self, failure: FetchError) -> RenderableSnapshot:
        count = self.store.record_failure()
        LOG.warning(
            "[cycle] fetch failed (%s, consecutive failures: %d): %s",
            failure.kind,
            count,
            failure,
        )
        emit_api_error("OpenSky", str(failure), failure.kind)

        outcome: RenderableSnapshot | None = None

        cached = self.store.load()
        if _has_states(cached):
            outcome = _render(LOCAL_CACHE, *cached, failure)

        if outcome is None and self.mirror is not None:
            mirrored = await self.mirror.pull()
            if _has_states(mirrored):
                outcome = _render(REMOTE_MIRROR, *mirrored, failure)

        if outcome is None:
            static = self._static_loader()
            if static and static.get("states"):
                outcome = _render(STATIC, static, None, failure)

        if outcome is None:
            LOG.info("[cycle] Nothing else available, trying emergency fallback...")
            cached = self.store.load_emergency()
            if _has_states(cached):
                outcome = _render(LOCAL_CACHE, *cached, failure)

        if outcome is None:
            LOG.warning("[cycle] No cached data available – showing empty map")
            outcome = _render(EMPTY, failure=failure)
        else:
            LOG.info(
                "[cycle] Using %s as fallback: %d aircraft (age: %s)",
                outcome["source"],
                len(outcome["states"]),
                "?" if outcome["age_seconds"] is None else f"{outcome['age_seconds'] / 60:.0f} min",
            )

        self._publish("outcome", outcome)
        return outcome

    def _publish(self, kind: Literal["cache_hit", "outcome"], render: RenderableSnapshot) -> None:
        self._current = render
        if self._channel is not None:
            self._channel.put_nowait(CycleEvent(kind, render))

    async def _notify(self, outcome: RenderableSnapshot) -> None:
        for callback in list(self._callbacks):
            try:
                result = callback(outcome)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                LOG.warning("[cycle] on_cycle_complete callback failed: %s", exc, exc_info=True)


__all__ = [
    "EMPTY",
    "LIVE",
    "LOCAL_CACHE",
    "REMOTE_MIRROR",
    "STATIC",
    "CycleEvent",
    "RefreshOrchestrator",
    "RenderableSnapshot",
]
