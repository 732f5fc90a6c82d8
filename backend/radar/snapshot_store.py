"""
snapshot_store.py
~~~~~~~~~~~~~~~~~
Keep the **last good OpenSky snapshot** so the map has something to show
while the API is slow, rate-limited or down.

Persisted keys (one JSON document, see :mod:`kv_store`)
-------------------------------------------------------
``flight_data``        the snapshot, ``{"time": int, "states": [[...], ...]}``
``flight_timestamp``   wall-clock seconds of the save (drives the age)
``api_failure_count``  consecutive failures, see :mod:`failure_tracker`

Rules
-----
* An empty ``states`` list is **never** saved – a transient empty answer
  must not wipe good cached aircraft.
* A save replaces snapshot + timestamp and zeroes the failure count in a
  single write.  If the medium is full we clear our own entry and retry
  exactly once.
* :meth:`SnapshotStore.load` honours the freshness window; an expired entry
  is *not* deleted so :meth:`SnapshotStore.load_emergency` can still use it.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Final, NamedTuple, TypedDict

from .errors import PersistenceError
from .failure_tracker import FAILURE_KEY, FailureTracker
from .freshness import Freshness, classify, window_for
from .kv_store import KeyValueStore

LOG = logging.getLogger("snapshot_store")

DATA_KEY: Final[str] = "flight_data"
TIMESTAMP_KEY: Final[str] = "flight_timestamp"


class Snapshot(TypedDict):
    """One OpenSky ``states/all`` answer; ``states`` is passed through as-is."""

    time: int | None
    states: list[list[Any]]


class CachedSnapshot(NamedTuple):
    snapshot: Snapshot
    age_seconds: float | None


@dataclass(frozen=True)
class PersistedState:
    """Everything that survives a restart, read in one go."""

    snapshot: Snapshot | None
    saved_at: float | None
    consecutive_failures: int


class SnapshotStore:
    """Single-slot snapshot cache on top of a :class:`KeyValueStore`."""

    def __init__(
        self,
        kv: KeyValueStore,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._kv = kv
        self._clock = clock
        self.failures = FailureTracker(kv)

    # ── writes ──────────────────────────────────────────────────────────
    def save(self, snapshot: Snapshot) -> bool:
        """
        Persist *snapshot* and reset the failure count.

        Returns ``True`` when the snapshot was stored.  Never raises: empty
        snapshots and storage errors are logged and reported as ``False``.
        """
        states = snapshot.get("states") if snapshot else None
        if not isinstance(states, (list, tuple)) or not states:
            LOG.warning("[cache] Not saving empty flight data")
            return False

        record = {
            DATA_KEY: {"time": snapshot.get("time"), "states": list(states)},
            TIMESTAMP_KEY: self._clock(),
            FAILURE_KEY: 0,
        }
        try:
            self._kv.set_many(record)
        except PersistenceError as exc:
            LOG.warning("[cache] Error saving flight data (%s), clearing old data", exc)
            self.clear()
            try:
                self._kv.set_many(record)
            except PersistenceError as retry_exc:
                LOG.error("[cache] Still unable to save after clearing: %s", retry_exc)
                return False
            LOG.info("[cache] Saved after clearing old data")

        LOG.info("[cache] Saved %d aircraft to cache", len(states))
        return True

    def record_failure(self) -> int:
        return self.failures.record_failure()

    def clear(self) -> None:
        """Drop snapshot + timestamp; the failure count is left alone."""
        try:
            self._kv.delete(DATA_KEY, TIMESTAMP_KEY)
        except PersistenceError as exc:
            LOG.error("[cache] Error clearing flight data: %s", exc)

    # ── reads ───────────────────────────────────────────────────────────
    def failure_count(self) -> int:
        return self.failures.count()

    def load(self) -> CachedSnapshot | None:
        """Return the cached snapshot if it is inside the freshness window."""
        snapshot, saved_at = self._read_entry()
        if snapshot is None or saved_at is None:
            return None

        age = self._clock() - saved_at
        window = window_for(self.failure_count())
        if age > window:
            LOG.info(
                "[cache] Cache expired (age: %d min, max: %d min)",
                round(age / 60),
                round(window / 60),
            )
            return None

        LOG.info(
            "[cache] Loaded %d aircraft from cache (age: %d min)",
            len(snapshot["states"]),
            round(age / 60),
        )
        return CachedSnapshot(snapshot, age)

    def load_emergency(self) -> CachedSnapshot | None:
        """Return whatever was saved last, regardless of age."""
        snapshot, saved_at = self._read_entry()
        if snapshot is None:
            return None

        age = self._clock() - saved_at if saved_at is not None else None
        LOG.warning(
            "[cache] Emergency: loaded %d aircraft from cache (age: %s min)",
            len(snapshot["states"]),
            round(age / 60) if age is not None else "?",
        )
        return CachedSnapshot(snapshot, age)

    def state(self) -> PersistedState:
        snapshot, saved_at = self._read_entry()
        return PersistedState(
            snapshot=snapshot,
            saved_at=saved_at,
            consecutive_failures=self.failure_count(),
        )

    def freshness(self) -> Freshness | None:
        """Classify the stored entry, or ``None`` when nothing is stored."""
        _snapshot, saved_at = self._read_entry()
        if saved_at is None:
            return None
        return classify(self._clock() - saved_at, self.failure_count())

    # ── internal helpers ────────────────────────────────────────────────
    def _read_entry(self) -> tuple[Snapshot | None, float | None]:
        data = self._kv.get(DATA_KEY)
        raw_ts = self._kv.get(TIMESTAMP_KEY)

        saved_at: float | None
        try:
            saved_at = float(raw_ts) if raw_ts is not None else None
        except (TypeError, ValueError):
            LOG.warning("[cache] ignoring malformed timestamp %r", raw_ts)
            saved_at = None

        if data is None:
            return None, saved_at
        if not isinstance(data, dict) or not isinstance(data.get("states"), list):
            LOG.warning("[cache] ignoring malformed cached flight data")
            return None, saved_at

        return Snapshot(time=data.get("time"), states=data["states"]), saved_at


__all__ = [
    "DATA_KEY",
    "TIMESTAMP_KEY",
    "CachedSnapshot",
    "PersistedState",
    "Snapshot",
    "SnapshotStore",
]
