"""
failure_tracker.py
~~~~~~~~~~~~~~~~~~
Count consecutive OpenSky failures in the same store as the cached
snapshot.  The count only ever grows here; the snapshot store writes it back to
zero in the same atomic write that stores a fresh snapshot.
"""

from __future__ import annotations

import logging
from typing import Final

from .errors import PersistenceError
from .kv_store import KeyValueStore

LOG = logging.getLogger("failure_tracker")

FAILURE_KEY: Final[str] = "api_failure_count"


class FailureTracker:
    def __init__(self, kv: KeyValueStore) -> None:
        self._kv = kv

    def count(self) -> int:
        """Current consecutive-failure count (malformed values read as 0)."""
        raw = self._kv.get(FAILURE_KEY, 0)
        try:
            value = int(raw)
        except (TypeError, ValueError):
            LOG.warning("[failures] ignoring malformed count %r", raw)
            return 0
        return max(value, 0)

    def record_failure(self) -> int:
        """Increment, persist and return the new count.  Never raises."""
        new = self.count() + 1
        try:
            self._kv.set_many({FAILURE_KEY: new})
        except PersistenceError as exc:
            LOG.error("[failures] could not persist count %d: %s", new, exc)
        LOG.info("[failures] API failure count: %d", new)
        return new


__all__ = ["FAILURE_KEY", "FailureTracker"]
