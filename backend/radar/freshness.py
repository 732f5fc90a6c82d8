"""
freshness.py
~~~~~~~~~~~~
How long a persisted flight snapshot may be served without refetching.

Two tiers only:

* **short** window (5 min) while OpenSky is healthy (≤ 3 consecutive
  failures), so we re-fetch often and show fresh data;
* **long** window (24 h) once it has failed more than 3 times in a row
  (rate-limited or down), so we keep showing stale aircraft instead of an
  empty map.

There is intentionally no exponential backoff beyond this single step.
"""

from __future__ import annotations

from typing import Final, Literal

SHORT_WINDOW_SEC: Final[int] = 300  # 5 min
LONG_WINDOW_SEC: Final[int] = 86_400  # 24 h
#: Failure count above which the long window applies
FAILURE_THRESHOLD: Final[int] = 3

Freshness = Literal["fresh", "stale", "expired"]


def window_for(failure_count: int) -> int:
    """Return the acceptance window (seconds) for *failure_count*."""
    return LONG_WINDOW_SEC if failure_count > FAILURE_THRESHOLD else SHORT_WINDOW_SEC


def classify(age_seconds: float, failure_count: int) -> Freshness:
    """
    Classify a snapshot of *age_seconds* given the current failure count.

    * ``fresh``   – within the short window.
    * ``stale``   – older than that but still inside the extended window.
    * ``expired`` – outside the window that currently applies.
    """
    if age_seconds <= SHORT_WINDOW_SEC:
        return "fresh"
    if age_seconds <= window_for(failure_count):
        return "stale"
    return "expired"


__all__ = [
    "FAILURE_THRESHOLD",
    "LONG_WINDOW_SEC",
    "SHORT_WINDOW_SEC",
    "Freshness",
    "classify",
    "window_for",
]
