"""
static_snapshot.py
~~~~~~~~~~~~~~~~~~
Last-resort aircraft snapshot bundled with the package
(``radar/data/static_flights.json``), shown only when the live API, the
local cache and the remote mirror all come up empty.

The file is read once per path.  It carries no freshness metadata; its
``time`` is informational only.

Configuration:
    STATIC_SNAPSHOT_FILE: alternative JSON file (same ``{"time", "states"}`` shape)
"""

from __future__ import annotations

import functools
import json
import logging
import os
from pathlib import Path

from .snapshot_store import Snapshot

LOG = logging.getLogger("static_snapshot")

DEFAULT_FILE = Path(__file__).resolve().parent / "data" / "static_flights.json"
STATIC_FILE = Path(os.getenv("STATIC_SNAPSHOT_FILE", "") or DEFAULT_FILE)


@functools.lru_cache(maxsize=4)
def _read(path: Path) -> Snapshot | None:
    if not path.exists():
        LOG.warning("[static] %s not found", path)
        return None
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        LOG.warning("[static] cannot read %s: %s", path, exc)
        return None
    if not isinstance(data, dict) or not isinstance(data.get("states"), list):
        LOG.warning("[static] %s has no states list", path)
        return None
    return Snapshot(time=data.get("time"), states=data["states"])


def load_static(path: Path | str | None = None) -> Snapshot | None:
    """Return the bundled snapshot (a fresh shallow copy) or ``None``."""
    snap = _read(Path(path) if path is not None else STATIC_FILE)
    if snap is None:
        return None
    return Snapshot(time=snap["time"], states=list(snap["states"]))


load_static.cache_clear = _read.cache_clear  # type: ignore[attr-defined]

__all__ = ["DEFAULT_FILE", "STATIC_FILE", "load_static"]
