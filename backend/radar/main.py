"""
main.py – FastAPI entry point
=============================

* Background loop: one refresh cycle shortly after start-up, then every
  ``REFRESH_INTERVAL_SEC`` (5 min) – see :mod:`refresh_service`.
* ``/flights.json`` – the snapshot the map should draw right now, with its
  source (live / local cache / mirror / static / empty) and age.
* ``/status.json`` – cache internals for a status bar: failure count,
  active freshness window, last outcome.
* ``/flight-data`` – the remote-mirror endpoint.  Other instances point
  their ``MIRROR_URL`` here to share the latest snapshot.
"""

from __future__ import annotations

# ─── Std-lib / third-party ────────────────────────────────────────────
import asyncio
import contextlib
import datetime as dt
import logging
import os
import secrets
import sys
import time
from contextlib import asynccontextmanager
from typing import Any

from dotenv import load_dotenv

# Project modules read their configuration at import time
load_dotenv()

from fastapi import FastAPI, HTTPException, Query, Request  # noqa: E402
from fastapi.responses import JSONResponse, PlainTextResponse  # noqa: E402
from slowapi import Limiter  # noqa: E402
from slowapi.errors import RateLimitExceeded  # noqa: E402
from slowapi.util import get_remote_address  # noqa: E402

# ─── Project modules ──────────────────────────────────────────────────
from . import __version__  # noqa: E402
from .credentials import log_credential_status  # noqa: E402
from .errors import PersistenceError  # noqa: E402
from .event_service import emit_machine_started  # noqa: E402
from .freshness import window_for  # noqa: E402
from .kv_store import PERSIST_DIR, PERSIST_MAX_BYTES, JsonFileStore  # noqa: E402
from .mirror_service import RemoteMirror  # noqa: E402
from .refresh_service import REFRESH_INTERVAL_SEC, RefreshOrchestrator  # noqa: E402
from .snapshot_store import SnapshotStore  # noqa: E402

# ─── Logging ──────────────────────────────────────────────────────────
LOG = logging.getLogger("radar")

_handler = logging.StreamHandler(sys.stdout)
_handler.setFormatter(logging.Formatter("%(levelname)s:     %(name)s - %(message)s"))
for _name in (
    "radar",
    "refresh_service",
    "snapshot_store",
    "failure_tracker",
    "mirror_service",
    "opensky_service",
    "kv_store",
    "static_snapshot",
    "credentials",
    "event_service",
):
    _logger = logging.getLogger(_name)
    _logger.addHandler(_handler)
    _logger.setLevel(logging.INFO)

# ---------------------------------------------------------------------
# Environment
# ---------------------------------------------------------------------
REFRESH_TOKEN = os.getenv("REFRESH_TOKEN", "")

UTC = dt.timezone.utc

# Rate limiter for the mirror write endpoint
limiter = Limiter(key_func=get_remote_address)

# Local cache + orchestrator (module globals so tests can swap them)
store = SnapshotStore(
    JsonFileStore(PERSIST_DIR / "flight_cache.json", max_bytes=PERSIST_MAX_BYTES)
)
orchestrator = RefreshOrchestrator(store, mirror=RemoteMirror())

# Server side of the remote mirror
MIRROR_STORE = JsonFileStore(PERSIST_DIR / "mirror.json")
MIRROR_DATA_KEY = "flight_data"
MIRROR_TIMESTAMP_KEY = "flight_data_timestamp"


def _iso(ts: float | None) -> str | None:
    return dt.datetime.fromtimestamp(ts, UTC).isoformat() if ts is not None else None


# ---------------------------------------------------------------------
# Lifespan – background refresh loop
# ---------------------------------------------------------------------
@asynccontextmanager
async def lifespan(app: FastAPI):  # noqa: N802 – FastAPI naming style
    """Start the periodic refresh loop; stop it (and pending pushes) on exit."""
    log_credential_status()

    task = asyncio.create_task(orchestrator.run_forever())

    emit_machine_started(__version__)

    yield  # ⇢ application runs here

    # Shutdown: stop polling loop
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task
    if orchestrator.mirror is not None:
        await orchestrator.mirror.drain()


# ---------------------------------------------------------------------
# FastAPI instance & middleware
# ---------------------------------------------------------------------
app = FastAPI(title="Brazil Flight Radar", lifespan=lifespan)

# Rate limiter state
app.state.limiter = limiter


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    """Return 429 when rate limit is exceeded."""
    return JSONResponse(
        status_code=429,
        content={"detail": "Rate limit exceeded. Try again later."},
    )


# Health probe --------------------------------------------------------
@app.get("/healthz", response_class=PlainTextResponse)
async def healthz() -> PlainTextResponse:
    """Return HTTP 200 with body “ok” if the app is up."""
    return PlainTextResponse("ok", status_code=200)


# ---------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------
@app.get("/flights.json")
async def flights() -> JSONResponse:
    """
    Return the snapshot the map should draw right now.

    The payload always contains ``states``, ``source`` and ``age_seconds``;
    ``error``/``error_kind`` explain why we are not on live data.
    """
    return JSONResponse(content=dict(orchestrator.current()))


@app.get("/status.json")
async def status() -> dict[str, Any]:
    """Cache internals for a status bar or debugging."""
    persisted = orchestrator.store.state()
    failures = persisted.consecutive_failures
    last = orchestrator.last_outcome

    return {
        "state": orchestrator.state,
        "cycles": orchestrator.cycles,
        "refresh_interval_sec": REFRESH_INTERVAL_SEC,
        "consecutive_failures": failures,
        "cache_window_sec": window_for(failures),
        "cache_freshness": orchestrator.store.freshness(),
        "cached_aircraft": len(persisted.snapshot["states"]) if persisted.snapshot else 0,
        "cached_at": _iso(persisted.saved_at),
        "mirror_enabled": bool(orchestrator.mirror and orchestrator.mirror.enabled),
        "last_outcome": (
            {
                "source": last["source"],
                "aircraft": len(last["states"]),
                "error": last["error"],
                "error_kind": last["error_kind"],
                "retry_after": last["retry_after"],
            }
            if last
            else None
        ),
    }


@app.post("/refresh")
async def refresh(token: str = Query(...)) -> dict[str, Any]:
    """Run one refresh cycle now (protected by ``REFRESH_TOKEN``)."""
    if not REFRESH_TOKEN.strip() or not secrets.compare_digest(
        token.strip(), REFRESH_TOKEN.strip()
    ):
        raise HTTPException(status_code=403, detail="Forbidden")

    outcome = await orchestrator.run_cycle()
    return {
        "ok": True,
        "source": outcome["source"],
        "aircraft": len(outcome["states"]),
        "error": outcome["error"],
    }


# ---------------------------------------------------------------------
# Remote mirror endpoint
# ---------------------------------------------------------------------
@app.get("/flight-data")
async def mirror_get() -> JSONResponse:
    """Return the mirrored snapshot (``data`` is null when nothing stored)."""
    data = MIRROR_STORE.get(MIRROR_DATA_KEY)
    timestamp = MIRROR_STORE.get(MIRROR_TIMESTAMP_KEY)

    return JSONResponse(
        content={
            "success": True,
            "data": data,
            "timestamp": timestamp if data is not None else None,
        },
        headers={"Cache-Control": "public, max-age=300"},
    )


@app.post("/flight-data")
@limiter.limit("120/hour")
async def mirror_post(body: dict, request: Request) -> dict[str, Any]:
    """Store a snapshot pushed by a client (rate limited: 120/hour per IP)."""
    states = body.get("states")
    if not isinstance(states, list):
        raise HTTPException(
            status_code=400,
            detail="Invalid data format. Expected { time, states }",
        )
    if not states:
        # Same rule as the local cache: never overwrite good data with nothing
        return {"success": True, "message": "Ignored empty snapshot", "timestamp": None}

    now = time.time()
    try:
        MIRROR_STORE.set_many(
            {
                MIRROR_DATA_KEY: {"time": body.get("time"), "states": states},
                MIRROR_TIMESTAMP_KEY: now,
            }
        )
    except PersistenceError as exc:
        LOG.error("[mirror] save failed: %s", exc)
        raise HTTPException(status_code=503, detail="Storage error") from exc

    LOG.info("[mirror] stored %d aircraft states", len(states))
    return {
        "success": True,
        "message": f"Saved {len(states)} aircraft states",
        "timestamp": now,
    }
