"""
mirror_service.py
~~~~~~~~~~~~~~~~~
Best-effort **shared copy** of the latest snapshot on a remote endpoint
(another instance's ``/flight-data`` route, see :mod:`main`).

* :meth:`RemoteMirror.push` is fire-and-forget: it schedules the POST on the
  running loop and returns at once.  Its outcome never changes whether the
  refresh cycle succeeded.
* :meth:`RemoteMirror.pull` reads the copy back; every error reads as
  "absent".  No freshness window is applied here.

There is no auth and no conflict resolution: the last writer wins.

Configuration:
    MIRROR_URL: endpoint URL (optional – mirror disabled if not set)
    MIRROR_TIMEOUT_SEC: per-request timeout (default 10 s)

Wire format:
    POST  {"time": int, "states": [...]}
    GET → {"success": bool, "data": {"time", "states"} | null,
           "timestamp": seconds | null}
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from typing import Any, Callable

import httpx

from .api_logging import logged_request_async
from .constants import USER_AGENT
from .snapshot_store import CachedSnapshot, Snapshot

LOG = logging.getLogger("mirror_service")

# ── Configuration ─────────────────────────────────────────────────────────
MIRROR_URL = os.getenv("MIRROR_URL", "")
MIRROR_TIMEOUT_SEC = float(os.getenv("MIRROR_TIMEOUT_SEC", "10"))


def _timestamp_seconds(value: Any) -> float | None:
    """Normalise a mirror timestamp to seconds (older writers sent ms)."""
    if value is None or value == "":
        return None
    try:
        ts = float(value)
    except (TypeError, ValueError):
        return None
    if ts <= 0:
        return None
    if ts > 1e11:
        ts /= 1000.0
    return ts


class RemoteMirror:
    """HTTP client for the shared snapshot mirror."""

    def __init__(
        self,
        url: str | None = None,
        *,
        timeout: float | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.url = (MIRROR_URL if url is None else url).strip()
        self.timeout = MIRROR_TIMEOUT_SEC if timeout is None else timeout
        self._clock = clock
        # Strong refs so detached pushes are not garbage-collected mid-flight
        self._pending: set[asyncio.Task] = set()

    @property
    def enabled(self) -> bool:
        return bool(self.url)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout, headers={"User-Agent": USER_AGENT}
        )

    # ── push ────────────────────────────────────────────────────────────
    def push(self, snapshot: Snapshot) -> asyncio.Task | None:
        """Schedule a POST of *snapshot* without waiting for it."""
        if not self.enabled:
            return None
        states = snapshot.get("states") or []
        if not states:
            LOG.debug("[mirror] not pushing empty snapshot")
            return None

        payload = {"time": snapshot.get("time"), "states": list(states)}
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            LOG.warning("[mirror] no running event loop – push skipped")
            return None

        task = loop.create_task(self._post(payload))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _post(self, payload: dict[str, Any]) -> bool:
        try:
            async with self._client() as client:
                resp = await logged_request_async(
                    client, "post", self.url, json=payload, raise_for_status=False
                )
        except Exception as exc:  # noqa: BLE001 – never reaches the caller
            LOG.warning("[mirror] push failed: %s", exc)
            return False

        if resp.status_code != 200:
            LOG.warning("[mirror] push rejected: HTTP %s", resp.status_code)
            return False

        LOG.info("[mirror] pushed %d aircraft", len(payload["states"]))
        return True

    async def drain(self) -> None:
        """Wait for every detached push (shutdown and tests)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # ── pull ────────────────────────────────────────────────────────────
    async def pull(self) -> CachedSnapshot | None:
        """Return the mirrored snapshot, or ``None`` for absent/any error."""
        if not self.enabled:
            return None

        try:
            async with self._client() as client:
                resp = await logged_request_async(
                    client, "get", self.url, raise_for_status=False
                )
        except Exception as exc:  # noqa: BLE001 – treated as absent
            LOG.warning("[mirror] pull failed: %s", exc)
            return None

        if resp.status_code != 200:
            LOG.warning("[mirror] pull returned HTTP %s", resp.status_code)
            return None

        try:
            body = resp.json()
        except ValueError as exc:
            LOG.warning("[mirror] bad JSON: %s", exc)
            return None

        data = body.get("data") if isinstance(body, dict) else None
        if data is None:
            LOG.info("[mirror] no mirrored flight data")
            return None
        if not isinstance(data, dict) or not isinstance(data.get("states"), list):
            LOG.warning("[mirror] ignoring malformed mirrored data")
            return None

        ts = _timestamp_seconds(body.get("timestamp"))
        age = self._clock() - ts if ts is not None else None
        LOG.info("[mirror] pulled %d aircraft", len(data["states"]))
        return CachedSnapshot(Snapshot(time=data.get("time"), states=data["states"]), age)


__all__ = ["MIRROR_URL", "RemoteMirror"]
