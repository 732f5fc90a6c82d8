"""opensky_service.py
~~~~~~~~~~~~~~~~~~~~
Fetch every airborne aircraft inside the Brazil bounding box from the
**OpenSky Network** ``states/all`` endpoint.

Unlike the cache layers, this module *raises*: the refresh loop needs to
know why a fetch failed (quota, credentials, network, garbage payload) to
pick a fallback and tell the UI.

* 429        → :class:`~radar.errors.RateLimitedError`
* 401 / 403  → :class:`~radar.errors.UnauthorizedError`
* other non-200, timeouts, DNS/connect errors → :class:`~radar.errors.TransportError`
* bad JSON or no ``states`` list → :class:`~radar.errors.MalformedResponseError`

OpenSky answers ``"states": null`` when nothing matches; that is reported
as malformed, not as an empty success.
"""

from __future__ import annotations

import logging
import numbers
import os
from typing import Any, Final, Mapping

import httpx

from .api_logging import logged_request_async
from .constants import (
    BARO_ALTITUDE,
    BRAZIL_BOUNDS,
    LATITUDE,
    LONGITUDE,
    ON_GROUND,
    STATE_VECTOR_LEN,
    USER_AGENT,
)
from .errors import (
    MalformedResponseError,
    RateLimitedError,
    TransportError,
    UnauthorizedError,
)
from .snapshot_store import Snapshot

LOG = logging.getLogger("opensky_service")

# ── Configuration ─────────────────────────────────────────────────────────
OPENSKY_API_URL = os.getenv("OPENSKY_API_URL", "https://opensky-network.org/api").rstrip("/")
OPENSKY_TIMEOUT_SEC = float(os.getenv("OPENSKY_TIMEOUT_SEC", "10"))

#: Headers OpenSky (and generic proxies) use to announce the quota reset
RETRY_AFTER_HEADERS: Final = ("X-Rate-Limit-Retry-After-Seconds", "Retry-After")


def is_valid_state(state: Any) -> bool:
    """
    Keep only state vectors the map can draw.

    Drops short vectors, missing or (0, 0) positions, aircraft on the
    ground and missing/negative barometric altitude.
    """
    if not isinstance(state, (list, tuple)) or len(state) < STATE_VECTOR_LEN:
        return False

    lon = state[LONGITUDE]
    lat = state[LATITUDE]
    if lon is None or lat is None or (lon == 0 and lat == 0):
        return False

    if state[ON_GROUND] is True:
        return False

    altitude = state[BARO_ALTITUDE]
    if not isinstance(altitude, numbers.Real) or altitude < 0:
        return False

    return True


def _retry_after(resp: httpx.Response) -> float | None:
    for name in RETRY_AFTER_HEADERS:
        raw = resp.headers.get(name)
        if raw is None:
            continue
        try:
            return float(raw)
        except ValueError:
            LOG.debug("[opensky] unparsable %s header %r", name, raw)
    return None


async def fetch_flights(
    auth_header: str | None = None,
    *,
    bounds: Mapping[str, float] = BRAZIL_BOUNDS,
) -> Snapshot:
    """Return the current OpenSky snapshot for *bounds* (filtered states)."""
    url = f"{OPENSKY_API_URL}/states/all"
    headers = {"Accept": "application/json", "User-Agent": USER_AGENT}
    if auth_header:
        headers["Authorization"] = auth_header

    try:
        async with httpx.AsyncClient(
            timeout=OPENSKY_TIMEOUT_SEC, headers=headers
        ) as client:
            resp = await logged_request_async(
                client, "get", url, params=dict(bounds), raise_for_status=False
            )
    except httpx.TimeoutException as exc:
        raise TransportError(f"OpenSky request timed out: {exc}") from exc
    except httpx.RequestError as exc:
        raise TransportError(f"OpenSky unreachable: {exc}") from exc

    code = resp.status_code
    if code == 429:
        raise RateLimitedError(retry_after=_retry_after(resp))
    if code in (401, 403):
        raise UnauthorizedError(
            f"Unauthorized ({code}). Check your credentials.", status_code=code
        )
    if code != 200:
        raise TransportError(f"HTTP error! status: {code}", status_code=code)

    try:
        data = resp.json()
    except ValueError as exc:
        raise MalformedResponseError(f"OpenSky returned invalid JSON: {exc}") from exc

    states = data.get("states") if isinstance(data, dict) else None
    if not isinstance(states, list):
        raise MalformedResponseError("Invalid response format from OpenSky API")

    valid = [s for s in states if is_valid_state(s)]
    LOG.info("[opensky] %d of %d states usable", len(valid), len(states))
    return Snapshot(time=data.get("time"), states=valid)


__all__ = ["fetch_flights", "is_valid_state"]
