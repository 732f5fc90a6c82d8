"""
api_logging.py
~~~~~~~~~~~~~~
Tiny wrapper that prints **one concise log line** per outbound HTTP request
(OpenSky, remote mirror) and optionally raises for server-side errors.

Usage example
-------------
>>> from .api_logging import logged_request_async
>>> async with httpx.AsyncClient() as cli:
...     resp = await logged_request_async(cli, "get", "https://example.org/json",
...                                       raise_for_status=False)
"""

from __future__ import annotations

import logging
import time
from typing import Any

LOG = logging.getLogger("extapi")

#: Statuses that are expected to happen and that the caller handles itself
_QUIET_CLIENT_ERRORS = {401, 403, 404, 429}


async def logged_request_async(
    client: Any,
    method: str,
    url: str,
    *args: Any,
    raise_for_status: bool = True,
    **kwargs: Any,
):
    """
    Issue one HTTP request on an ``httpx.AsyncClient`` **and** log it.

    Parameters
    ----------
    client:
        ``httpx.AsyncClient`` instance.
    method:
        HTTP verb – e.g. ``"get"``, ``"post"`` … **lower-case**.
    url:
        Absolute URL.
    raise_for_status:
        *True* ⇒ propagate 5xx via :pymeth:`httpx.Response.raise_for_status`.
        *False* ⇒ never raise; the caller decides.

    Returns
    -------
    httpx.Response
        Raw response so the caller can inspect status / JSON / headers.

    Notes
    -----
    * **429**, **401/403** and **404** are logged at *WARNING* without a
      traceback; callers map them to their own errors.
    * Network errors are logged with latency and re-raised unchanged.
    """
    verb = method.upper()
    t0 = time.perf_counter()
    try:
        response = await getattr(client, method.lower())(url, *args, **kwargs)
    except Exception as exc:
        latency_ms = (time.perf_counter() - t0) * 1000.0
        LOG.warning("FAIL %s %s %.0f ms %r", verb, url, latency_ms, exc)
        raise

    latency_ms = (time.perf_counter() - t0) * 1000.0
    code = response.status_code

    if code in _QUIET_CLIENT_ERRORS or code >= 500:
        LOG.warning("%s %s → %s (%.0f ms)", verb, url, code, latency_ms)
    else:
        LOG.info("%s %s → %s (%.0f ms)", verb, url, code, latency_ms)

    if raise_for_status and code >= 500:
        response.raise_for_status()

    return response


__all__ = ["logged_request_async"]
