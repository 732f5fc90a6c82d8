"""event_service.py
~~~~~~~~~~~~~~~~~~
Discord webhook event emitter for production observability.

Sends structured events to a Discord channel via webhook. Events are
fire-and-forget (non-blocking, errors logged but don't break main flow).

Configuration:
    DISCORD_WEBHOOK_URL: Discord webhook endpoint (optional - events skipped if not set)

Event Types:
    - machine_started: service started/restarted
    - source_changed: the snapshot served to the map switched source
      (live → cache, cache → static …)
    - api_error: OpenSky fetch failed (deduplicated per API and error kind)
"""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
import os
from typing import Any

import httpx
from dateutil import tz

# ── Configuration ─────────────────────────────────────────────────────────
DISCORD_WEBHOOK_URL = os.getenv("DISCORD_WEBHOOK_URL", "")
UTC = tz.UTC
LOG = logging.getLogger("event_service")

# ── API Error Deduplication ───────────────────────────────────────────────
# Track last error time per (API, kind) to avoid spam (1 per hour)
_last_api_error: dict[str, dt.datetime] = {}
API_ERROR_COOLDOWN_SEC = 3600  # 1 hour

# Strong refs so scheduled webhook posts are not garbage-collected mid-flight
_pending: set[asyncio.Task] = set()

SOURCE_LABELS: dict[str, str] = {
    "live": "OpenSky (live)",
    "local_cache": "Local cache",
    "remote_mirror": "Remote mirror",
    "static": "Static snapshot",
    "empty": "No data",
}


# ── Event Emitters ────────────────────────────────────────────────────────


def _is_configured() -> bool:
    """Check if Discord webhook is configured."""
    return bool(DISCORD_WEBHOOK_URL.strip())


async def _post_webhook(embed: dict[str, Any]) -> None:
    """Post an embed to Discord webhook. Fire-and-forget with error logging."""
    if not _is_configured():
        return

    payload = {"embeds": [embed]}

    try:
        async with httpx.AsyncClient(timeout=10.0) as client:
            resp = await client.post(DISCORD_WEBHOOK_URL, json=payload)
            if resp.status_code not in (200, 204):
                LOG.warning(
                    "Discord webhook returned %d: %s",
                    resp.status_code,
                    resp.text[:200],
                )
    except Exception as exc:
        LOG.warning("Discord webhook failed: %s", exc)


def _fire_and_forget(embed: dict[str, Any]) -> None:
    """Schedule webhook post without blocking."""
    if not _is_configured():
        return

    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        # No running loop (CLI / tests) – post synchronously
        asyncio.run(_post_webhook(embed))
        return

    task = loop.create_task(_post_webhook(embed))
    _pending.add(task)
    task.add_done_callback(_pending.discard)


def emit_source_changed(
    from_source: str | None,
    to_source: str,
    aircraft: int,
    error: str | None = None,
) -> None:
    """Emit event when the snapshot source served to the map changes."""
    from_label = SOURCE_LABELS.get(from_source or "", from_source or "None")
    to_label = SOURCE_LABELS.get(to_source, to_source)

    fields = [
        {"name": "From", "value": from_label, "inline": True},
        {"name": "To", "value": to_label, "inline": True},
        {"name": "Aircraft", "value": str(aircraft), "inline": True},
    ]
    if error:
        fields.append({"name": "Reason", "value": error[:200], "inline": False})

    # Green when back on live data, orange for any fallback, red for nothing
    if to_source == "live":
        color = 0x2ECC71
    elif to_source == "empty":
        color = 0xE74C3C
    else:
        color = 0xF39C12

    embed = {
        "title": "Flight Data Source Changed",
        "color": color,
        "fields": fields,
        "timestamp": dt.datetime.now(UTC).isoformat(),
    }
    _fire_and_forget(embed)
    LOG.info(
        "[event] source_changed: %s -> %s (%d aircraft)",
        from_source,
        to_source,
        aircraft,
    )


def emit_api_error(api_name: str, error_message: str, kind: str = "transport") -> None:
    """Emit event when an external API call fails (deduplicated)."""
    now = dt.datetime.now(UTC)
    key = f"{api_name}:{kind}"

    # Check cooldown to avoid spam
    last_error = _last_api_error.get(key)
    if last_error:
        elapsed = (now - last_error).total_seconds()
        if elapsed < API_ERROR_COOLDOWN_SEC:
            LOG.debug(
                "[event] api_error suppressed for %s (cooldown: %ds remaining)",
                key,
                API_ERROR_COOLDOWN_SEC - elapsed,
            )
            return

    _last_api_error[key] = now

    embed = {
        "title": "API Error",
        "color": 0xE74C3C,  # Red
        "fields": [
            {"name": "API", "value": api_name, "inline": True},
            {"name": "Kind", "value": kind, "inline": True},
            {"name": "Error", "value": error_message[:500], "inline": False},
        ],
        "timestamp": now.isoformat(),
    }
    _fire_and_forget(embed)
    LOG.info("[event] api_error: %s (%s) - %s", api_name, kind, error_message[:100])


def emit_machine_started(version: str | None = None) -> None:
    """Emit event when the service starts or restarts."""
    fields = [
        {"name": "Event", "value": "Machine Started", "inline": True},
        {"name": "Time", "value": f"<t:{int(dt.datetime.now(UTC).timestamp())}:R>", "inline": True},
    ]

    if version:
        fields.append({"name": "Version", "value": version, "inline": True})

    embed = {
        "title": "🚀 Flight Radar Started",
        "color": 0x9B59B6,  # Purple
        "fields": fields,
        "timestamp": dt.datetime.now(UTC).isoformat(),
    }
    _fire_and_forget(embed)
    LOG.info("[event] machine_started: version=%s", version or "unknown")
