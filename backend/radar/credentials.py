"""
credentials.py
~~~~~~~~~~~~~~
Optional OpenSky credentials from the environment.

Anonymous access is a valid state: without credentials the live fetch is
sent without an ``Authorization`` header (and gets the smaller anonymous
quota).

Configuration:
    OPENSKY_USERNAME / OPENSKY_PASSWORD: HTTP basic auth (preferred)
    OPENSKY_TOKEN: bearer token, used when no username/password pair is set
"""

from __future__ import annotations

import base64
import logging
import os
from typing import TypedDict

LOG = logging.getLogger("credentials")


class OpenSkyCredentials(TypedDict, total=False):
    username: str
    password: str
    token: str


def load_credentials() -> OpenSkyCredentials:
    """Read credentials from the environment (empty dict ⇒ anonymous)."""
    username = os.getenv("OPENSKY_USERNAME", "").strip()
    password = os.getenv("OPENSKY_PASSWORD", "").strip()
    if username and password:
        return {"username": username, "password": password}

    token = os.getenv("OPENSKY_TOKEN", "").strip()
    if token:
        return {"token": token}

    return {}


def get_auth_header(credentials: OpenSkyCredentials | None = None) -> str | None:
    """
    Build the ``Authorization`` header value for *credentials*.

    When *credentials* is omitted they are read from the environment.
    Returns ``None`` for anonymous access.
    """
    creds = load_credentials() if credentials is None else credentials

    if creds.get("username") and creds.get("password"):
        raw = f"{creds['username']}:{creds['password']}".encode()
        return "Basic " + base64.b64encode(raw).decode("ascii")
    if creds.get("token"):
        return f"Bearer {creds['token']}"
    return None


def log_credential_status() -> None:
    """One startup line saying how we will authenticate (never the secret)."""
    creds = load_credentials()
    if "username" in creds:
        LOG.info("[auth] OpenSky basic auth as %s", creds["username"])
    elif "token" in creds:
        LOG.info("[auth] OpenSky bearer token configured")
    else:
        LOG.info("[auth] No OpenSky credentials – using anonymous access")


__all__ = [
    "OpenSkyCredentials",
    "get_auth_header",
    "load_credentials",
    "log_credential_status",
]
