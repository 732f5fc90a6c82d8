"""
errors.py
~~~~~~~~~
Exception hierarchy shared by the live fetch, the persistence layer and the
refresh loop.

None of these are fatal: fetch errors drive the fallback chain and
persistence errors are recovered inside the snapshot store. The ``kind``
string is what reaches the UI and the logs, so rate limits, bad
credentials and malformed payloads stay distinguishable even though the
cache treats them all the same.
"""

from __future__ import annotations


class FetchError(Exception):
    """Base class for every live-fetch failure."""

    kind = "transport"

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class RateLimitedError(FetchError):
    """Upstream rejected the request because the quota is exhausted (429)."""

    kind = "rate_limited"

    def __init__(
        self,
        message: str = "Rate limit exceeded (429). Please wait before retrying.",
        *,
        retry_after: float | None = None,
    ) -> None:
        self.retry_after = retry_after
        super().__init__(message, status_code=429)


class UnauthorizedError(FetchError):
    """Credentials were rejected (401/403)."""

    kind = "unauthorized"


class TransportError(FetchError):
    """Upstream unreachable, timed out or answered with an unexpected status."""

    kind = "transport"


class MalformedResponseError(FetchError):
    """Upstream answered 200 but the payload is not a states list."""

    kind = "malformed"


class PersistenceError(Exception):
    """Local storage could not be written (I/O or serialisation failure)."""


class StoreFullError(PersistenceError):
    """The storage medium has no room left for the write."""


__all__ = [
    "FetchError",
    "MalformedResponseError",
    "PersistenceError",
    "RateLimitedError",
    "StoreFullError",
    "TransportError",
    "UnauthorizedError",
]
