"""
kv_store.py
~~~~~~~~~~~
Tiny key-value persistence used by the snapshot store, the failure tracker
and the mirror endpoint.

Every store keeps its whole content as **one JSON document**, so a
``set_many`` call either lands completely or not at all:

* :class:`JsonFileStore` writes a temporary sibling file and ``os.replace``s
  it over the real one (the file is never half-written);
* :class:`MemoryStore` holds the document as a string, which keeps tests
  independent of the filesystem and lets them compare state byte-for-byte.

Both accept an optional ``max_bytes`` quota and raise
:class:`~radar.errors.StoreFullError` when a write would exceed it.
An unreadable file makes ``get`` return its default, but ``set_many`` and
``delete`` raise :class:`~radar.errors.PersistenceError` instead of
rewriting the document from scratch.
"""

from __future__ import annotations

import abc
import contextlib
import errno
import json
import logging
import os
from pathlib import Path
from typing import Any, Mapping, Protocol

from .errors import PersistenceError, StoreFullError

LOG = logging.getLogger("kv_store")


def _determine_persist_dir() -> Path:
    base = Path(os.getenv("PERSIST_DIR", "/data")).expanduser()
    if not base.is_absolute():
        base = (Path(__file__).resolve().parent.parent / base).resolve()
    try:
        base.mkdir(parents=True, exist_ok=True)
        return base
    except (PermissionError, OSError):
        fallback = (Path(__file__).resolve().parent.parent / "local_data").resolve()
        fallback.mkdir(parents=True, exist_ok=True)
        LOG.warning("Using %s instead of %s", fallback, base)
        return fallback


PERSIST_DIR = _determine_persist_dir()
#: Optional quota for the local cache file (bytes); unset means unlimited
PERSIST_MAX_BYTES = int(os.getenv("PERSIST_MAX_BYTES", "0")) or None


class KeyValueStore(Protocol):
    """What the cache needs from a persistence medium."""

    def get(self, key: str, default: Any = None) -> Any: ...

    def set_many(self, items: Mapping[str, Any]) -> None: ...

    def delete(self, *keys: str) -> None: ...


class _JsonDocumentStore(abc.ABC):
    """Shared read/modify/write logic; subclasses move the raw text."""

    def __init__(self, max_bytes: int | None = None) -> None:
        self.max_bytes = max_bytes

    # ── raw text I/O (subclass hooks) ───────────────────────────────────
    @abc.abstractmethod
    def _read_text(self) -> str | None:
        """Raw document, ``None`` if never written; ``PersistenceError`` if unreadable."""

    @abc.abstractmethod
    def _write_text(self, text: str) -> None:
        """Replace the raw document."""

    # ── document helpers ────────────────────────────────────────────────
    def _load(self) -> dict[str, Any]:
        text = self._read_text()
        if not text:
            return {}
        try:
            data = json.loads(text)
        except ValueError as exc:
            LOG.warning("[kv] corrupted document ignored: %s", exc)
            return {}
        if not isinstance(data, dict):
            LOG.warning("[kv] unexpected document type %s ignored", type(data).__name__)
            return {}
        return data

    def _dump(self, data: dict[str, Any]) -> None:
        try:
            text = json.dumps(data, separators=(",", ":"))
        except (TypeError, ValueError) as exc:
            raise PersistenceError(f"value not JSON-serialisable: {exc}") from exc

        size = len(text.encode("utf-8"))
        if self.max_bytes is not None and size > self.max_bytes:
            raise StoreFullError(
                f"quota exceeded ({size} bytes > {self.max_bytes} bytes)"
            )
        self._write_text(text)

    # ── public API ──────────────────────────────────────────────────────
    def get(self, key: str, default: Any = None) -> Any:
        try:
            data = self._load()
        except PersistenceError as exc:
            LOG.warning("[kv] read failed, treating as empty: %s", exc)
            return default
        return data.get(key, default)

    def set_many(self, items: Mapping[str, Any]) -> None:
        """Write every key in *items* in one go (all or nothing).

        Raises :class:`~radar.errors.PersistenceError` without writing when
        the current document cannot be read.
        """
        data = self._load()
        data.update(items)
        self._dump(data)

    def set(self, key: str, value: Any) -> None:
        self.set_many({key: value})

    def delete(self, *keys: str) -> None:
        data = self._load()
        if not any(k in data for k in keys):
            return
        for key in keys:
            data.pop(key, None)
        self._dump(data)


class MemoryStore(_JsonDocumentStore):
    """In-process store; contents vanish with the object."""

    def __init__(self, max_bytes: int | None = None) -> None:
        super().__init__(max_bytes)
        self._text: str | None = None

    def _read_text(self) -> str | None:
        return self._text

    def _write_text(self, text: str) -> None:
        self._text = text

    def dump(self) -> str | None:
        """Return the raw stored document (``None`` if never written)."""
        return self._text


class JsonFileStore(_JsonDocumentStore):
    """Store backed by a single JSON file, replaced atomically on write."""

    def __init__(self, path: Path, max_bytes: int | None = None) -> None:
        super().__init__(max_bytes)
        self.path = Path(path)

    def _read_text(self) -> str | None:
        if not self.path.exists():
            return None
        try:
            return self.path.read_text(encoding="utf-8")
        except OSError as exc:
            # Writers must not rebuild the document from nothing
            raise PersistenceError(f"cannot read {self.path}: {exc}") from exc

    def _write_text(self, text: str) -> None:
        tmp = self.path.with_name(f".{self.path.name}.{os.getpid()}.tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(text, encoding="utf-8")
            os.replace(tmp, self.path)
        except OSError as exc:
            with contextlib.suppress(OSError):
                tmp.unlink(missing_ok=True)
            if exc.errno in (errno.ENOSPC, errno.EDQUOT):
                raise StoreFullError(str(exc)) from exc
            raise PersistenceError(str(exc)) from exc


__all__ = [
    "PERSIST_DIR",
    "PERSIST_MAX_BYTES",
    "JsonFileStore",
    "KeyValueStore",
    "MemoryStore",
]
