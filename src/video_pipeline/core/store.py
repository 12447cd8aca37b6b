"""TTL-bounded key -> JSON document store backed by the filesystem."""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
import threading
import time
import zlib
from pathlib import Path
from typing import Any, Callable, Iterator

logger = logging.getLogger(__name__)

_KEY_PART = re.compile(r"^[A-Za-z0-9_.\-]+$")


class RecordStore:
    """
    Persisted records keyed like ``job:{id}`` or ``streaming:session:{id}``.

    Each colon-separated key part becomes a path component under ``root``,
    so ``streaming:session:abc`` lives at ``root/streaming/session/abc.json``.
    Every document is wrapped in an envelope carrying its absolute expiry.

    Mutations of one key are serialized by a lock picked from a fixed pool
    by hashing the key, so the lock count stays constant however many
    records come and go.
    """

    LOCK_STRIPES = 64

    def __init__(self, root: Path, clock: Callable[[], float] = time.time):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self._clock = clock
        self._locks = [threading.RLock() for _ in range(self.LOCK_STRIPES)]

    def _lock_for(self, key: str) -> threading.RLock:
        return self._locks[zlib.crc32(key.encode()) % len(self._locks)]

    def _path_for(self, key: str) -> Path:
        parts = key.split(":")
        for part in parts:
            if not _KEY_PART.match(part) or part in (".", ".."):
                raise ValueError(f"Invalid record key: {key!r}")
        return self.root.joinpath(*parts[:-1]) / f"{parts[-1]}.json"

    def _read_envelope(self, path: Path) -> dict[str, Any] | None:
        try:
            with open(path) as f:
                return json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Unreadable record {path}: {e}")
            return None

    def _write_envelope(self, path: Path, envelope: dict[str, Any]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=".tmp_", suffix=".json")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(envelope, f, default=str)
            os.replace(tmp, path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    def _is_expired(self, envelope: dict[str, Any]) -> bool:
        expires_at = envelope.get("expires_at")
        return expires_at is not None and expires_at <= self._clock()

    def put(self, key: str, value: dict[str, Any], ttl: float | None) -> None:
        """Store a document, replacing any previous one."""
        path = self._path_for(key)
        envelope = {
            "key": key,
            "expires_at": self._clock() + ttl if ttl is not None else None,
            "value": value,
        }
        with self._lock_for(key):
            self._write_envelope(path, envelope)

    def get(self, key: str) -> dict[str, Any] | None:
        """Load a document; expired documents read as missing and are removed."""
        path = self._path_for(key)
        with self._lock_for(key):
            envelope = self._read_envelope(path)
            if envelope is None:
                return None
            if self._is_expired(envelope):
                path.unlink(missing_ok=True)
                return None
            return envelope["value"]

    def delete(self, key: str) -> bool:
        path = self._path_for(key)
        with self._lock_for(key):
            if path.exists():
                path.unlink()
                return True
            return False

    def update(
        self,
        key: str,
        fn: Callable[[dict[str, Any]], dict[str, Any] | None],
        ttl: float | None,
    ) -> dict[str, Any] | None:
        """
        Atomically read-modify-write one document.

        ``fn`` receives the current value and returns the new value, or
        ``None`` to leave the record untouched. Missing or expired records
        are not passed to ``fn``.

        Returns:
            The stored value after the update, or None if nothing was written
        """
        path = self._path_for(key)
        with self._lock_for(key):
            envelope = self._read_envelope(path)
            if envelope is None or self._is_expired(envelope):
                return None
            new_value = fn(envelope["value"])
            if new_value is None:
                return None
            envelope["value"] = new_value
            if ttl is not None:
                envelope["expires_at"] = self._clock() + ttl
            self._write_envelope(path, envelope)
            return new_value

    def scan(self, prefix: str) -> Iterator[tuple[str, dict[str, Any]]]:
        """Yield (key, value) for every live record under a key prefix like ``job``."""
        base = self.root.joinpath(*prefix.split(":"))
        if not base.exists():
            return
        for path in sorted(base.rglob("*.json")):
            if path.name.startswith(".tmp_"):
                continue
            envelope = self._read_envelope(path)
            if envelope is None or self._is_expired(envelope):
                continue
            yield envelope["key"], envelope["value"]

    def purge_expired(self) -> int:
        """Delete every expired document. Returns the number removed."""
        removed = 0
        for path in self.root.rglob("*.json"):
            if path.name.startswith(".tmp_"):
                continue
            envelope = self._read_envelope(path)
            if envelope is None or not self._is_expired(envelope):
                continue
            with self._lock_for(envelope.get("key", str(path))):
                # A write may have landed since the unlocked read
                envelope = self._read_envelope(path)
                if envelope is None or not self._is_expired(envelope):
                    continue
                path.unlink(missing_ok=True)
                removed += 1
        return removed
