"""Long-lived admin credential storage and validation."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from threading import Lock

from cacheguard.core.security import (
    API_KEY_PREFIX,
    constant_time_equals,
    credential_fingerprint,
    generate_api_key,
)

LOGGER = logging.getLogger(__name__)


class CredentialStore:
    """File-backed credential with an in-memory cache guarded by one mutex."""

    def __init__(self, path: Path, *, label: str = "primary") -> None:
        """Initialize store for credential file at ``path``."""
        self._path = path
        self._label = label
        self._lock = Lock()
        self._cached: str | None = None
        self._cached_stamp: tuple[int, int] | None = None

    @property
    def label(self) -> str:
        """Name used in logs, ``primary`` or ``limited``."""
        return self._label

    def get_or_create(self) -> str:
        """Return current credential, generating and persisting it on first use.

        The cached value is dropped when the file on disk was replaced, so a
        key regenerated by another process takes effect on the next call.
        """
        with self._lock:
            stamp = self._file_stamp()
            if self._cached is not None and stamp == self._cached_stamp:
                return self._cached
            stored = self._read_file()
            if stored is None and self._cached is not None:
                self._cached_stamp = stamp
                return self._cached
            if stored is None:
                stored = generate_api_key()
                self._persist(stored)
                LOGGER.warning(
                    "api_key_generated",
                    extra={"auth_method": self._label, "path": str(self._path)},
                )
            elif self._cached is not None and stored != self._cached:
                LOGGER.warning("api_key_reloaded", extra={"auth_method": self._label})
            self._cached = stored
            self._cached_stamp = self._file_stamp()
            return stored

    def validate(self, candidate: str | None) -> bool:
        """Compare ``candidate`` to the current credential in constant time."""
        if not candidate:
            return False
        return constant_time_equals(self.get_or_create(), candidate.strip())

    def force_regenerate(self) -> tuple[str, str]:
        """Replace the credential with a new, different value and return ``(old, new)``."""
        with self._lock:
            old = self._cached if self._cached is not None else self._read_file()
            new = generate_api_key()
            while old is not None and new == old:
                new = generate_api_key()
            self._persist(new)
            self._cached = new
            self._cached_stamp = self._file_stamp()
        LOGGER.warning("api_key_regenerated", extra={"auth_method": self._label})
        return old or "", new

    def fingerprint(self) -> str:
        """Fingerprint of the current credential for binding derived records."""
        return credential_fingerprint(self.get_or_create())

    def _file_stamp(self) -> tuple[int, int] | None:
        """Inode and mtime of the credential file, ``None`` when it is missing."""
        try:
            stat = self._path.stat()
        except OSError:
            return None
        return stat.st_ino, stat.st_mtime_ns

    def _read_file(self) -> str | None:
        """Read persisted credential, ignoring unreadable or malformed files."""
        if not self._path.exists():
            return None
        try:
            value = self._path.read_text(encoding="utf-8").strip()
        except OSError:
            LOGGER.exception("api_key_read_failed", extra={"path": str(self._path)})
            return None
        if not value.startswith(API_KEY_PREFIX) or len(value) <= len(API_KEY_PREFIX):
            LOGGER.warning("api_key_file_malformed", extra={"path": str(self._path)})
            return None
        return value

    def _persist(self, value: str) -> None:
        """Write credential atomically; on failure keep using the in-memory value."""
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(value + "\n", encoding="utf-8")
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, self._path)
        except OSError:
            # A restart will mint a different credential.
            LOGGER.exception("api_key_persist_failed", extra={"path": str(self._path)})
