"""Login brute-force protection backed by SQLite runtime state."""

from __future__ import annotations

import logging
import time
from pathlib import Path
from threading import Lock
from typing import Callable

from cacheguard.api.errors import ApiError, ApiErrorCode
from cacheguard.core.migrations import apply_migrations
from cacheguard.core.migrations.runner import connect

LOGGER = logging.getLogger(__name__)

SCOPE_LOGIN = "login"
SCOPE_DEVICE_REGISTER = "device_register"


class LoginRateLimiter:
    """Rate limiter for credential attempts keyed by ``(scope, client_ip)``."""

    def __init__(
        self,
        *,
        database_path: Path,
        max_attempts: int,
        window_seconds: int,
        lock_seconds: int,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize limiter storage and policy parameters."""
        apply_migrations(database_path)
        self._connection = connect(database_path)
        self._lock = Lock()
        self._max_attempts = max(1, int(max_attempts))
        self._window_seconds = max(1, int(window_seconds))
        self._lock_seconds = max(1, int(lock_seconds))
        self._clock = clock

    def assert_allowed(self, *, scope: str, client_ip: str) -> None:
        """Raise 429 while attempts from ``client_ip`` are locked for ``scope``."""
        now = int(self._clock())
        key_ip = client_ip.strip() or "unknown"
        with self._lock:
            row = self._connection.execute(
                """
                SELECT failed_attempts, first_failed_at, locked_until
                FROM auth_login_attempts
                WHERE scope = ? AND client_ip = ?
                """,
                (scope, key_ip),
            ).fetchone()
            if row is None:
                return

            locked_until = int(row["locked_until"] or 0)
            if locked_until > now:
                retry_after = locked_until - now
                LOGGER.warning(
                    "login_rate_limited",
                    extra={"client_ip": key_ip, "reason": scope},
                )
                raise ApiError(
                    status_code=429,
                    error_code=ApiErrorCode.AUTH_RATE_LIMITED,
                    message=f"Too many attempts. Retry after {retry_after} seconds.",
                )

            first_failed_at = int(row["first_failed_at"] or 0)
            if first_failed_at and (now - first_failed_at) > self._window_seconds:
                self._connection.execute(
                    "DELETE FROM auth_login_attempts WHERE scope = ? AND client_ip = ?",
                    (scope, key_ip),
                )
                self._connection.commit()

    def record_success(self, *, scope: str, client_ip: str) -> None:
        """Reset limiter state after a successful attempt."""
        key_ip = client_ip.strip() or "unknown"
        with self._lock:
            self._connection.execute(
                "DELETE FROM auth_login_attempts WHERE scope = ? AND client_ip = ?",
                (scope, key_ip),
            )
            self._connection.commit()

    def record_failure(self, *, scope: str, client_ip: str) -> None:
        """Count a failure and lock the key once the threshold is reached."""
        now = int(self._clock())
        key_ip = client_ip.strip() or "unknown"
        with self._lock:
            row = self._connection.execute(
                """
                SELECT failed_attempts, first_failed_at
                FROM auth_login_attempts
                WHERE scope = ? AND client_ip = ?
                """,
                (scope, key_ip),
            ).fetchone()

            previous_first = int(row["first_failed_at"] or 0) if row is not None else 0
            if row is None or (previous_first and now - previous_first > self._window_seconds):
                failed_attempts = 1
                first_failed_at = now
            else:
                failed_attempts = int(row["failed_attempts"] or 0) + 1
                first_failed_at = previous_first or now

            locked_until = now + self._lock_seconds if failed_attempts >= self._max_attempts else 0

            self._connection.execute(
                """
                INSERT INTO auth_login_attempts(
                  scope, client_ip, failed_attempts, first_failed_at, last_failed_at, locked_until
                ) VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(scope, client_ip) DO UPDATE SET
                  failed_attempts = excluded.failed_attempts,
                  first_failed_at = excluded.first_failed_at,
                  last_failed_at = excluded.last_failed_at,
                  locked_until = excluded.locked_until
                """,
                (scope, key_ip, failed_attempts, first_failed_at, now, locked_until),
            )
            self._connection.commit()

    def close(self) -> None:
        """Close SQLite resources."""
        with self._lock:
            self._connection.close()
