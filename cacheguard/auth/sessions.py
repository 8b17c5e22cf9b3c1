"""Cookie session lifecycle: issuance, validation, rotation and scoped grants."""

from __future__ import annotations

import logging
import sqlite3
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Mapping

from starlette.responses import Response

from cacheguard.api.errors import ApiError, ApiErrorCode
from cacheguard.auth.credentials import CredentialStore
from cacheguard.auth.guest_policy import GuestPolicy
from cacheguard.auth.models import (
    FEATURE_EPIC_PREFILL,
    FEATURE_STEAM_PREFILL,
    SESSION_KIND_ADMIN,
    SESSION_KIND_GUEST,
    RequestMeta,
    UserSession,
)
from cacheguard.core.migrations import apply_migrations
from cacheguard.core.migrations.runner import connect
from cacheguard.core.security import generate_session_token, hash_token

LOGGER = logging.getLogger(__name__)

SESSION_COOKIE_NAME = "cacheguard_session"
ACCESS_TOKEN_QUERY_PARAM = "access_token"
ROTATION_GRACE_SECONDS = 30
LAST_SEEN_THROTTLE_SECONDS = 60
CLEANUP_RETENTION_SECONDS = 7 * 24 * 60 * 60

_FEATURE_COLUMNS = {
    FEATURE_STEAM_PREFILL: "steam_prefill_expires_at",
    FEATURE_EPIC_PREFILL: "epic_prefill_expires_at",
}


def token_from_request(cookies: Mapping[str, str], query_params: Mapping[str, str]) -> str:
    """Return the raw session token from the cookie or the query-string fallback."""
    token = (cookies.get(SESSION_COOKIE_NAME) or "").strip()
    if token:
        return token
    return (query_params.get(ACCESS_TOKEN_QUERY_PARAM) or "").strip()


def set_session_cookie(response: Response, raw_token: str, expires_at: int, *, secure: bool) -> None:
    """Attach the session cookie to ``response``."""
    response.set_cookie(
        key=SESSION_COOKIE_NAME,
        value=raw_token,
        expires=datetime.fromtimestamp(expires_at, tz=timezone.utc),
        path="/",
        secure=secure,
        httponly=True,
        samesite="lax",
    )


def clear_session_cookie(response: Response, *, secure: bool) -> None:
    """Expire the session cookie on ``response``."""
    response.delete_cookie(
        key=SESSION_COOKIE_NAME,
        path="/",
        secure=secure,
        httponly=True,
        samesite="lax",
    )


class SessionManager:
    """SQLite-backed admin/guest sessions storing only token hashes."""

    def __init__(
        self,
        *,
        database_path: Path,
        credentials: CredentialStore,
        guest_policy: GuestPolicy,
        admin_session_hours: int = 720,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize session storage and ensure the schema is migrated."""
        apply_migrations(database_path)
        self._connection = connect(database_path)
        self._lock = Lock()
        self._credentials = credentials
        self._guest_policy = guest_policy
        self._admin_session_seconds = max(1, int(admin_session_hours)) * 3600
        self._clock = clock

    def _now(self) -> int:
        return int(self._clock())

    def create_admin_session(
        self, credential: str, meta: RequestMeta, *, device_id: str | None = None
    ) -> tuple[str, UserSession] | None:
        """Mint an admin session, or ``None`` when the credential is invalid."""
        if not self._credentials.validate(credential):
            return None
        session = self._insert_session(
            kind=SESSION_KIND_ADMIN,
            meta=meta,
            ttl_seconds=self._admin_session_seconds,
            device_id=device_id,
            fingerprint=self._credentials.fingerprint(),
        )
        LOGGER.info(
            "admin_session_created",
            extra={"session_id": session[1].id, "client_ip": meta.ip_address},
        )
        return session

    def create_guest_session(
        self, meta: RequestMeta, *, device_id: str | None = None
    ) -> tuple[str, UserSession] | None:
        """Mint a guest session, or ``None`` while guest access is locked."""
        if not self._guest_policy.guest_access_enabled:
            return None
        session = self._insert_session(
            kind=SESSION_KIND_GUEST,
            meta=meta,
            ttl_seconds=self._guest_policy.duration_hours * 3600,
            device_id=device_id,
            fingerprint=None,
        )
        LOGGER.info(
            "guest_session_created",
            extra={"session_id": session[1].id, "client_ip": meta.ip_address},
        )
        return session

    def validate(self, raw_token: str | None) -> UserSession | None:
        """Resolve a raw token to a live session.

        The previous token hash is accepted only inside its grace window.
        Admin sessions also require the credential they were minted under to
        still be current.
        """
        if not raw_token:
            return None
        now = self._now()
        session = self.find_by_token(raw_token, now=now)
        if session is None or session.is_revoked or session.expires_at <= now:
            return None
        if (
            session.kind == SESSION_KIND_ADMIN
            and session.credential_fingerprint != self._credentials.fingerprint()
        ):
            return None
        return session

    def find_by_token(self, raw_token: str, *, now: int | None = None) -> UserSession | None:
        """Look up a session by current or in-grace previous token, ignoring validity."""
        if not raw_token:
            return None
        at = self._now() if now is None else now
        token_hash = hash_token(raw_token)
        with self._lock:
            row = self._connection.execute(
                """
                SELECT * FROM user_sessions
                WHERE token_hash = ?
                   OR (previous_token_hash = ? AND previous_token_valid_until > ?)
                LIMIT 1
                """,
                (token_hash, token_hash, at),
            ).fetchone()
        return self._to_session(row)

    def get(self, session_id: str) -> UserSession | None:
        """Return a session by id regardless of validity."""
        with self._lock:
            row = self._connection.execute(
                "SELECT * FROM user_sessions WHERE id = ?", (session_id,)
            ).fetchone()
        return self._to_session(row)

    def rotation_due(self, session: UserSession, interval_seconds: int) -> bool:
        """Return whether ``session`` has gone ``interval_seconds`` without rotation."""
        last = session.last_rotated_at if session.last_rotated_at is not None else session.created_at
        return self._now() - last >= max(ROTATION_GRACE_SECONDS, int(interval_seconds))

    def rotate(self, session: UserSession, meta: RequestMeta) -> str | None:
        """Issue a new token and keep the old one valid for a short grace window.

        Returns ``None`` without changes when the session rotated within the
        last grace window or no longer exists.
        """
        now = self._now()
        raw_token, token_hash = generate_session_token()
        with self._lock:
            row = self._connection.execute(
                "SELECT token_hash, last_rotated_at, is_revoked FROM user_sessions WHERE id = ?",
                (session.id,),
            ).fetchone()
            if row is None or row["is_revoked"]:
                return None
            last_rotated_at = row["last_rotated_at"]
            if last_rotated_at is not None and now - int(last_rotated_at) < ROTATION_GRACE_SECONDS:
                return None
            self._connection.execute(
                """
                UPDATE user_sessions
                SET previous_token_hash = token_hash,
                    previous_token_valid_until = ?,
                    token_hash = ?,
                    last_rotated_at = ?,
                    ip_address = ?,
                    user_agent = ?
                WHERE id = ?
                """,
                (
                    now + ROTATION_GRACE_SECONDS,
                    token_hash,
                    now,
                    meta.ip_address,
                    meta.user_agent,
                    session.id,
                ),
            )
            self._connection.commit()
        LOGGER.info("session_rotated", extra={"session_id": session.id})
        return raw_token

    def grant_scoped_feature(
        self, session_id: str, feature: str, duration_hours: int
    ) -> UserSession | None:
        """Grant ``feature`` for ``duration_hours`` from now."""
        column = self._feature_column(feature)
        if int(duration_hours) < 1:
            raise ApiError(
                status_code=400,
                error_code=ApiErrorCode.VALIDATION_ERROR,
                message="duration_hours must be at least 1",
            )
        expires_at = self._now() + int(duration_hours) * 3600
        updated = self._update_column(session_id, column, expires_at)
        if updated is not None:
            LOGGER.info(
                "session_feature_granted",
                extra={"session_id": session_id, "reason": feature},
            )
        return updated

    def revoke_scoped_feature(self, session_id: str, feature: str) -> UserSession | None:
        """Clear a scoped feature grant."""
        column = self._feature_column(feature)
        updated = self._update_column(session_id, column, None)
        if updated is not None:
            LOGGER.info(
                "session_feature_revoked",
                extra={"session_id": session_id, "reason": feature},
            )
        return updated

    def update_last_seen(self, session: UserSession) -> bool:
        """Refresh ``last_seen_at`` at most once per throttle window."""
        now = self._now()
        if now - session.last_seen_at < LAST_SEEN_THROTTLE_SECONDS:
            return False
        with self._lock:
            self._connection.execute(
                "UPDATE user_sessions SET last_seen_at = ? WHERE id = ? AND last_seen_at <= ?",
                (now, session.id, now - LAST_SEEN_THROTTLE_SECONDS),
            )
            self._connection.commit()
        return True

    def revoke(self, session_id: str) -> bool:
        """Revoke a single session."""
        now = self._now()
        with self._lock:
            cursor = self._connection.execute(
                "UPDATE user_sessions SET is_revoked = 1, revoked_at = ? WHERE id = ? AND is_revoked = 0",
                (now, session_id),
            )
            self._connection.commit()
        if cursor.rowcount:
            LOGGER.info("session_revoked", extra={"session_id": session_id})
        return cursor.rowcount > 0

    def revoke_all_guest_sessions(self) -> int:
        """Revoke every guest cookie session and return how many changed."""
        return self._revoke_where("kind = ?", (SESSION_KIND_GUEST,))

    def revoke_all(self) -> int:
        """Revoke every cookie session and return how many changed."""
        return self._revoke_where("1 = 1", ())

    def list_active(self) -> list[UserSession]:
        """Return non-revoked, non-expired sessions, most recently seen first."""
        now = self._now()
        with self._lock:
            rows = self._connection.execute(
                """
                SELECT * FROM user_sessions
                WHERE is_revoked = 0 AND expires_at > ?
                ORDER BY last_seen_at DESC
                """,
                (now,),
            ).fetchall()
        return [session for session in (self._to_session(row) for row in rows) if session]

    def cleanup_expired(self) -> int:
        """Delete sessions expired or revoked longer than the retention window ago."""
        cutoff = self._now() - CLEANUP_RETENTION_SECONDS
        with self._lock:
            cursor = self._connection.execute(
                """
                DELETE FROM user_sessions
                WHERE expires_at < ?
                   OR (is_revoked = 1 AND revoked_at IS NOT NULL AND revoked_at < ?)
                """,
                (cutoff, cutoff),
            )
            self._connection.commit()
        count = int(cursor.rowcount or 0)
        if count:
            LOGGER.info("sessions_cleaned_up", extra={"count": count})
        return count

    def close(self) -> None:
        """Close SQLite resources."""
        with self._lock:
            self._connection.close()

    def _insert_session(
        self,
        *,
        kind: str,
        meta: RequestMeta,
        ttl_seconds: int,
        device_id: str | None,
        fingerprint: str | None,
    ) -> tuple[str, UserSession]:
        now = self._now()
        raw_token, token_hash = generate_session_token()
        session = UserSession(
            id=uuid.uuid4().hex,
            token_hash=token_hash,
            kind=kind,  # type: ignore[arg-type]
            device_id=device_id,
            credential_fingerprint=fingerprint,
            ip_address=meta.ip_address or "unknown",
            user_agent=meta.user_agent or "",
            created_at=now,
            expires_at=now + ttl_seconds,
            last_seen_at=now,
        )
        with self._lock:
            self._connection.execute(
                """
                INSERT INTO user_sessions(
                  id, token_hash, kind, device_id, credential_fingerprint,
                  ip_address, user_agent, created_at, expires_at, last_seen_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    session.id,
                    session.token_hash,
                    session.kind,
                    session.device_id,
                    session.credential_fingerprint,
                    session.ip_address,
                    session.user_agent,
                    session.created_at,
                    session.expires_at,
                    session.last_seen_at,
                ),
            )
            self._connection.commit()
        return raw_token, session

    def _update_column(self, session_id: str, column: str, value: Any) -> UserSession | None:
        """Set one ``_FEATURE_COLUMNS`` column and return the refreshed row."""
        with self._lock:
            cursor = self._connection.execute(
                f"UPDATE user_sessions SET {column} = ? WHERE id = ?",
                (value, session_id),
            )
            self._connection.commit()
        if not cursor.rowcount:
            return None
        return self.get(session_id)

    def _revoke_where(self, clause: str, params: tuple[Any, ...]) -> int:
        now = self._now()
        with self._lock:
            cursor = self._connection.execute(
                f"UPDATE user_sessions SET is_revoked = 1, revoked_at = ? WHERE is_revoked = 0 AND {clause}",
                (now, *params),
            )
            self._connection.commit()
        count = int(cursor.rowcount or 0)
        LOGGER.warning("sessions_revoked", extra={"count": count})
        return count

    @staticmethod
    def _feature_column(feature: str) -> str:
        column = _FEATURE_COLUMNS.get(feature)
        if column is None:
            raise ApiError(
                status_code=400,
                error_code=ApiErrorCode.VALIDATION_ERROR,
                message=f"Unknown scoped feature: {feature}",
            )
        return column

    @staticmethod
    def _to_session(row: sqlite3.Row | None) -> UserSession | None:
        if row is None:
            return None
        return UserSession.model_validate(dict(row))
