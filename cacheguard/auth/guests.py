"""Guest session registry keyed by client device fingerprint."""

from __future__ import annotations

import json
import logging
import os
import time
from pathlib import Path
from threading import Lock
from typing import Callable

from pydantic import ValidationError

from cacheguard.api.errors import ApiError, ApiErrorCode
from cacheguard.auth.guest_policy import GuestPolicy
from cacheguard.auth.models import GuestSession
from cacheguard.auth.repository import device_file_name
from cacheguard.core.config import validate_duration_hours

LOGGER = logging.getLogger(__name__)

GUEST_CLEANUP_GRACE_SECONDS = 24 * 60 * 60
LAST_SEEN_THROTTLE_SECONDS = 60

REASON_REVOKED = "revoked"
REASON_EXPIRED = "expired"


class GuestSessionRegistry:
    """Track guest sessions with explicit revocation and optional prefill grants.

    Records live as one JSON file each under ``sessions_dir``; an in-memory
    cache fronts the files and is warmed at startup.
    """

    def __init__(
        self,
        sessions_dir: Path,
        policy: GuestPolicy,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._dir = sessions_dir
        self._dir.mkdir(parents=True, exist_ok=True)
        self._policy = policy
        self._clock = clock
        self._lock = Lock()
        self._cache: dict[str, GuestSession] = {}
        self._load_sessions()
        self.cleanup_expired()

    def _now(self) -> int:
        return int(self._clock())

    def create(
        self,
        session_id: str,
        *,
        device_name: str | None = None,
        operating_system: str | None = None,
        browser: str | None = None,
        ip_address: str | None = None,
    ) -> GuestSession:
        """Create or replace the guest record for ``session_id``."""
        now = self._now()
        session = GuestSession(
            session_id=session_id,
            device_name=device_name,
            ip_address=ip_address,
            operating_system=operating_system,
            browser=browser,
            created_at=now,
            expires_at=now + self._policy.duration_hours * 3600,
            last_seen_at=now,
        )
        with self._lock:
            self._persist(session, event="guest_session_save_failed")
            self._cache[session_id] = session
        LOGGER.info(
            "guest_session_registered",
            extra={"session_id": session_id, "client_ip": ip_address},
        )
        return session

    def validate_with_reason(self, session_id: str | None) -> tuple[bool, str | None]:
        """Return ``(valid, reason)``.

        ``reason`` is ``"revoked"`` or ``"expired"`` for known-but-invalid
        sessions and ``None`` both for valid ones and unknown ids.
        """
        if not session_id:
            return False, None
        now = self._now()
        with self._lock:
            session = self._cache.get(session_id)
            if session is None:
                return False, None
            if session.is_revoked:
                return False, REASON_REVOKED
            if session.is_expired(now):
                return False, REASON_EXPIRED
            if session.last_seen_at is None or now - session.last_seen_at >= LAST_SEEN_THROTTLE_SECONDS:
                updated = session.model_copy(update={"last_seen_at": now})
                try:
                    self._save(updated)
                except OSError:
                    LOGGER.warning("guest_last_seen_save_failed", extra={"session_id": session_id})
                else:
                    self._cache[session_id] = updated
        return True, None

    def validate(self, session_id: str | None) -> bool:
        """Return whether ``session_id`` names a live guest session."""
        valid, _ = self.validate_with_reason(session_id)
        return valid

    def get(self, session_id: str) -> GuestSession | None:
        """Return the cached record, including revoked and expired ones."""
        with self._lock:
            return self._cache.get(session_id)

    def list_all(self) -> list[GuestSession]:
        """Return every tracked guest session, newest first."""
        with self._lock:
            items = list(self._cache.values())
        return sorted(items, key=lambda item: item.created_at, reverse=True)

    def revoke(self, session_id: str, revoked_by: str | None = None) -> bool:
        """Mark a guest session revoked; its record stays until cleanup."""
        now = self._now()
        with self._lock:
            session = self._cache.get(session_id)
            if session is None:
                return False
            updated = session.model_copy(
                update={"is_revoked": True, "revoked_at": now, "revoked_by": revoked_by}
            )
            self._persist(updated, event="guest_session_revoke_failed")
            self._cache[session_id] = updated
        LOGGER.warning("guest_session_revoked", extra={"session_id": session_id})
        return True

    def revoke_all(self, revoked_by: str | None = None) -> int:
        """Revoke every active guest session and return how many changed."""
        now = self._now()
        count = 0
        with self._lock:
            for session_id, session in list(self._cache.items()):
                if session.is_revoked:
                    continue
                updated = session.model_copy(
                    update={"is_revoked": True, "revoked_at": now, "revoked_by": revoked_by}
                )
                self._persist(updated, event="guest_session_revoke_failed")
                self._cache[session_id] = updated
                count += 1
        LOGGER.warning("guest_sessions_revoked_all", extra={"count": count})
        return count

    def delete(self, session_id: str) -> bool:
        """Remove a guest record entirely."""
        with self._lock:
            removed = self._cache.pop(session_id, None) is not None
            try:
                path = self._path(session_id)
                if path.exists():
                    path.unlink()
                    removed = True
            except OSError:
                LOGGER.exception("guest_session_delete_failed", extra={"session_id": session_id})
        if removed:
            LOGGER.info("guest_session_deleted", extra={"session_id": session_id})
        return removed

    def cleanup_expired(self) -> int:
        """Delete records whose expiry lies more than a day in the past."""
        cutoff = self._now() - GUEST_CLEANUP_GRACE_SECONDS
        removed = 0
        with self._lock:
            for session_id, session in list(self._cache.items()):
                if session.expires_at >= cutoff:
                    continue
                self._cache.pop(session_id, None)
                try:
                    self._path(session_id).unlink(missing_ok=True)
                except OSError:
                    LOGGER.warning("guest_session_cleanup_failed", extra={"session_id": session_id})
                removed += 1
        if removed:
            LOGGER.info("guest_sessions_cleaned_up", extra={"count": removed})
        return removed

    def set_prefill(
        self,
        session_id: str,
        enabled: bool,
        duration_hours: int | None = None,
    ) -> GuestSession | None:
        """Enable or disable prefill access for a guest session."""
        hours = self._policy.prefill_duration_hours if duration_hours is None else duration_hours
        if enabled:
            try:
                hours = validate_duration_hours(hours, field="duration_hours")
            except ValueError as exc:
                raise ApiError(
                    status_code=400,
                    error_code=ApiErrorCode.VALIDATION_ERROR,
                    message=str(exc),
                ) from exc
        now = self._now()
        with self._lock:
            session = self._cache.get(session_id)
            if session is None:
                return None
            if enabled:
                changes = {"prefill_enabled": True, "prefill_expires_at": now + hours * 3600}
            else:
                changes = {"prefill_enabled": False, "prefill_expires_at": None}
            updated = session.model_copy(update=changes)
            self._persist(updated, event="guest_prefill_save_failed")
            self._cache[session_id] = updated
        LOGGER.info(
            "guest_prefill_updated",
            extra={"session_id": session_id, "reason": "enabled" if enabled else "disabled"},
        )
        return updated

    def has_prefill_access(self, session_id: str | None) -> bool:
        """Return whether the guest session is valid and holds a live prefill grant."""
        if not self.validate(session_id):
            return False
        session = self.get(session_id or "")
        if session is None or not session.prefill_enabled:
            return False
        return not session.is_prefill_expired(self._now())

    def _path(self, session_id: str) -> Path:
        return self._dir / device_file_name(session_id)

    def _save(self, session: GuestSession) -> None:
        path = self._path(session.session_id)
        tmp_path = path.with_suffix(".json.tmp")
        tmp_path.write_text(session.model_dump_json(indent=2), encoding="utf-8")
        os.replace(tmp_path, path)

    def _persist(self, session: GuestSession, *, event: str) -> bool:
        """Write ``session`` to disk; on failure log ``event`` and keep the cached copy."""
        try:
            self._save(session)
        except OSError:
            LOGGER.exception(event, extra={"session_id": session.session_id})
            return False
        return True

    def _load_sessions(self) -> None:
        loaded: dict[str, GuestSession] = {}
        for path in sorted(self._dir.glob("*.json")):
            try:
                payload = json.loads(path.read_text(encoding="utf-8"))
                session = GuestSession.model_validate(payload)
            except (OSError, ValueError, ValidationError):
                LOGGER.warning("guest_session_file_skipped", extra={"path": str(path)})
                continue
            loaded[session.session_id] = session
        with self._lock:
            self._cache = loaded
        LOGGER.info("guest_sessions_loaded", extra={"count": len(loaded)})
