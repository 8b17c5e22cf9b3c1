"""Per-endpoint access guards layered on top of the auth middleware."""

from __future__ import annotations

import time
from typing import Callable

from fastapi import Request

from cacheguard.api.errors import ApiError, ApiErrorCode
from cacheguard.auth.guests import GuestSessionRegistry
from cacheguard.auth.models import (
    METHOD_PUBLIC,
    SCOPED_FEATURES,
    AuthIdentity,
)


def current_identity(request: Request) -> AuthIdentity | None:
    """Return the identity resolved by the middleware, if any."""
    identity = getattr(request.state, "identity", None)
    if identity is None or identity.method == METHOD_PUBLIC:
        return None
    return identity


class AuthGuards:
    """FastAPI dependencies for admin-only, prefill, and any-session endpoints.

    Every guard passes unconditionally while authentication is disabled.
    """

    def __init__(
        self,
        *,
        enabled: bool,
        guests: GuestSessionRegistry,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._enabled = enabled
        self._guests = guests
        self._clock = clock

    def require_any_session(self, request: Request) -> AuthIdentity | None:
        """Accept any resolved identity, guest included."""
        if not self._enabled:
            return None
        identity = current_identity(request)
        if identity is None:
            raise ApiError(
                status_code=401,
                error_code=ApiErrorCode.AUTH_REQUIRED,
                message="Authentication required",
            )
        return identity

    def require_admin(self, request: Request) -> AuthIdentity | None:
        """Accept primary or limited admin credentials, reject guests."""
        identity = self.require_any_session(request)
        if identity is not None and identity.is_guest:
            raise ApiError(
                status_code=403,
                error_code=ApiErrorCode.AUTH_FORBIDDEN,
                message="Admin access required",
            )
        return identity

    def require_primary_admin(self, request: Request) -> AuthIdentity | None:
        """Accept only the primary admin tier."""
        identity = self.require_any_session(request)
        if identity is not None and not identity.is_admin:
            raise ApiError(
                status_code=403,
                error_code=ApiErrorCode.AUTH_FORBIDDEN,
                message="This action requires the primary admin credential",
            )
        return identity

    def require_prefill_access(self, request: Request) -> AuthIdentity | None:
        """Accept admins, registered devices, or guests holding a live prefill grant."""
        identity = self.require_any_session(request)
        if identity is None or identity.is_admin:
            return identity
        if self.has_prefill_access(identity):
            return identity
        raise ApiError(
            status_code=403,
            error_code=ApiErrorCode.PREFILL_ACCESS_DENIED,
            message="Prefill access has not been granted for this session",
        )

    def has_prefill_access(self, identity: AuthIdentity | None) -> bool:
        if not self._enabled:
            return True
        if identity is None:
            return False
        if identity.is_admin:
            return True
        if identity.guest_session_id and self._guests.has_prefill_access(identity.guest_session_id):
            return True
        session = identity.session
        if session is not None:
            if session.device_id and self._guests.has_prefill_access(session.device_id):
                return True
            now = int(self._clock())
            return any(session.has_scoped_grant(feature, now) for feature in SCOPED_FEATURES)
        return False
