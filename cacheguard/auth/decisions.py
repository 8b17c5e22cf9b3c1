"""Ordered access decision chain evaluated for every inbound request."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

from starlette.requests import Request

from cacheguard.api.errors import ApiErrorCode, error_body
from cacheguard.auth.credentials import CredentialStore
from cacheguard.auth.devices import DeviceRegistry
from cacheguard.auth.guests import REASON_EXPIRED, REASON_REVOKED, GuestSessionRegistry
from cacheguard.auth.models import (
    METHOD_API_KEY,
    METHOD_DEVICE,
    METHOD_GUEST,
    METHOD_PUBLIC,
    METHOD_SESSION,
    SESSION_KIND_ADMIN,
    TIER_ADMIN,
    TIER_GUEST,
    TIER_LIMITED,
    AuthIdentity,
    RequestMeta,
)
from cacheguard.auth.sessions import SessionManager, token_from_request

LOGGER = logging.getLogger(__name__)

API_KEY_HEADER = "x-api-key"
DEVICE_ID_HEADER = "x-device-id"
DEVICE_ID_QUERY_PARAM = "deviceId"
PROTECTED_PREFIX = "/api"

PUBLIC_ENDPOINTS = frozenset(
    {
        ("GET", "/api/health"),
        ("GET", "/api/version"),
        ("GET", "/api/auth/status"),
        ("POST", "/api/auth/login"),
        ("POST", "/api/auth/guest"),
        ("POST", "/api/auth/logout"),
        ("GET", "/api/auth/guest/status"),
        ("GET", "/api/api-keys/status"),
        ("POST", "/api/devices"),
        ("POST", "/api/guest-sessions"),
        ("GET", "/api/themes"),
        ("GET", "/api/config/public"),
    }
)
PUBLIC_PREFIXES = (("GET", "/api/themes/"),)


def is_public_endpoint(method: str, path: str) -> bool:
    """Return whether ``(method, path)`` bypasses authentication."""
    method = method.upper()
    if method == "OPTIONS":
        return True
    normalized = path.rstrip("/") or "/"
    if (method, normalized) in PUBLIC_ENDPOINTS:
        return True
    return any(method == m and path.startswith(prefix) for m, prefix in PUBLIC_PREFIXES)


def client_ip(request: Request) -> str:
    return (request.client.host if request.client else "") or "unknown"


@dataclass(frozen=True)
class AuthRequestContext:
    """Transport-independent view of the request fields the chain inspects."""

    method: str
    path: str
    headers: Mapping[str, str] = field(default_factory=dict)
    cookies: Mapping[str, str] = field(default_factory=dict)
    query_params: Mapping[str, str] = field(default_factory=dict)
    meta: RequestMeta = field(default_factory=RequestMeta)

    @classmethod
    def from_request(cls, request: Request) -> "AuthRequestContext":
        return cls(
            method=request.method,
            path=request.url.path,
            headers={key.lower(): value for key, value in request.headers.items()},
            cookies=dict(request.cookies),
            query_params=dict(request.query_params),
            meta=RequestMeta(
                ip_address=client_ip(request),
                user_agent=request.headers.get("user-agent", ""),
                is_secure=request.url.scheme == "https",
            ),
        )

    def header(self, name: str) -> str:
        return (self.headers.get(name.lower()) or "").strip()

    @property
    def device_id(self) -> str:
        return self.header(DEVICE_ID_HEADER) or (self.query_params.get(DEVICE_ID_QUERY_PARAM) or "").strip()


@dataclass(frozen=True)
class Decision:
    """Outcome of the chain: allow with an optional identity, or reject."""

    allowed: bool
    identity: AuthIdentity | None = None
    status_code: int = 200
    body: dict[str, Any] | None = None

    @classmethod
    def allow(cls, identity: AuthIdentity | None = None) -> "Decision":
        return cls(allowed=True, identity=identity)

    @classmethod
    def reject(cls, status_code: int, error_code: ApiErrorCode, message: str) -> "Decision":
        return cls(
            allowed=False,
            status_code=status_code,
            body=error_body(status_code, error_code, message),
        )


Predicate = Callable[[AuthRequestContext], "Decision | None"]


class AuthDecisionChain:
    """First-match-wins list of access predicates.

    Order: kill switch, public allowlist, session cookie, API key header,
    registered device, guest session, protected namespace fallback.
    """

    def __init__(
        self,
        *,
        enabled: bool,
        credentials: CredentialStore,
        limited_credentials: CredentialStore | None,
        devices: DeviceRegistry,
        sessions: SessionManager,
        guests: GuestSessionRegistry,
    ) -> None:
        self._enabled = enabled
        self._credentials = credentials
        self._limited_credentials = limited_credentials
        self._devices = devices
        self._sessions = sessions
        self._guests = guests
        self.predicates: tuple[Predicate, ...] = (
            self.kill_switch,
            self.public_allowlist,
            self.session_cookie,
            self.api_key_header,
            self.registered_device,
            self.guest_session,
            self.protected_namespace,
        )

    @property
    def enabled(self) -> bool:
        return self._enabled

    def decide(self, ctx: AuthRequestContext) -> Decision:
        """Return the first predicate decision; requests outside every rule are allowed."""
        for predicate in self.predicates:
            decision = predicate(ctx)
            if decision is not None:
                return decision
        return Decision.allow()

    def kill_switch(self, ctx: AuthRequestContext) -> Decision | None:
        """Allow everything while access control is disabled."""
        if not self._enabled:
            return Decision.allow()
        return None

    def public_allowlist(self, ctx: AuthRequestContext) -> Decision | None:
        """Allow allowlisted endpoints, attaching a cookie identity when present."""
        if not is_public_endpoint(ctx.method, ctx.path):
            return None
        identity = self._identity_from_cookie(ctx)
        return Decision.allow(identity or AuthIdentity(method=METHOD_PUBLIC))

    def session_cookie(self, ctx: AuthRequestContext) -> Decision | None:
        """Allow a valid session cookie unless its guest record is revoked or expired."""
        identity = self._identity_from_cookie(ctx)
        if identity is None:
            return None
        if identity.is_guest and identity.device_id:
            _, reason = self._guests.validate_with_reason(identity.device_id)
            if reason is not None:
                return None
        return Decision.allow(identity)

    def api_key_header(self, ctx: AuthRequestContext) -> Decision | None:
        """Allow the primary credential as admin and the limited one as limited."""
        candidate = ctx.header(API_KEY_HEADER)
        if not candidate:
            return None
        if self._credentials.validate(candidate):
            return Decision.allow(AuthIdentity(method=METHOD_API_KEY, tier=TIER_ADMIN))
        if self._limited_credentials is not None and self._limited_credentials.validate(candidate):
            return Decision.allow(AuthIdentity(method=METHOD_API_KEY, tier=TIER_LIMITED))
        LOGGER.warning(
            "api_key_rejected",
            extra={"path": ctx.path, "client_ip": ctx.meta.ip_address},
        )
        return None

    def registered_device(self, ctx: AuthRequestContext) -> Decision | None:
        """Allow a device id registered under the current credential."""
        device_id = ctx.device_id
        if not device_id or not self._devices.validate(device_id):
            return None
        return Decision.allow(
            AuthIdentity(method=METHOD_DEVICE, tier=TIER_ADMIN, device_id=device_id)
        )

    def guest_session(self, ctx: AuthRequestContext) -> Decision | None:
        """Allow a live guest session; reject revoked or expired ones with their reason."""
        for candidate in self._guest_candidates(ctx):
            valid, reason = self._guests.validate_with_reason(candidate)
            if valid:
                return Decision.allow(
                    AuthIdentity(
                        method=METHOD_GUEST,
                        tier=TIER_GUEST,
                        device_id=candidate,
                        guest_session_id=candidate,
                    )
                )
            if reason == REASON_REVOKED:
                LOGGER.warning(
                    "guest_session_revoked_access",
                    extra={"session_id": candidate, "path": ctx.path, "reason": reason},
                )
                return Decision.reject(
                    401,
                    ApiErrorCode.GUEST_SESSION_REVOKED,
                    "Your guest session has been revoked",
                )
            if reason == REASON_EXPIRED:
                LOGGER.warning(
                    "guest_session_expired_access",
                    extra={"session_id": candidate, "path": ctx.path, "reason": reason},
                )
                return Decision.reject(
                    401,
                    ApiErrorCode.GUEST_SESSION_EXPIRED,
                    "Your guest session has expired",
                )
            LOGGER.debug("guest_session_unknown", extra={"session_id": candidate})
        return None

    def protected_namespace(self, ctx: AuthRequestContext) -> Decision | None:
        """Reject unauthenticated ``/api`` requests and forward everything else."""
        if ctx.path == PROTECTED_PREFIX or ctx.path.startswith(PROTECTED_PREFIX + "/"):
            return Decision.reject(401, ApiErrorCode.AUTH_REQUIRED, "Authentication required")
        return Decision.allow()

    def _identity_from_cookie(self, ctx: AuthRequestContext) -> AuthIdentity | None:
        token = token_from_request(ctx.cookies, ctx.query_params)
        if not token:
            return None
        session = self._sessions.validate(token)
        if session is None:
            return None
        return AuthIdentity(
            method=METHOD_SESSION,
            tier=TIER_ADMIN if session.kind == SESSION_KIND_ADMIN else TIER_GUEST,
            session=session,
            device_id=session.device_id,
        )

    def _guest_candidates(self, ctx: AuthRequestContext) -> list[str]:
        candidates: list[str] = []
        if ctx.device_id:
            candidates.append(ctx.device_id)
        token = token_from_request(ctx.cookies, ctx.query_params)
        if token:
            session = self._sessions.find_by_token(token)
            if session is not None and session.device_id and session.device_id not in candidates:
                candidates.append(session.device_id)
        return candidates
