"""Access-control API router: login, guest mode, devices, sessions and keys."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass

from fastapi import APIRouter, Depends, Request, Response

from cacheguard.api.contracts import (
    ApiErrorResponse,
    ApiKeyStatusResponse,
    AuthStatusResponse,
    DeviceRegisteredResponse,
    DeviceResponse,
    GuestPolicyResponse,
    GuestSessionResponse,
    OkResponse,
    PrefillAccessResponse,
    RegenerateKeyResponse,
    RevokedCountResponse,
    SessionIssuedResponse,
    UserSessionResponse,
)
from cacheguard.api.errors import ApiError, ApiErrorCode
from cacheguard.auth.credentials import CredentialStore
from cacheguard.auth.decisions import API_KEY_HEADER, DEVICE_ID_HEADER, client_ip
from cacheguard.auth.devices import DeviceRegistry
from cacheguard.auth.guards import AuthGuards, current_identity
from cacheguard.auth.guest_policy import GuestPolicy
from cacheguard.auth.guests import GuestSessionRegistry
from cacheguard.auth.models import (
    METHOD_DISABLED,
    SCOPED_FEATURES,
    SESSION_KIND_GUEST,
    CreateGuestSessionRequest,
    GuestPolicyUpdateRequest,
    GuestSession,
    GuestStartRequest,
    LoginRequest,
    PrefillGrantRequest,
    RegisterDeviceRequest,
    RequestMeta,
    ScopedGrantRequest,
    UserSession,
)
from cacheguard.auth.rate_limiter import SCOPE_DEVICE_REGISTER, SCOPE_LOGIN, LoginRateLimiter
from cacheguard.auth.sessions import (
    SessionManager,
    clear_session_cookie,
    set_session_cookie,
    token_from_request,
)
from cacheguard.auth.user_agent import parse_user_agent

LOGGER = logging.getLogger(__name__)

NO_CACHE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate",
    "Pragma": "no-cache",
}

_REGISTRATION_ERROR_CODES = {
    400: ApiErrorCode.VALIDATION_ERROR,
    401: ApiErrorCode.AUTH_INVALID_CREDENTIALS,
    403: ApiErrorCode.AUTH_FORBIDDEN,
}


@dataclass(frozen=True)
class AuthRouteDeps:
    """Services required to mount the access-control routes."""

    auth_enabled: bool
    credentials: CredentialStore
    limited_credentials: CredentialStore | None
    devices: DeviceRegistry
    sessions: SessionManager
    guests: GuestSessionRegistry
    guest_policy: GuestPolicy
    rate_limiter: LoginRateLimiter
    guards: AuthGuards


def _request_meta(request: Request) -> RequestMeta:
    return RequestMeta(
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent", ""),
        is_secure=request.url.scheme == "https",
    )


def _guest_response(session: GuestSession, now: int) -> GuestSessionResponse:
    return GuestSessionResponse(
        **session.model_dump(),
        is_expired=session.is_expired(now),
    )


def _guest_access_disabled() -> ApiError:
    return ApiError(
        status_code=403,
        error_code=ApiErrorCode.GUEST_ACCESS_DISABLED,
        message="Guest access is currently disabled",
    )


def _session_response(session: UserSession) -> UserSessionResponse:
    return UserSessionResponse(**session.model_dump(exclude={"token_hash", "previous_token_hash"}))


def create_auth_router(deps: AuthRouteDeps) -> APIRouter:
    """Build the access-control router."""
    router = APIRouter(tags=["auth"])
    guards = deps.guards
    any_session = Depends(guards.require_any_session)
    admin = Depends(guards.require_admin)
    primary_admin = Depends(guards.require_primary_admin)
    prefill = Depends(guards.require_prefill_access)

    @router.get("/api/auth/status", response_model=AuthStatusResponse)
    def auth_status(request: Request, response: Response) -> AuthStatusResponse:
        """Report how, if at all, the caller is authenticated."""
        response.headers.update(NO_CACHE_HEADERS)
        policy = deps.guest_policy.snapshot()
        common = {
            "guest_access_enabled": not policy.locked,
            "guest_duration_hours": policy.duration_hours,
            "auth_enabled": deps.auth_enabled,
        }
        if not deps.auth_enabled:
            return AuthStatusResponse(
                is_authenticated=True,
                session_type="admin",
                auth_method=METHOD_DISABLED,
                **common,
            )
        identity = current_identity(request)
        if identity is None:
            return AuthStatusResponse(is_authenticated=False, **common)

        expires_at = identity.session.expires_at if identity.session else None
        if identity.guest_session_id:
            guest = deps.guests.get(identity.guest_session_id)
            expires_at = guest.expires_at if guest else expires_at
        return AuthStatusResponse(
            is_authenticated=True,
            session_type="guest" if identity.is_guest else "admin",
            auth_method=identity.method,
            expires_at=expires_at,
            **common,
        )

    @router.post(
        "/api/auth/login",
        response_model=SessionIssuedResponse,
        responses={401: {"model": ApiErrorResponse}, 429: {"model": ApiErrorResponse}},
    )
    def login(req: LoginRequest, request: Request, response: Response) -> SessionIssuedResponse:
        """Exchange the admin credential for an admin session cookie."""
        meta = _request_meta(request)
        deps.rate_limiter.assert_allowed(scope=SCOPE_LOGIN, client_ip=meta.ip_address)
        device_id = request.headers.get(DEVICE_ID_HEADER, "").strip() or None
        issued = deps.sessions.create_admin_session(req.api_key, meta, device_id=device_id)
        if issued is None:
            deps.rate_limiter.record_failure(scope=SCOPE_LOGIN, client_ip=meta.ip_address)
            LOGGER.warning("login_failed", extra={"client_ip": meta.ip_address})
            raise ApiError(
                status_code=401,
                error_code=ApiErrorCode.AUTH_INVALID_CREDENTIALS,
                message="Invalid API key",
            )
        deps.rate_limiter.record_success(scope=SCOPE_LOGIN, client_ip=meta.ip_address)

        previous_token = token_from_request(request.cookies, {})
        previous = deps.sessions.validate(previous_token) if previous_token else None
        if previous is not None and previous.kind == SESSION_KIND_GUEST:
            deps.sessions.revoke(previous.id)

        raw_token, session = issued
        set_session_cookie(response, raw_token, session.expires_at, secure=meta.is_secure)
        return SessionIssuedResponse(session_type="admin", expires_at=session.expires_at)

    @router.post(
        "/api/auth/guest",
        response_model=SessionIssuedResponse,
        responses={403: {"model": ApiErrorResponse}},
    )
    def start_guest(
        request: Request,
        response: Response,
        req: GuestStartRequest | None = None,
    ) -> SessionIssuedResponse:
        """Enter guest mode with a time-limited guest session cookie."""
        if not deps.guest_policy.guest_access_enabled:
            raise _guest_access_disabled()
        meta = _request_meta(request)
        device_id = (req.device_id or "").strip() if req else ""
        if device_id:
            operating_system, browser = parse_user_agent(meta.user_agent)
            deps.guests.create(
                device_id,
                device_name=req.device_name if req else None,
                operating_system=operating_system,
                browser=browser,
                ip_address=meta.ip_address,
            )
        issued = deps.sessions.create_guest_session(meta, device_id=device_id or None)
        if issued is None:
            raise _guest_access_disabled()
        raw_token, session = issued
        set_session_cookie(response, raw_token, session.expires_at, secure=meta.is_secure)
        return SessionIssuedResponse(session_type="guest", expires_at=session.expires_at)

    @router.post("/api/auth/logout", response_model=OkResponse)
    def logout(request: Request, response: Response) -> OkResponse:
        """Revoke the caller's cookie session and clear the cookie."""
        meta = _request_meta(request)
        token = token_from_request(request.cookies, request.query_params)
        session = deps.sessions.find_by_token(token) if token else None
        if session is not None:
            deps.sessions.revoke(session.id)
        clear_session_cookie(response, secure=meta.is_secure)
        return OkResponse(message="Logged out")

    @router.get("/api/auth/guest/status", response_model=GuestPolicyResponse)
    def guest_status() -> GuestPolicyResponse:
        policy = deps.guest_policy.snapshot()
        return GuestPolicyResponse(
            is_locked=policy.locked,
            duration_hours=policy.duration_hours,
            prefill_duration_hours=policy.prefill_duration_hours,
        )

    @router.put(
        "/api/auth/guest/config",
        response_model=GuestPolicyResponse,
        responses={400: {"model": ApiErrorResponse}, 403: {"model": ApiErrorResponse}},
        dependencies=[primary_admin],
    )
    def update_guest_config(req: GuestPolicyUpdateRequest) -> GuestPolicyResponse:
        """Lock/unlock guest mode or change guest durations."""
        policy = deps.guest_policy.update(
            locked=req.locked,
            duration_hours=req.duration_hours,
            prefill_duration_hours=req.prefill_duration_hours,
        )
        return GuestPolicyResponse(
            is_locked=policy.locked,
            duration_hours=policy.duration_hours,
            prefill_duration_hours=policy.prefill_duration_hours,
        )

    @router.post(
        "/api/devices",
        response_model=DeviceRegisteredResponse,
        responses={
            400: {"model": ApiErrorResponse},
            401: {"model": ApiErrorResponse},
            403: {"model": ApiErrorResponse},
            429: {"model": ApiErrorResponse},
        },
    )
    def register_device(req: RegisterDeviceRequest, request: Request) -> DeviceRegisteredResponse:
        """Bind the admin credential to a browser device id."""
        meta = _request_meta(request)
        deps.rate_limiter.assert_allowed(scope=SCOPE_DEVICE_REGISTER, client_ip=meta.ip_address)
        result = deps.devices.register(
            req.device_id,
            req.api_key,
            ip_address=meta.ip_address,
            user_agent=meta.user_agent,
            device_name=req.device_name,
        )
        if not result.success:
            if result.status_code == 401:
                deps.rate_limiter.record_failure(
                    scope=SCOPE_DEVICE_REGISTER, client_ip=meta.ip_address
                )
            raise ApiError(
                status_code=result.status_code,
                error_code=_REGISTRATION_ERROR_CODES.get(
                    result.status_code, ApiErrorCode.INTERNAL_SERVER_ERROR
                ),
                message=result.message,
            )
        deps.rate_limiter.record_success(scope=SCOPE_DEVICE_REGISTER, client_ip=meta.ip_address)
        return DeviceRegisteredResponse(
            success=True,
            message=result.message,
            device_id=result.device_id,
            device_name=result.device_name,
            expires_at=result.expires_at,
        )

    @router.get("/api/devices", response_model=list[DeviceResponse], dependencies=[admin])
    def list_devices() -> list[DeviceResponse]:
        return [DeviceResponse(**item.model_dump()) for item in deps.devices.list_all()]

    @router.delete(
        "/api/devices/{device_id}",
        response_model=OkResponse,
        responses={404: {"model": ApiErrorResponse}},
        dependencies=[primary_admin],
    )
    def revoke_device(device_id: str) -> OkResponse:
        if not deps.devices.revoke(device_id):
            raise ApiError(
                status_code=404,
                error_code=ApiErrorCode.DEVICE_NOT_FOUND,
                message=f"Device not found: {device_id}",
            )
        return OkResponse(message="Device revoked")

    @router.delete("/api/devices", response_model=RevokedCountResponse, dependencies=[primary_admin])
    def revoke_all_devices() -> RevokedCountResponse:
        return RevokedCountResponse(revoked=deps.devices.revoke_all())

    @router.post(
        "/api/guest-sessions",
        response_model=GuestSessionResponse,
        responses={403: {"model": ApiErrorResponse}},
    )
    def create_guest_session(req: CreateGuestSessionRequest, request: Request) -> GuestSessionResponse:
        """Register a guest session keyed by the client device fingerprint."""
        if not deps.guest_policy.guest_access_enabled:
            raise _guest_access_disabled()
        meta = _request_meta(request)
        parsed_os, parsed_browser = parse_user_agent(meta.user_agent)
        session = deps.guests.create(
            req.session_id.strip(),
            device_name=req.device_name,
            operating_system=req.operating_system or parsed_os,
            browser=req.browser or parsed_browser,
            ip_address=meta.ip_address,
        )
        return _guest_response(session, session.created_at)

    @router.get(
        "/api/guest-sessions",
        response_model=list[GuestSessionResponse],
        dependencies=[admin],
    )
    def list_guest_sessions() -> list[GuestSessionResponse]:
        sessions = deps.guests.list_all()
        now = int(time.time())
        return [_guest_response(item, now) for item in sessions]

    @router.get(
        "/api/guest-sessions/{session_id}",
        response_model=GuestSessionResponse,
        responses={403: {"model": ApiErrorResponse}, 404: {"model": ApiErrorResponse}},
    )
    def get_guest_session(session_id: str, request: Request, _identity=any_session) -> GuestSessionResponse:
        """Read one guest record; guests may only read their own."""
        identity = current_identity(request)
        if identity is not None and identity.is_guest and session_id not in {
            identity.guest_session_id,
            identity.device_id,
        }:
            raise ApiError(
                status_code=403,
                error_code=ApiErrorCode.AUTH_FORBIDDEN,
                message="Guests may only read their own session",
            )
        session = deps.guests.get(session_id)
        if session is None:
            raise ApiError(
                status_code=404,
                error_code=ApiErrorCode.GUEST_SESSION_NOT_FOUND,
                message=f"Guest session not found: {session_id}",
            )
        return _guest_response(session, int(time.time()))

    @router.post(
        "/api/guest-sessions/{session_id}/revoke",
        response_model=OkResponse,
        responses={404: {"model": ApiErrorResponse}},
        dependencies=[primary_admin],
    )
    def revoke_guest_session(session_id: str, request: Request) -> OkResponse:
        if not deps.guests.revoke(session_id, revoked_by=client_ip(request)):
            raise ApiError(
                status_code=404,
                error_code=ApiErrorCode.GUEST_SESSION_NOT_FOUND,
                message=f"Guest session not found: {session_id}",
            )
        return OkResponse(message="Guest session revoked")

    @router.delete(
        "/api/guest-sessions/{session_id}",
        response_model=OkResponse,
        responses={404: {"model": ApiErrorResponse}},
        dependencies=[primary_admin],
    )
    def delete_guest_session(session_id: str) -> OkResponse:
        if not deps.guests.delete(session_id):
            raise ApiError(
                status_code=404,
                error_code=ApiErrorCode.GUEST_SESSION_NOT_FOUND,
                message=f"Guest session not found: {session_id}",
            )
        return OkResponse(message="Guest session deleted")

    @router.post(
        "/api/guest-sessions/{session_id}/prefill",
        response_model=GuestSessionResponse,
        responses={400: {"model": ApiErrorResponse}, 404: {"model": ApiErrorResponse}},
        dependencies=[primary_admin],
    )
    def set_guest_prefill(session_id: str, req: PrefillGrantRequest) -> GuestSessionResponse:
        session = deps.guests.set_prefill(session_id, req.enabled, req.duration_hours)
        if session is None:
            raise ApiError(
                status_code=404,
                error_code=ApiErrorCode.GUEST_SESSION_NOT_FOUND,
                message=f"Guest session not found: {session_id}",
            )
        return _guest_response(session, int(time.time()))

    @router.get("/api/sessions", response_model=list[UserSessionResponse], dependencies=[admin])
    def list_sessions() -> list[UserSessionResponse]:
        return [_session_response(item) for item in deps.sessions.list_active()]

    @router.delete(
        "/api/sessions/{session_id}",
        response_model=OkResponse,
        responses={404: {"model": ApiErrorResponse}},
        dependencies=[primary_admin],
    )
    def revoke_session(session_id: str) -> OkResponse:
        if not deps.sessions.revoke(session_id):
            raise ApiError(
                status_code=404,
                error_code=ApiErrorCode.SESSION_NOT_FOUND,
                message=f"Session not found: {session_id}",
            )
        return OkResponse(message="Session revoked")

    @router.post(
        "/api/sessions/{session_id}/grants",
        response_model=UserSessionResponse,
        responses={400: {"model": ApiErrorResponse}, 404: {"model": ApiErrorResponse}},
        dependencies=[primary_admin],
    )
    def grant_session_feature(session_id: str, req: ScopedGrantRequest) -> UserSessionResponse:
        session = deps.sessions.grant_scoped_feature(session_id, req.feature, req.duration_hours)
        if session is None:
            raise ApiError(
                status_code=404,
                error_code=ApiErrorCode.SESSION_NOT_FOUND,
                message=f"Session not found: {session_id}",
            )
        return _session_response(session)

    @router.delete(
        "/api/sessions/{session_id}/grants/{feature}",
        response_model=UserSessionResponse,
        responses={400: {"model": ApiErrorResponse}, 404: {"model": ApiErrorResponse}},
        dependencies=[primary_admin],
    )
    def revoke_session_feature(session_id: str, feature: str) -> UserSessionResponse:
        session = deps.sessions.revoke_scoped_feature(session_id, feature)
        if session is None:
            raise ApiError(
                status_code=404,
                error_code=ApiErrorCode.SESSION_NOT_FOUND,
                message=f"Session not found: {session_id}",
            )
        return _session_response(session)

    @router.post(
        "/api/api-keys/regenerate",
        response_model=RegenerateKeyResponse,
        dependencies=[primary_admin],
    )
    def regenerate_api_key(request: Request, response: Response) -> RegenerateKeyResponse:
        """Rotate the admin credential and revoke everything minted under it."""
        deps.credentials.force_regenerate()
        devices_revoked = deps.devices.revoke_all()
        guests_revoked = deps.guests.revoke_all(revoked_by="api_key_regeneration")
        sessions_revoked = deps.sessions.revoke_all()
        LOGGER.warning(
            "api_key_regeneration_completed",
            extra={"client_ip": client_ip(request), "count": devices_revoked + sessions_revoked},
        )
        clear_session_cookie(response, secure=request.url.scheme == "https")
        return RegenerateKeyResponse(
            message="API key regenerated. The new key is in the key file and server logs.",
            devices_revoked=devices_revoked,
            guest_sessions_revoked=guests_revoked,
            sessions_revoked=sessions_revoked,
        )

    @router.get("/api/api-keys/status", response_model=ApiKeyStatusResponse)
    def api_key_status(request: Request) -> ApiKeyStatusResponse:
        candidate = request.headers.get(API_KEY_HEADER, "").strip()
        if candidate and deps.credentials.validate(candidate):
            return ApiKeyStatusResponse(has_api_key=True, key_type="admin")
        limited = deps.limited_credentials
        if candidate and limited is not None and limited.validate(candidate):
            return ApiKeyStatusResponse(has_api_key=True, key_type="limited")
        return ApiKeyStatusResponse(has_api_key=False)

    @router.get(
        "/api/prefill/access",
        response_model=PrefillAccessResponse,
        responses={403: {"model": ApiErrorResponse}},
    )
    def prefill_access(request: Request, _identity=prefill) -> PrefillAccessResponse:
        """Report prefill access and, for grant-based access, when it ends."""
        identity = current_identity(request)
        expires_at: int | None = None
        if identity is not None and identity.guest_session_id:
            guest = deps.guests.get(identity.guest_session_id)
            expires_at = guest.prefill_expires_at if guest else None
        elif identity is not None and identity.session is not None and not identity.is_admin:
            grants = [identity.session.scoped_grant_expiry(feature) for feature in SCOPED_FEATURES]
            expires_at = max((value for value in grants if value), default=None)
        return PrefillAccessResponse(has_access=True, expires_at=expires_at)

    return router
