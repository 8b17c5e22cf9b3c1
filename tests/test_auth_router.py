from __future__ import annotations

from pathlib import Path

import pytest
from fastapi import APIRouter
from pydantic import ValidationError
from fastapi.routing import APIRoute
from starlette.responses import Response

from cacheguard.api.errors import ApiError
from cacheguard.auth.guards import AuthGuards
from cacheguard.auth.models import (
    AuthIdentity,
    CreateGuestSessionRequest,
    GuestPolicyUpdateRequest,
    GuestStartRequest,
    LoginRequest,
    PrefillGrantRequest,
    RegisterDeviceRequest,
    RequestMeta,
    ScopedGrantRequest,
)
from cacheguard.auth.rate_limiter import LoginRateLimiter
from cacheguard.auth.router import AuthRouteDeps, create_auth_router
from cacheguard.auth.sessions import SESSION_COOKIE_NAME

DEVICE = "device-aaaaaaaaaaaa"
GUEST = "guest-fingerprint-1"


@pytest.fixture
def router(tmp_path: Path, credentials, devices, sessions, guests, guest_policy, clock) -> APIRouter:
    limiter = LoginRateLimiter(
        database_path=tmp_path / "limiter.db",
        max_attempts=2,
        window_seconds=300,
        lock_seconds=600,
        clock=clock,
    )
    deps = AuthRouteDeps(
        auth_enabled=True,
        credentials=credentials,
        limited_credentials=None,
        devices=devices,
        sessions=sessions,
        guests=guests,
        guest_policy=guest_policy,
        rate_limiter=limiter,
        guards=AuthGuards(enabled=True, guests=guests, clock=clock),
    )
    yield create_auth_router(deps)
    limiter.close()


def _route(router: APIRouter, path: str, method: str):
    for route in router.routes:
        if isinstance(route, APIRoute) and route.path == path and method in route.methods:
            return route.endpoint
    raise AssertionError(f"Route {method} {path} not found")


def _cookie_token(response: Response) -> str:
    for value in response.headers.getlist("set-cookie"):
        if value.startswith(f"{SESSION_COOKIE_NAME}="):
            return value.split(";", 1)[0].split("=", 1)[1]
    raise AssertionError("session cookie not set")


def test_login_sets_admin_cookie(router, credentials, sessions, make_request) -> None:
    login = _route(router, "/api/auth/login", "POST")
    response = Response()

    result = login(LoginRequest(api_key=credentials.get_or_create()), make_request("/api/auth/login", "POST"), response)

    assert result.session_type == "admin"
    assert sessions.validate(_cookie_token(response)).kind == "admin"


def test_login_failures_are_rate_limited(router, make_request) -> None:
    login = _route(router, "/api/auth/login", "POST")

    for _ in range(2):
        with pytest.raises(ApiError) as exc:
            login(LoginRequest(api_key="lm_wrong"), make_request("/api/auth/login", "POST"), Response())
        assert exc.value.status_code == 401

    with pytest.raises(ApiError) as locked:
        login(LoginRequest(api_key="lm_wrong"), make_request("/api/auth/login", "POST"), Response())
    assert locked.value.status_code == 429


def test_login_revokes_existing_guest_cookie_session(router, credentials, sessions, make_request) -> None:
    login = _route(router, "/api/auth/login", "POST")
    guest_token, guest_session = sessions.create_guest_session(RequestMeta())
    request = make_request("/api/auth/login", "POST", cookies={SESSION_COOKIE_NAME: guest_token})

    login(LoginRequest(api_key=credentials.get_or_create()), request, Response())

    assert sessions.get(guest_session.id).is_revoked


def test_start_guest_registers_fingerprint(router, guests, sessions, make_request) -> None:
    start = _route(router, "/api/auth/guest", "POST")
    response = Response()

    result = start(
        make_request("/api/auth/guest", "POST", headers={"User-Agent": "curl/8.4.0"}),
        response,
        GuestStartRequest(device_id=GUEST, device_name="Lobby"),
    )

    assert result.session_type == "guest"
    assert sessions.validate(_cookie_token(response)).device_id == GUEST
    assert guests.get(GUEST).browser == "curl 8"


def test_start_guest_rejected_when_locked(router, guest_policy, make_request) -> None:
    start = _route(router, "/api/auth/guest", "POST")
    guest_policy.update(locked=True)

    with pytest.raises(ApiError) as exc:
        start(make_request("/api/auth/guest", "POST"), Response(), None)

    assert exc.value.status_code == 403
    assert "GUEST_ACCESS_DISABLED" in str(exc.value.detail)


def test_logout_revokes_and_clears_cookie(router, credentials, sessions, make_request) -> None:
    logout = _route(router, "/api/auth/logout", "POST")
    token, session = sessions.create_admin_session(credentials.get_or_create(), RequestMeta())
    response = Response()

    logout(make_request("/api/auth/logout", "POST", cookies={SESSION_COOKIE_NAME: token}), response)

    assert sessions.get(session.id).is_revoked
    assert "Max-Age=0" in response.headers["set-cookie"]


def test_auth_status_reports_identity(router, make_request) -> None:
    status = _route(router, "/api/auth/status", "GET")
    anonymous_request = make_request("/api/auth/status")
    anonymous_request.state.identity = AuthIdentity(method="public")
    admin_request = make_request("/api/auth/status")
    admin_request.state.identity = AuthIdentity(method="api_key", tier="admin")
    response = Response()

    anonymous = status(anonymous_request, response)
    admin = status(admin_request, Response())

    assert not anonymous.is_authenticated
    assert anonymous.guest_access_enabled
    assert anonymous.guest_duration_hours == 6
    assert response.headers["Cache-Control"].startswith("no-store")
    assert admin.is_authenticated and admin.session_type == "admin"


def test_guest_config_update_rejects_out_of_range(router) -> None:
    update = _route(router, "/api/auth/guest/config", "PUT")

    with pytest.raises(ApiError) as exc:
        update(GuestPolicyUpdateRequest(duration_hours=500))
    result = update(GuestPolicyUpdateRequest(locked=True, prefill_duration_hours=4))

    assert exc.value.status_code == 400
    assert result.is_locked
    assert result.prefill_duration_hours == 4


def test_register_device_maps_errors(router, credentials, make_request) -> None:
    register = _route(router, "/api/devices", "POST")
    request = make_request("/api/devices", "POST")

    with pytest.raises(ApiError) as short:
        register(RegisterDeviceRequest(device_id="short", api_key=credentials.get_or_create()), request)
    result = register(RegisterDeviceRequest(device_id=DEVICE, api_key=credentials.get_or_create()), request)

    assert short.value.status_code == 400
    assert "VALIDATION_ERROR" in str(short.value.detail)
    assert result.success and result.device_id == DEVICE


def test_regenerate_revokes_everything(router, credentials, devices, sessions, guests, make_request) -> None:
    regenerate = _route(router, "/api/api-keys/regenerate", "POST")
    old_key = credentials.get_or_create()
    devices.register(DEVICE, old_key)
    guests.create(GUEST)
    token, _ = sessions.create_admin_session(old_key, RequestMeta())

    result = regenerate(make_request("/api/api-keys/regenerate", "POST"), Response())

    assert result.devices_revoked == 1
    assert result.guest_sessions_revoked == 1
    assert result.sessions_revoked == 1
    assert not credentials.validate(old_key)
    assert not devices.validate(DEVICE)
    assert guests.validate_with_reason(GUEST) == (False, "revoked")
    assert sessions.validate(token) is None


def test_guest_session_admin_endpoints(router, guests, make_request) -> None:
    create = _route(router, "/api/guest-sessions", "POST")
    prefill = _route(router, "/api/guest-sessions/{session_id}/prefill", "POST")
    revoke = _route(router, "/api/guest-sessions/{session_id}/revoke", "POST")
    delete = _route(router, "/api/guest-sessions/{session_id}", "DELETE")

    created = create(
        CreateGuestSessionRequest(session_id=GUEST),
        make_request("/api/guest-sessions", "POST"),
    )
    granted = prefill(GUEST, PrefillGrantRequest(enabled=True, duration_hours=3))
    revoke(GUEST, make_request("/api/guest-sessions/x/revoke", "POST"))

    assert created.session_id == GUEST and not created.is_expired
    assert granted.prefill_enabled
    assert guests.get(GUEST).is_revoked
    with pytest.raises(ApiError) as missing:
        revoke("never-seen", make_request("/api/guest-sessions/x/revoke", "POST"))
    assert missing.value.status_code == 404
    assert delete(GUEST).success


def test_guest_cannot_read_other_guest_record(router, guests, make_request) -> None:
    read = _route(router, "/api/guest-sessions/{session_id}", "GET")
    guests.create(GUEST)
    guests.create("guest-fingerprint-2")
    request = make_request("/api/guest-sessions/x")
    request.state.identity = AuthIdentity(
        method="guest_session", tier="guest", device_id=GUEST, guest_session_id=GUEST
    )

    assert read(GUEST, request, None).session_id == GUEST
    with pytest.raises(ApiError) as exc:
        read("guest-fingerprint-2", request, None)
    assert exc.value.status_code == 403


def test_session_grant_endpoints(router, credentials, sessions) -> None:
    grant = _route(router, "/api/sessions/{session_id}/grants", "POST")
    revoke_grant = _route(router, "/api/sessions/{session_id}/grants/{feature}", "DELETE")
    listing = _route(router, "/api/sessions", "GET")
    _, session = sessions.create_admin_session(credentials.get_or_create(), RequestMeta())

    granted = grant(session.id, ScopedGrantRequest(feature="steam_prefill", duration_hours=2))
    cleared = revoke_grant(session.id, "steam_prefill")

    assert granted.steam_prefill_expires_at is not None
    assert cleared.steam_prefill_expires_at is None
    assert [item.id for item in listing()] == [session.id]
    assert "token_hash" not in listing()[0].model_dump()
    with pytest.raises(ApiError) as exc:
        grant("missing", ScopedGrantRequest(feature="steam_prefill", duration_hours=2))
    assert exc.value.status_code == 404


def test_api_key_status(router, credentials, make_request) -> None:
    status = _route(router, "/api/api-keys/status", "GET")

    valid = status(make_request("/api/api-keys/status", headers={"X-Api-Key": credentials.get_or_create()}))
    invalid = status(make_request("/api/api-keys/status", headers={"X-Api-Key": "lm_nope"}))

    assert valid.has_api_key and valid.key_type == "admin"
    assert not invalid.has_api_key


@pytest.mark.parametrize(
    "model, field",
    [
        (GuestStartRequest, "device_id"),
        (RegisterDeviceRequest, "device_id"),
        (CreateGuestSessionRequest, "session_id"),
    ],
)
def test_oversized_identifiers_fail_validation(model, field) -> None:
    payload = {"api_key": "lm_x", field: "g" * 129}

    with pytest.raises(ValidationError):
        model(**payload)


def test_locked_guest_start_leaves_no_records(router, guest_policy, guests, sessions, make_request) -> None:
    start = _route(router, "/api/auth/guest", "POST")
    guest_policy.update(locked=True)

    with pytest.raises(ApiError):
        start(make_request("/api/auth/guest", "POST"), Response(), GuestStartRequest(device_id=GUEST))

    assert guests.get(GUEST) is None
    assert sessions.list_active() == []


def test_guest_start_accepts_max_length_fingerprint(
    router, guests, sessions, make_request
) -> None:
    start = _route(router, "/api/auth/guest", "POST")
    fingerprint = "g" * 128
    response = Response()

    start(make_request("/api/auth/guest", "POST"), response, GuestStartRequest(device_id=fingerprint))

    assert guests.validate(fingerprint)
    assert sessions.validate(_cookie_token(response)).device_id == fingerprint
