from __future__ import annotations

import pytest

from cacheguard.api.errors import ApiError
from cacheguard.auth.guards import AuthGuards
from cacheguard.auth.guests import GuestSessionRegistry
from cacheguard.auth.models import AuthIdentity, RequestMeta
from cacheguard.auth.sessions import SessionManager

ADMIN = AuthIdentity(method="api_key", tier="admin")
LIMITED = AuthIdentity(method="api_key", tier="limited")
DEVICE = AuthIdentity(method="device", tier="admin", device_id="device-aaaaaaaaaaaa")
GUEST_ID = "guest-fingerprint-1"
GUEST = AuthIdentity(method="guest_session", tier="guest", device_id=GUEST_ID, guest_session_id=GUEST_ID)


def _request(make_request, identity: AuthIdentity | None):
    request = make_request("/api/anything")
    request.state.identity = identity
    return request


def _guards(guests: GuestSessionRegistry, clock, enabled: bool = True) -> AuthGuards:
    return AuthGuards(enabled=enabled, guests=guests, clock=clock)


def test_primary_admin_guard(guests, clock, make_request) -> None:
    guards = _guards(guests, clock)

    assert guards.require_primary_admin(_request(make_request, ADMIN)) is ADMIN
    assert guards.require_primary_admin(_request(make_request, DEVICE)) is DEVICE

    for identity, status in ((LIMITED, 403), (GUEST, 403), (None, 401)):
        with pytest.raises(ApiError) as exc:
            guards.require_primary_admin(_request(make_request, identity))
        assert exc.value.status_code == status


def test_public_identity_counts_as_unauthenticated(guests, clock, make_request) -> None:
    guards = _guards(guests, clock)

    with pytest.raises(ApiError) as exc:
        guards.require_any_session(_request(make_request, AuthIdentity(method="public")))

    assert exc.value.status_code == 401


def test_admin_guard_accepts_limited_rejects_guest(guests, clock, make_request) -> None:
    guards = _guards(guests, clock)

    assert guards.require_admin(_request(make_request, LIMITED)) is LIMITED
    with pytest.raises(ApiError) as exc:
        guards.require_admin(_request(make_request, GUEST))
    assert "AUTH_FORBIDDEN" in str(exc.value.detail)


def test_any_session_guard_accepts_guest(guests, clock, make_request) -> None:
    assert _guards(guests, clock).require_any_session(_request(make_request, GUEST)) is GUEST


def test_guards_pass_when_auth_disabled(guests, clock, make_request) -> None:
    guards = _guards(guests, clock, enabled=False)

    assert guards.require_primary_admin(_request(make_request, None)) is None
    assert guards.require_prefill_access(_request(make_request, None)) is None


def test_prefill_guard_requires_live_guest_grant(guests: GuestSessionRegistry, clock, make_request) -> None:
    guards = _guards(guests, clock)
    guests.create(GUEST_ID)

    with pytest.raises(ApiError) as exc:
        guards.require_prefill_access(_request(make_request, GUEST))
    assert exc.value.status_code == 403
    assert "PREFILL_ACCESS_DENIED" in str(exc.value.detail)

    guests.set_prefill(GUEST_ID, True, 1)
    assert guards.require_prefill_access(_request(make_request, GUEST)) is GUEST
    assert guards.require_prefill_access(_request(make_request, DEVICE)) is DEVICE

    clock.advance(3600)
    with pytest.raises(ApiError):
        guards.require_prefill_access(_request(make_request, GUEST))


def test_prefill_guard_accepts_scoped_session_grant(
    guests, sessions: SessionManager, clock, make_request
) -> None:
    guards = _guards(guests, clock)
    _, session = sessions.create_guest_session(RequestMeta())
    granted = sessions.grant_scoped_feature(session.id, "epic_prefill", 2)
    identity = AuthIdentity(method="session", tier="guest", session=granted)

    assert guards.require_prefill_access(_request(make_request, identity)) is identity
    assert not guards.has_prefill_access(AuthIdentity(method="session", tier="guest", session=session))
