"""Pydantic models for the access-control domain."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

from pydantic import BaseModel, Field

SESSION_KIND_ADMIN = "admin"
SESSION_KIND_GUEST = "guest"

TIER_ADMIN = "admin"
TIER_LIMITED = "limited"
TIER_GUEST = "guest"

METHOD_DISABLED = "disabled"
METHOD_PUBLIC = "public"
METHOD_SESSION = "session"
METHOD_API_KEY = "api_key"
METHOD_DEVICE = "device"
METHOD_GUEST = "guest_session"

FEATURE_STEAM_PREFILL = "steam_prefill"
FEATURE_EPIC_PREFILL = "epic_prefill"
SCOPED_FEATURES = (FEATURE_STEAM_PREFILL, FEATURE_EPIC_PREFILL)

ScopedFeature = Literal["steam_prefill", "epic_prefill"]

MAX_IDENTIFIER_LENGTH = 128


class DeviceRegistration(BaseModel):
    """Persisted binding of a device id to an encrypted admin credential."""

    device_id: str
    encrypted_credential: str
    registered_at: int
    expires_at: int
    device_name: str = "Unknown Device"
    ip_address: str | None = None
    user_agent: str | None = None
    operating_system: str | None = None
    browser: str | None = None
    last_seen_at: int | None = None


class UserSession(BaseModel):
    """Cookie-backed session record. Only token hashes are stored."""

    id: str
    token_hash: str
    previous_token_hash: str | None = None
    previous_token_valid_until: int | None = None
    kind: Literal["admin", "guest"]
    device_id: str | None = None
    credential_fingerprint: str | None = None
    ip_address: str = "unknown"
    user_agent: str = ""
    created_at: int
    expires_at: int
    last_seen_at: int
    last_rotated_at: int | None = None
    is_revoked: bool = False
    revoked_at: int | None = None
    steam_prefill_expires_at: int | None = None
    epic_prefill_expires_at: int | None = None

    def scoped_grant_expiry(self, feature: str) -> int | None:
        """Return expiry timestamp for a scoped feature grant."""
        if feature == FEATURE_STEAM_PREFILL:
            return self.steam_prefill_expires_at
        if feature == FEATURE_EPIC_PREFILL:
            return self.epic_prefill_expires_at
        return None

    def has_scoped_grant(self, feature: str, now: int) -> bool:
        """Return whether ``feature`` is currently granted."""
        expiry = self.scoped_grant_expiry(feature)
        return expiry is not None and now < expiry


class GuestSession(BaseModel):
    """Guest access grant keyed by the client device fingerprint."""

    session_id: str
    device_name: str | None = None
    ip_address: str | None = None
    operating_system: str | None = None
    browser: str | None = None
    created_at: int
    expires_at: int
    last_seen_at: int | None = None
    is_revoked: bool = False
    revoked_at: int | None = None
    revoked_by: str | None = None
    prefill_enabled: bool = False
    prefill_expires_at: int | None = None

    def is_expired(self, now: int) -> bool:
        """Return whether the guest window has closed."""
        return self.expires_at <= now

    def is_prefill_expired(self, now: int) -> bool:
        """Return whether an enabled prefill grant has lapsed."""
        return self.prefill_expires_at is not None and self.prefill_expires_at <= now


@dataclass(frozen=True)
class RequestMeta:
    """Client details captured from the inbound request."""

    ip_address: str = "unknown"
    user_agent: str = ""
    is_secure: bool = False


@dataclass(frozen=True)
class AuthIdentity:
    """Resolved caller identity attached to ``request.state.identity``."""

    method: str
    tier: str | None = None
    session: UserSession | None = None
    device_id: str | None = None
    guest_session_id: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.tier == TIER_ADMIN

    @property
    def is_guest(self) -> bool:
        return self.tier == TIER_GUEST


@dataclass(frozen=True)
class DeviceAuthResult:
    """Outcome of a device registration attempt."""

    success: bool
    message: str
    status_code: int = 200
    device_id: str | None = None
    expires_at: int | None = None
    device_name: str | None = None


class LoginRequest(BaseModel):
    """Admin login payload."""

    api_key: str = Field(min_length=1)


class GuestStartRequest(BaseModel):
    """Guest mode entry payload."""

    device_id: str | None = Field(default=None, max_length=MAX_IDENTIFIER_LENGTH)
    device_name: str | None = None


class RegisterDeviceRequest(BaseModel):
    """Device registration payload."""

    device_id: str = Field(min_length=1, max_length=MAX_IDENTIFIER_LENGTH)
    api_key: str = Field(min_length=1)
    device_name: str | None = None


class CreateGuestSessionRequest(BaseModel):
    """Guest session bootstrap payload."""

    session_id: str = Field(min_length=1, max_length=MAX_IDENTIFIER_LENGTH)
    device_name: str | None = None
    operating_system: str | None = None
    browser: str | None = None


class GuestPolicyUpdateRequest(BaseModel):
    """Admin update of guest access policy."""

    locked: bool | None = None
    duration_hours: int | None = None
    prefill_duration_hours: int | None = None


class PrefillGrantRequest(BaseModel):
    """Enable or disable prefill for a guest session."""

    enabled: bool
    duration_hours: int | None = None


class ScopedGrantRequest(BaseModel):
    """Grant a scoped feature to a cookie session."""

    feature: ScopedFeature
    duration_hours: int
