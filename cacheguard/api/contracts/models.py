"""Pydantic API response models used in OpenAPI contracts."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field


class ApiErrorResponse(BaseModel):
    """Stable error envelope for API responses."""

    error: str = Field(description="Short error category")
    message: str = Field(description="Human-readable error message")
    code: str = Field(description="Machine-readable error code")


class HealthResponse(BaseModel):
    """Health check response payload."""

    status: Literal["ok"]


class VersionResponse(BaseModel):
    """Service version payload."""

    name: str
    version: str


class AuthStatusResponse(BaseModel):
    """Current caller authentication state."""

    is_authenticated: bool
    session_type: Literal["admin", "guest"] | None = None
    auth_method: str | None = None
    expires_at: int | None = None
    guest_access_enabled: bool
    guest_duration_hours: int
    auth_enabled: bool


class SessionIssuedResponse(BaseModel):
    """Payload returned when a cookie session is created."""

    success: bool = True
    session_type: Literal["admin", "guest"]
    expires_at: int


class OkResponse(BaseModel):
    """Generic success acknowledgement."""

    success: bool = True
    message: str = ""


class GuestPolicyResponse(BaseModel):
    """Guest access policy payload."""

    is_locked: bool
    duration_hours: int
    prefill_duration_hours: int


class DeviceResponse(BaseModel):
    """Registered device listing item."""

    device_id: str
    device_name: str
    registered_at: int
    expires_at: int
    last_seen_at: int | None = None
    ip_address: str | None = None
    operating_system: str | None = None
    browser: str | None = None


class DeviceRegisteredResponse(BaseModel):
    """Device registration result payload."""

    success: bool
    message: str
    device_id: str | None = None
    device_name: str | None = None
    expires_at: int | None = None


class GuestSessionResponse(BaseModel):
    """Guest session listing item."""

    session_id: str
    device_name: str | None = None
    ip_address: str | None = None
    operating_system: str | None = None
    browser: str | None = None
    created_at: int
    expires_at: int
    last_seen_at: int | None = None
    is_revoked: bool
    is_expired: bool
    revoked_at: int | None = None
    revoked_by: str | None = None
    prefill_enabled: bool
    prefill_expires_at: int | None = None


class UserSessionResponse(BaseModel):
    """Active cookie session listing item. Token hashes are never exposed."""

    id: str
    kind: Literal["admin", "guest"]
    device_id: str | None = None
    ip_address: str
    user_agent: str
    created_at: int
    expires_at: int
    last_seen_at: int
    steam_prefill_expires_at: int | None = None
    epic_prefill_expires_at: int | None = None


class RegenerateKeyResponse(BaseModel):
    """Outcome of credential regeneration with revocation counts."""

    success: bool = True
    message: str
    devices_revoked: int
    guest_sessions_revoked: int
    sessions_revoked: int


class ApiKeyStatusResponse(BaseModel):
    """Whether the presented credential header is valid and which tier it carries."""

    has_api_key: bool
    key_type: Literal["admin", "limited"] | None = None


class PrefillAccessResponse(BaseModel):
    """Prefill access report for the current caller."""

    has_access: bool
    expires_at: int | None = None


class RevokedCountResponse(BaseModel):
    """Bulk revocation result."""

    success: bool = True
    revoked: int
