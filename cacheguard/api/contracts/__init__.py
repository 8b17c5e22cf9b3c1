"""Public API response contracts."""

from cacheguard.api.contracts.models import (
    ApiErrorResponse,
    ApiKeyStatusResponse,
    AuthStatusResponse,
    DeviceRegisteredResponse,
    DeviceResponse,
    GuestPolicyResponse,
    GuestSessionResponse,
    HealthResponse,
    OkResponse,
    PrefillAccessResponse,
    RegenerateKeyResponse,
    RevokedCountResponse,
    SessionIssuedResponse,
    UserSessionResponse,
    VersionResponse,
)

__all__ = [
    "ApiErrorResponse",
    "ApiKeyStatusResponse",
    "AuthStatusResponse",
    "DeviceRegisteredResponse",
    "DeviceResponse",
    "GuestPolicyResponse",
    "GuestSessionResponse",
    "HealthResponse",
    "OkResponse",
    "PrefillAccessResponse",
    "RegenerateKeyResponse",
    "RevokedCountResponse",
    "SessionIssuedResponse",
    "UserSessionResponse",
    "VersionResponse",
]
