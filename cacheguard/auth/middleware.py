"""HTTP middleware that applies the access decision chain to every request."""

from __future__ import annotations

import logging
from typing import Callable

from fastapi import Request
from fastapi.responses import JSONResponse

from cacheguard.auth.decisions import AuthDecisionChain, AuthRequestContext
from cacheguard.auth.devices import DeviceRegistry
from cacheguard.auth.models import METHOD_DEVICE, METHOD_SESSION, AuthIdentity
from cacheguard.auth.sessions import (
    SESSION_COOKIE_NAME,
    SessionManager,
    set_session_cookie,
)

LOGGER = logging.getLogger(__name__)


def _response_sets_session_cookie(response) -> bool:
    prefix = f"{SESSION_COOKIE_NAME}="
    return any(
        value.startswith(prefix)
        for value in response.headers.getlist("set-cookie")
    )


def create_auth_middleware(
    chain: AuthDecisionChain,
    *,
    sessions: SessionManager,
    devices: DeviceRegistry,
    rotation_seconds: int,
) -> Callable:
    """Create middleware that resolves identity, rejects, and rotates cookies."""

    async def auth_middleware(request: Request, call_next: Callable):
        """Attach ``request.state.identity`` or short-circuit with a JSON rejection."""
        ctx = AuthRequestContext.from_request(request)
        decision = chain.decide(ctx)
        if not decision.allowed:
            LOGGER.info(
                "auth_rejected",
                extra={
                    "path": ctx.path,
                    "method": ctx.method,
                    "status_code": decision.status_code,
                    "client_ip": ctx.meta.ip_address,
                },
            )
            return JSONResponse(status_code=decision.status_code, content=decision.body)

        identity: AuthIdentity | None = decision.identity
        request.state.identity = identity
        response = await call_next(request)
        if identity is None:
            return response

        if identity.method == METHOD_DEVICE and identity.device_id:
            devices.update_last_seen(identity.device_id)

        session = identity.session
        if identity.method == METHOD_SESSION and session is not None:
            sessions.update_last_seen(session)
            if (
                not _response_sets_session_cookie(response)
                and sessions.rotation_due(session, rotation_seconds)
            ):
                raw_token = sessions.rotate(session, ctx.meta)
                if raw_token:
                    set_session_cookie(
                        response,
                        raw_token,
                        session.expires_at,
                        secure=ctx.meta.is_secure,
                    )
        return response

    return auth_middleware
