from __future__ import annotations

import logging

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from cacheguard.api.http_setup import register_exception_handlers, register_http_middleware
from cacheguard.api.system_routes import create_system_router
from cacheguard.auth.credentials import CredentialStore
from cacheguard.auth.decisions import AuthDecisionChain
from cacheguard.auth.devices import DeviceRegistry
from cacheguard.auth.guards import AuthGuards
from cacheguard.auth.guest_policy import GuestPolicy
from cacheguard.auth.guests import GuestSessionRegistry
from cacheguard.auth.middleware import create_auth_middleware
from cacheguard.auth.rate_limiter import LoginRateLimiter
from cacheguard.auth.repository import DeviceRepository
from cacheguard.auth.router import AuthRouteDeps, create_auth_router
from cacheguard.auth.sessions import SessionManager
from cacheguard.core.cleanup_worker import CleanupWorker
from cacheguard.core.config import AppConfig
from cacheguard.core.logging import setup_logging

APP_NAME = "cacheguard"
APP_VERSION = "1.0.0"

load_dotenv()
APP_CONFIG = AppConfig.from_env()
setup_logging(APP_CONFIG.logging.level)
LOGGER = logging.getLogger(__name__)


def create_app(config: AppConfig = APP_CONFIG) -> FastAPI:
    app = FastAPI(title="Cacheguard API", version=APP_VERSION)

    credentials = CredentialStore(config.auth.api_key_path)
    credentials.get_or_create()
    limited_credentials = None
    if config.auth.limited_api_key_enabled:
        limited_credentials = CredentialStore(config.auth.limited_api_key_path, label="limited")
        limited_credentials.get_or_create()

    guest_policy = GuestPolicy(config.guest)
    devices = DeviceRegistry(
        DeviceRepository(config.auth.devices_dir),
        credentials,
        max_devices=config.auth.max_admin_devices,
    )
    sessions = SessionManager(
        database_path=config.auth.session_db_path,
        credentials=credentials,
        guest_policy=guest_policy,
        admin_session_hours=config.auth.admin_session_hours,
    )
    guests = GuestSessionRegistry(config.guest.sessions_dir, guest_policy)
    rate_limiter = LoginRateLimiter(
        database_path=config.auth.session_db_path,
        max_attempts=config.security.login_rate_limit_max_attempts,
        window_seconds=config.security.login_rate_limit_window_seconds,
        lock_seconds=config.security.login_rate_limit_lock_seconds,
    )
    chain = AuthDecisionChain(
        enabled=config.auth.enabled,
        credentials=credentials,
        limited_credentials=limited_credentials,
        devices=devices,
        sessions=sessions,
        guests=guests,
    )
    guards = AuthGuards(enabled=config.auth.enabled, guests=guests)

    app.include_router(create_system_router(name=APP_NAME, version=APP_VERSION))
    app.include_router(
        create_auth_router(
            AuthRouteDeps(
                auth_enabled=config.auth.enabled,
                credentials=credentials,
                limited_credentials=limited_credentials,
                devices=devices,
                sessions=sessions,
                guests=guests,
                guest_policy=guest_policy,
                rate_limiter=rate_limiter,
                guards=guards,
            )
        )
    )
    # registered first so it runs innermost, inside the perimeter and CORS layers
    app.middleware("http")(
        create_auth_middleware(
            chain,
            sessions=sessions,
            devices=devices,
            rotation_seconds=config.auth.session_rotation_seconds,
        )
    )
    register_http_middleware(app, config=config, logger=LOGGER)
    register_exception_handlers(app, logger=LOGGER)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.security.cors_allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "X-Api-Key", "X-Device-Id", "X-Request-ID"],
    )

    cleanup_worker = CleanupWorker(
        {
            "sessions": sessions.cleanup_expired,
            "guest_sessions": guests.cleanup_expired,
        },
        interval_seconds=config.security.cleanup_interval_seconds,
    )

    @app.on_event("startup")
    async def startup_cleanup_worker() -> None:
        await cleanup_worker.start()
        if not config.auth.enabled:
            LOGGER.warning("auth_disabled", extra={"reason": "AUTH_ENABLED=0"})

    @app.on_event("shutdown")
    async def shutdown_cleanup_worker() -> None:
        await cleanup_worker.stop()
        sessions.close()
        rate_limiter.close()

    return app


app = create_app()
