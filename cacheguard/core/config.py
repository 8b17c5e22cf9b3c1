"""Application configuration loaded from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

GUEST_DURATION_MIN_HOURS = 1
GUEST_DURATION_MAX_HOURS = 168


def _env_flag(name: str, default: str) -> bool:
    """Parse truthy environment flag."""
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


def validate_duration_hours(value: int, *, field: str) -> int:
    """Return ``value`` when it is inside guest duration bounds, else raise."""
    hours = int(value)
    if hours < GUEST_DURATION_MIN_HOURS or hours > GUEST_DURATION_MAX_HOURS:
        raise ValueError(
            f"{field} must be between {GUEST_DURATION_MIN_HOURS} and "
            f"{GUEST_DURATION_MAX_HOURS} hours (got {hours})"
        )
    return hours


@dataclass(frozen=True)
class AuthConfig:
    """Authentication-related configuration."""

    enabled: bool
    api_key_path: Path
    limited_api_key_enabled: bool
    limited_api_key_path: Path
    session_db_path: Path
    devices_dir: Path
    admin_session_hours: int = 720
    session_rotation_seconds: int = 900
    max_admin_devices: int = 3


@dataclass(frozen=True)
class GuestConfig:
    """Startup defaults for guest access policy."""

    locked: bool
    duration_hours: int
    prefill_duration_hours: int
    policy_path: Path
    sessions_dir: Path


@dataclass(frozen=True)
class LoggingConfig:
    """Structured logging configuration."""

    level: str


@dataclass(frozen=True)
class SecurityConfig:
    """API perimeter security settings."""

    cors_allowed_origins: list[str]
    request_max_bytes: int
    login_rate_limit_max_attempts: int
    login_rate_limit_window_seconds: int
    login_rate_limit_lock_seconds: int
    cleanup_interval_seconds: int = 3600


@dataclass(frozen=True)
class AppConfig:
    """Top-level application configuration."""

    auth: AuthConfig
    guest: GuestConfig
    logging: LoggingConfig
    security: SecurityConfig

    @staticmethod
    def from_env() -> "AppConfig":
        """Build app config from process environment."""
        data_dir = Path(os.getenv("AUTH_DATA_DIR", "runtime").strip() or "runtime")
        security_dir = data_dir / "security"
        state_dir = data_dir / "state"

        api_key_path = Path(
            os.getenv("AUTH_API_KEY_PATH", "").strip()
            or str(security_dir / "api_key.txt")
        )
        limited_api_key_path = Path(
            os.getenv("AUTH_LIMITED_API_KEY_PATH", "").strip()
            or str(security_dir / "limited_api_key.txt")
        )
        session_db_path = Path(
            os.getenv("AUTH_SESSION_DB_PATH", "").strip()
            or str(state_dir / "sessions.db")
        )
        guest_duration = validate_duration_hours(
            int(os.getenv("GUEST_SESSION_DURATION_HOURS", "6")),
            field="GUEST_SESSION_DURATION_HOURS",
        )
        prefill_duration = validate_duration_hours(
            int(os.getenv("GUEST_PREFILL_DURATION_HOURS", "2")),
            field="GUEST_PREFILL_DURATION_HOURS",
        )
        log_level = os.getenv("LOG_LEVEL", "INFO").strip() or "INFO"
        cors_allowed_origins = [
            origin.strip()
            for origin in os.getenv(
                "CORS_ALLOWED_ORIGINS",
                "http://localhost:3000,http://127.0.0.1:3000",
            ).split(",")
            if origin.strip()
        ]

        return AppConfig(
            auth=AuthConfig(
                enabled=_env_flag("AUTH_ENABLED", "1"),
                api_key_path=api_key_path,
                limited_api_key_enabled=_env_flag("AUTH_LIMITED_API_KEY_ENABLED", "0"),
                limited_api_key_path=limited_api_key_path,
                session_db_path=session_db_path,
                devices_dir=data_dir / "devices",
                admin_session_hours=int(os.getenv("AUTH_ADMIN_SESSION_HOURS", "720")),
                session_rotation_seconds=int(
                    os.getenv("AUTH_SESSION_ROTATION_SECONDS", "900")
                ),
                max_admin_devices=int(os.getenv("AUTH_MAX_ADMIN_DEVICES", "3")),
            ),
            guest=GuestConfig(
                locked=_env_flag("GUEST_MODE_LOCKED", "0"),
                duration_hours=guest_duration,
                prefill_duration_hours=prefill_duration,
                policy_path=state_dir / "guest_policy.json",
                sessions_dir=data_dir / "devices" / "guest_sessions",
            ),
            logging=LoggingConfig(level=log_level),
            security=SecurityConfig(
                cors_allowed_origins=cors_allowed_origins,
                request_max_bytes=int(os.getenv("REQUEST_MAX_BYTES", str(1024 * 1024))),
                login_rate_limit_max_attempts=int(
                    os.getenv("LOGIN_RATE_LIMIT_MAX_ATTEMPTS", "5")
                ),
                login_rate_limit_window_seconds=int(
                    os.getenv("LOGIN_RATE_LIMIT_WINDOW_SECONDS", "300")
                ),
                login_rate_limit_lock_seconds=int(
                    os.getenv("LOGIN_RATE_LIMIT_LOCK_SECONDS", "600")
                ),
                cleanup_interval_seconds=int(
                    os.getenv("CLEANUP_INTERVAL_SECONDS", "3600")
                ),
            ),
        )
