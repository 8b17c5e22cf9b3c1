from __future__ import annotations

from pathlib import Path

import pytest

from cacheguard.core.config import AppConfig, validate_duration_hours

_ENV_KEYS = [
    "AUTH_ENABLED",
    "AUTH_API_KEY_PATH",
    "AUTH_LIMITED_API_KEY_ENABLED",
    "AUTH_SESSION_DB_PATH",
    "AUTH_MAX_ADMIN_DEVICES",
    "GUEST_MODE_LOCKED",
    "GUEST_SESSION_DURATION_HOURS",
    "GUEST_PREFILL_DURATION_HOURS",
    "CORS_ALLOWED_ORIGINS",
    "AUTH_ADMIN_SESSION_HOURS",
    "AUTH_SESSION_ROTATION_SECONDS",
    "CLEANUP_INTERVAL_SECONDS",
]


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch, tmp_path: Path) -> None:
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("AUTH_DATA_DIR", str(tmp_path / "data"))


def test_from_env_defaults(tmp_path: Path) -> None:
    config = AppConfig.from_env()

    assert config.auth.enabled
    assert not config.auth.limited_api_key_enabled
    assert config.auth.api_key_path == tmp_path / "data" / "security" / "api_key.txt"
    assert config.auth.session_db_path == tmp_path / "data" / "state" / "sessions.db"
    assert config.auth.devices_dir == tmp_path / "data" / "devices"
    assert config.auth.admin_session_hours == 720
    assert config.auth.session_rotation_seconds == 900
    assert config.auth.max_admin_devices == 3
    assert not config.guest.locked
    assert config.guest.duration_hours == 6
    assert config.guest.prefill_duration_hours == 2
    assert config.security.cleanup_interval_seconds == 3600


def test_from_env_overrides(monkeypatch) -> None:
    monkeypatch.setenv("AUTH_ENABLED", "0")
    monkeypatch.setenv("GUEST_MODE_LOCKED", "true")
    monkeypatch.setenv("GUEST_SESSION_DURATION_HOURS", "24")
    monkeypatch.setenv("CORS_ALLOWED_ORIGINS", "https://a.example, https://b.example")

    config = AppConfig.from_env()

    assert not config.auth.enabled
    assert config.guest.locked
    assert config.guest.duration_hours == 24
    assert config.security.cors_allowed_origins == ["https://a.example", "https://b.example"]


def test_from_env_rejects_out_of_range_guest_duration(monkeypatch) -> None:
    monkeypatch.setenv("GUEST_SESSION_DURATION_HOURS", "200")

    with pytest.raises(ValueError):
        AppConfig.from_env()


def test_validate_duration_hours_bounds() -> None:
    assert validate_duration_hours(1, field="x") == 1
    assert validate_duration_hours(168, field="x") == 168
    with pytest.raises(ValueError):
        validate_duration_hours(0, field="x")
    with pytest.raises(ValueError):
        validate_duration_hours(169, field="x")
