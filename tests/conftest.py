from __future__ import annotations

from pathlib import Path
from typing import Any, Callable
from urllib.parse import urlencode

import pytest
from starlette.requests import Request

from cacheguard.auth.credentials import CredentialStore
from cacheguard.auth.decisions import AuthDecisionChain
from cacheguard.auth.devices import DeviceRegistry
from cacheguard.auth.guest_policy import GuestPolicy
from cacheguard.auth.guests import GuestSessionRegistry
from cacheguard.auth.repository import DeviceRepository
from cacheguard.auth.sessions import SessionManager
from cacheguard.core.config import GuestConfig

START = 1_700_000_000


class FakeClock:
    """Manually advanced clock injected into services."""

    def __init__(self, now: float = START) -> None:
        self.now = float(now)

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def _no_mongo(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("MONGODB_URI", raising=False)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def credentials(tmp_path: Path) -> CredentialStore:
    store = CredentialStore(tmp_path / "security" / "api_key.txt")
    store.get_or_create()
    return store


@pytest.fixture
def guest_config(tmp_path: Path) -> GuestConfig:
    return GuestConfig(
        locked=False,
        duration_hours=6,
        prefill_duration_hours=2,
        policy_path=tmp_path / "state" / "guest_policy.json",
        sessions_dir=tmp_path / "devices" / "guest_sessions",
    )


@pytest.fixture
def guest_policy(guest_config: GuestConfig) -> GuestPolicy:
    return GuestPolicy(guest_config)


@pytest.fixture
def devices(tmp_path: Path, credentials: CredentialStore, clock: FakeClock) -> DeviceRegistry:
    return DeviceRegistry(
        DeviceRepository(tmp_path / "devices"),
        credentials,
        max_devices=3,
        clock=clock,
    )


@pytest.fixture
def sessions(
    tmp_path: Path,
    credentials: CredentialStore,
    guest_policy: GuestPolicy,
    clock: FakeClock,
):
    manager = SessionManager(
        database_path=tmp_path / "state" / "sessions.db",
        credentials=credentials,
        guest_policy=guest_policy,
        clock=clock,
    )
    yield manager
    manager.close()


@pytest.fixture
def guests(guest_config: GuestConfig, guest_policy: GuestPolicy, clock: FakeClock) -> GuestSessionRegistry:
    return GuestSessionRegistry(guest_config.sessions_dir, guest_policy, clock=clock)


@pytest.fixture
def chain(
    credentials: CredentialStore,
    devices: DeviceRegistry,
    sessions: SessionManager,
    guests: GuestSessionRegistry,
) -> AuthDecisionChain:
    return AuthDecisionChain(
        enabled=True,
        credentials=credentials,
        limited_credentials=None,
        devices=devices,
        sessions=sessions,
        guests=guests,
    )


@pytest.fixture
def make_request() -> Callable[..., Request]:
    def _build(
        path: str,
        method: str = "GET",
        *,
        headers: dict[str, str] | None = None,
        cookies: dict[str, str] | None = None,
        query: dict[str, str] | None = None,
        scheme: str = "http",
    ) -> Request:
        raw_headers = [
            (key.lower().encode("latin-1"), value.encode("latin-1"))
            for key, value in (headers or {}).items()
        ]
        if cookies:
            cookie_header = "; ".join(f"{key}={value}" for key, value in cookies.items())
            raw_headers.append((b"cookie", cookie_header.encode("latin-1")))
        scope: dict[str, Any] = {
            "type": "http",
            "asgi": {"version": "3.0"},
            "http_version": "1.1",
            "method": method,
            "scheme": scheme,
            "path": path,
            "raw_path": path.encode("utf-8"),
            "query_string": urlencode(query or {}).encode("utf-8"),
            "root_path": "",
            "headers": raw_headers,
            "client": ("127.0.0.1", 1234),
            "server": ("testserver", 80),
        }

        async def receive() -> dict[str, Any]:
            return {"type": "http.request", "body": b"", "more_body": False}

        return Request(scope, receive)

    return _build
