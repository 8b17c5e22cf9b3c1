"""Registered-device authentication backed by per-device credential encryption."""

from __future__ import annotations

import logging
import time
from threading import Lock
from typing import Callable

from cacheguard.auth.credentials import CredentialStore
from cacheguard.auth.models import DeviceAuthResult, DeviceRegistration
from cacheguard.auth.repository import DeviceRepository
from cacheguard.auth.user_agent import parse_user_agent
from cacheguard.core.security import (
    constant_time_equals,
    decrypt_for_device,
    encrypt_for_device,
)

LOGGER = logging.getLogger(__name__)

MIN_DEVICE_ID_LENGTH = 16
DEVICE_REGISTRATION_TTL_SECONDS = 100 * 365 * 24 * 60 * 60
LAST_SEEN_THROTTLE_SECONDS = 60


class DeviceRegistry:
    """Bind the admin credential to browser device ids.

    Registrations store the credential encrypted under a key derived from the
    device id. Validation decrypts it and re-checks it against the current
    credential, so regenerating the credential invalidates every device
    without touching the stored records.
    """

    def __init__(
        self,
        repo: DeviceRepository,
        credentials: CredentialStore,
        *,
        max_devices: int = 3,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize registry and warm the cache from durable storage."""
        self._repo = repo
        self._credentials = credentials
        self._max_devices = max(0, int(max_devices))
        self._clock = clock
        self._lock = Lock()
        self._cache: dict[str, DeviceRegistration] = {}
        self._load_registrations()

    def _now(self) -> int:
        return int(self._clock())

    def register(
        self,
        device_id: str,
        credential: str,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
        device_name: str | None = None,
    ) -> DeviceAuthResult:
        """Register ``device_id`` after checking the presented credential."""
        if not self._credentials.validate(credential):
            LOGGER.warning(
                "device_registration_invalid_api_key",
                extra={"client_ip": ip_address, "device_id": device_id},
            )
            return DeviceAuthResult(success=False, message="Invalid API key", status_code=401)

        device_id = (device_id or "").strip()
        if len(device_id) < MIN_DEVICE_ID_LENGTH:
            return DeviceAuthResult(
                success=False,
                message=f"Device id must be at least {MIN_DEVICE_ID_LENGTH} characters",
                status_code=400,
            )

        now = self._now()
        operating_system, browser = parse_user_agent(user_agent)
        registration = DeviceRegistration(
            device_id=device_id,
            encrypted_credential=encrypt_for_device(credential.strip(), device_id),
            registered_at=now,
            expires_at=now + DEVICE_REGISTRATION_TTL_SECONDS,
            device_name=(device_name or "").strip() or "Unknown Device",
            ip_address=ip_address,
            user_agent=user_agent,
            operating_system=operating_system,
            browser=browser,
            last_seen_at=now,
        )
        current = self._credentials.get_or_create()

        with self._lock:
            if self._max_devices:
                active = self._count_active_devices(current, exclude=device_id)
                if active >= self._max_devices:
                    LOGGER.warning(
                        "device_registration_limit_reached",
                        extra={"device_id": device_id, "count": active},
                    )
                    return DeviceAuthResult(
                        success=False,
                        message=(
                            f"Maximum number of devices ({self._max_devices}) already "
                            "registered. Revoke another device first."
                        ),
                        status_code=403,
                    )
            try:
                self._repo.save(registration)
            except Exception:
                LOGGER.exception("device_registration_save_failed", extra={"device_id": device_id})
                return DeviceAuthResult(
                    success=False, message="Registration failed", status_code=500
                )
            self._cache[device_id] = registration

        LOGGER.info(
            "device_registered",
            extra={"device_id": device_id, "client_ip": ip_address},
        )
        return DeviceAuthResult(
            success=True,
            message="Device registered successfully",
            device_id=device_id,
            expires_at=registration.expires_at,
            device_name=registration.device_name,
        )

    def validate(self, device_id: str | None) -> bool:
        """Return whether ``device_id`` holds a registration for the current credential."""
        if not device_id:
            return False

        with self._lock:
            registration = self._cache.get(device_id)

        if registration is None:
            try:
                registration = self._repo.get(device_id)
            except Exception:
                LOGGER.exception("device_lookup_failed", extra={"device_id": device_id})
                return False
            if registration is None:
                return False
            with self._lock:
                self._cache[device_id] = registration

        if registration.expires_at <= self._now():
            return False
        try:
            credential = decrypt_for_device(registration.encrypted_credential, device_id)
        except ValueError:
            LOGGER.warning("device_decrypt_failed", extra={"device_id": device_id})
            return False
        return self._credentials.validate(credential)

    def get(self, device_id: str) -> DeviceRegistration | None:
        """Return a registration from cache or storage without validating it."""
        with self._lock:
            cached = self._cache.get(device_id)
        if cached is not None:
            return cached
        try:
            return self._repo.get(device_id)
        except Exception:
            LOGGER.exception("device_lookup_failed", extra={"device_id": device_id})
            return None

    def update_last_seen(self, device_id: str) -> None:
        """Refresh ``last_seen_at`` at most once per throttle window."""
        now = self._now()
        with self._lock:
            registration = self._cache.get(device_id)
            if registration is None:
                return
            if registration.last_seen_at and now - registration.last_seen_at < LAST_SEEN_THROTTLE_SECONDS:
                return
            updated = registration.model_copy(update={"last_seen_at": now})
            try:
                self._repo.save(updated)
            except Exception:
                LOGGER.warning("device_last_seen_save_failed", extra={"device_id": device_id})
                return
            self._cache[device_id] = updated

    def revoke(self, device_id: str) -> bool:
        """Remove a single registration."""
        with self._lock:
            self._cache.pop(device_id, None)
            try:
                removed = self._repo.delete(device_id)
            except Exception:
                LOGGER.exception("device_revoke_failed", extra={"device_id": device_id})
                return False
        if removed:
            LOGGER.warning("device_revoked", extra={"device_id": device_id})
        return removed

    def revoke_all(self) -> int:
        """Remove every registration and return how many were removed."""
        with self._lock:
            self._cache.clear()
            try:
                count = self._repo.delete_all()
            except Exception:
                LOGGER.exception("device_revoke_all_failed")
                return 0
        LOGGER.warning("devices_revoked_all", extra={"count": count})
        return count

    def list_all(self) -> list[DeviceRegistration]:
        """Return non-expired registrations, most recently seen first."""
        now = self._now()
        try:
            stored = self._repo.list_all()
        except Exception:
            LOGGER.exception("device_list_failed")
            return []
        items = [item for item in stored if item.expires_at > now]
        return sorted(
            items,
            key=lambda item: item.last_seen_at or item.registered_at,
            reverse=True,
        )

    def _count_active_devices(self, current_credential: str, *, exclude: str) -> int:
        """Count other registrations still bound to ``current_credential``."""
        count = 0
        now = self._now()
        for registration in self._repo.list_all():
            if registration.device_id == exclude or registration.expires_at <= now:
                continue
            try:
                stored = decrypt_for_device(
                    registration.encrypted_credential, registration.device_id
                )
            except ValueError:
                continue
            if constant_time_equals(current_credential, stored):
                count += 1
        return count

    def _load_registrations(self) -> None:
        try:
            registrations = self._repo.list_all()
        except Exception:
            LOGGER.exception("device_registrations_load_failed")
            return
        with self._lock:
            self._cache = {item.device_id: item for item in registrations}
        LOGGER.info("device_registrations_loaded", extra={"count": len(registrations)})
