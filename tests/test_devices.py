from __future__ import annotations

from pathlib import Path

from cacheguard.auth.credentials import CredentialStore
from cacheguard.auth.devices import DeviceRegistry
from cacheguard.auth.repository import DeviceRepository

DEVICE_A = "device-aaaaaaaaaaaa"
DEVICE_B = "device-bbbbbbbbbbbb"
DEVICE_C = "device-cccccccccccc"
DEVICE_D = "device-dddddddddddd"
CHROME_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


def test_register_then_validate(devices: DeviceRegistry, credentials: CredentialStore) -> None:
    result = devices.register(
        DEVICE_A,
        credentials.get_or_create(),
        ip_address="10.0.0.2",
        user_agent=CHROME_UA,
        device_name="Office PC",
    )

    assert result.success
    assert result.device_id == DEVICE_A
    assert devices.validate(DEVICE_A)
    stored = devices.get(DEVICE_A)
    assert stored is not None
    assert stored.device_name == "Office PC"
    assert stored.operating_system == "Windows 10/11"
    assert stored.browser == "Chrome 120"
    assert credentials.get_or_create() not in stored.encrypted_credential


def test_regeneration_invalidates_device_without_touching_record(
    tmp_path: Path, devices: DeviceRegistry, credentials: CredentialStore
) -> None:
    devices.register(DEVICE_A, credentials.get_or_create())
    before = DeviceRepository(tmp_path / "devices").get(DEVICE_A)

    credentials.force_regenerate()

    assert not devices.validate(DEVICE_A)
    after = DeviceRepository(tmp_path / "devices").get(DEVICE_A)
    assert before == after


def test_register_rejects_invalid_key_and_short_id(
    devices: DeviceRegistry, credentials: CredentialStore
) -> None:
    invalid = devices.register(DEVICE_A, "lm_wrong")
    short = devices.register("short", credentials.get_or_create())

    assert not invalid.success and invalid.status_code == 401
    assert not short.success and short.status_code == 400
    assert not devices.validate(DEVICE_A)


def test_register_enforces_device_limit(devices: DeviceRegistry, credentials: CredentialStore) -> None:
    key = credentials.get_or_create()
    for device_id in (DEVICE_A, DEVICE_B, DEVICE_C):
        assert devices.register(device_id, key).success

    denied = devices.register(DEVICE_D, key)
    again = devices.register(DEVICE_A, key)

    assert not denied.success
    assert denied.status_code == 403
    assert again.success


def test_devices_bound_to_old_key_do_not_count_against_limit(
    devices: DeviceRegistry, credentials: CredentialStore
) -> None:
    key = credentials.get_or_create()
    for device_id in (DEVICE_A, DEVICE_B, DEVICE_C):
        devices.register(device_id, key)

    _, new_key = credentials.force_regenerate()

    assert devices.register(DEVICE_D, new_key).success


def test_revoke_and_revoke_all(devices: DeviceRegistry, credentials: CredentialStore) -> None:
    key = credentials.get_or_create()
    devices.register(DEVICE_A, key)
    devices.register(DEVICE_B, key)

    assert devices.revoke(DEVICE_A)
    assert not devices.revoke(DEVICE_A)
    assert not devices.validate(DEVICE_A)
    assert devices.revoke_all() == 1
    assert devices.list_all() == []


def test_update_last_seen_is_throttled(devices: DeviceRegistry, credentials: CredentialStore, clock) -> None:
    devices.register(DEVICE_A, credentials.get_or_create())
    registered_at = int(clock())

    clock.advance(30)
    devices.update_last_seen(DEVICE_A)
    assert devices.get(DEVICE_A).last_seen_at == registered_at

    clock.advance(31)
    devices.update_last_seen(DEVICE_A)
    assert devices.get(DEVICE_A).last_seen_at == registered_at + 61


def test_list_all_orders_by_last_seen(devices: DeviceRegistry, credentials: CredentialStore, clock) -> None:
    key = credentials.get_or_create()
    devices.register(DEVICE_A, key)
    clock.advance(10)
    devices.register(DEVICE_B, key)

    assert [item.device_id for item in devices.list_all()] == [DEVICE_B, DEVICE_A]


def test_registry_warms_cache_from_storage(
    tmp_path: Path, devices: DeviceRegistry, credentials: CredentialStore
) -> None:
    devices.register(DEVICE_A, credentials.get_or_create())

    reloaded = DeviceRegistry(DeviceRepository(tmp_path / "devices"), credentials)

    assert reloaded.validate(DEVICE_A)
