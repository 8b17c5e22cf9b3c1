#!/usr/bin/env python3
"""Operator CLI for the admin credential and registered devices."""

from __future__ import annotations

import argparse
import sys
from datetime import datetime, timezone

from dotenv import load_dotenv

from cacheguard.auth.credentials import CredentialStore
from cacheguard.auth.devices import DeviceRegistry
from cacheguard.auth.repository import DeviceRepository
from cacheguard.core.config import AppConfig
from cacheguard.core.logging import setup_logging


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="Inspect or rotate the admin API key and manage device registrations.",
    )
    parser.add_argument(
        "--limited",
        action="store_true",
        help="Operate on the limited credential instead of the primary one.",
    )
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("show", help="Print the current API key, creating one if missing.")
    sub.add_parser(
        "regenerate",
        help="Generate a new API key. Devices bound to the old key stop validating.",
    )
    sub.add_parser("list-devices", help="List registered devices.")
    revoke = sub.add_parser("revoke-devices", help="Revoke one or all device registrations.")
    revoke.add_argument("device_ids", nargs="*", help="Device ids to revoke.")
    revoke.add_argument("--all", action="store_true", help="Revoke every registration.")
    return parser.parse_args(argv)


def _format_ts(value: int | None) -> str:
    if not value:
        return "-"
    return datetime.fromtimestamp(value, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%SZ")


def _credential_store(config: AppConfig, limited: bool) -> CredentialStore:
    if limited:
        return CredentialStore(config.auth.limited_api_key_path, label="limited")
    return CredentialStore(config.auth.api_key_path)


def main(argv: list[str] | None = None) -> int:
    """Run the requested command and return a process exit code."""
    args = _parse_args(argv)
    load_dotenv()
    config = AppConfig.from_env()
    setup_logging(config.logging.level)

    if args.limited and not config.auth.limited_api_key_enabled:
        print("Limited API key is disabled (AUTH_LIMITED_API_KEY_ENABLED=0).", file=sys.stderr)
        return 2

    credentials = _credential_store(config, args.limited)
    if args.command == "show":
        print(credentials.get_or_create())
        return 0
    if args.command == "regenerate":
        _, new_key = credentials.force_regenerate()
        print(new_key)
        print(
            "Running servers switch to the new key on their next request. Devices and admin "
            "sessions bound to the old key are now invalid; guest sessions stay until revoked.",
            file=sys.stderr,
        )
        return 0

    devices = DeviceRegistry(
        DeviceRepository(config.auth.devices_dir),
        credentials,
        max_devices=config.auth.max_admin_devices,
    )
    if args.command == "list-devices":
        items = devices.list_all()
        if not items:
            print("No registered devices.")
            return 0
        for item in items:
            state = "valid" if devices.validate(item.device_id) else "stale"
            print(
                f"{item.device_id}\t{item.device_name}\t{item.operating_system or '-'}"
                f"\t{item.browser or '-'}\t{_format_ts(item.last_seen_at)}\t{state}"
            )
        return 0

    if args.all:
        print(f"Revoked devices: {devices.revoke_all()}")
        return 0
    if not args.device_ids:
        print("Pass device ids or --all.", file=sys.stderr)
        return 2
    failed = 0
    for device_id in args.device_ids:
        if devices.revoke(device_id):
            print(f"Revoked: {device_id}")
        else:
            print(f"Not found: {device_id}", file=sys.stderr)
            failed += 1
    return 0 if failed == 0 else 2


if __name__ == "__main__":
    raise SystemExit(main())
