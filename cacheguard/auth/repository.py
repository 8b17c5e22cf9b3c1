"""Repository for device registration persistence."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

from pymongo import MongoClient
from pymongo.errors import PyMongoError

from cacheguard.auth.models import DeviceRegistration
from cacheguard.core.security import b64url_decode, b64url_encode

LOGGER = logging.getLogger(__name__)


def device_file_name(device_id: str) -> str:
    """Filesystem-safe, reversible file name for a device id."""
    return f"{b64url_encode(device_id.encode('utf-8'))}.json"


def device_id_from_file_name(file_name: str) -> str:
    """Inverse of :func:`device_file_name`."""
    stem = file_name[: -len(".json")] if file_name.endswith(".json") else file_name
    return b64url_decode(stem).decode("utf-8")


class DeviceRepository:
    """Device repository with MongoDB primary and file-per-record fallback."""

    def __init__(self, devices_dir: Path) -> None:
        """Initialize repository storage backends."""
        self._dir = devices_dir / "registrations"
        self._dir.mkdir(parents=True, exist_ok=True)
        self._mongo_devices = None

        mongo_uri = os.getenv("MONGODB_URI", "").strip()
        mongo_db = os.getenv("MONGODB_DB", "cacheguard").strip() or "cacheguard"

        if mongo_uri:
            try:
                client: MongoClient[dict[str, Any]] = MongoClient(
                    mongo_uri, serverSelectionTimeoutMS=3000
                )
                client.admin.command("ping")
                self._mongo_devices = client[mongo_db]["device_registrations"]
                self._mongo_devices.create_index("device_id", unique=True)
            except PyMongoError:
                LOGGER.exception("device_repository_mongo_unavailable")
                self._mongo_devices = None

    @property
    def uses_mongo(self) -> bool:
        return self._mongo_devices is not None

    def _path(self, device_id: str) -> Path:
        return self._dir / device_file_name(device_id)

    def get(self, device_id: str) -> DeviceRegistration | None:
        """Load a registration by device id."""
        if self._mongo_devices is not None:
            doc = self._mongo_devices.find_one({"device_id": device_id}, {"_id": 0})
            return DeviceRegistration.model_validate(doc) if doc else None

        path = self._path(device_id)
        if not path.exists():
            return None
        return self._read_file(path)

    def save(self, registration: DeviceRegistration) -> None:
        """Create or replace a registration."""
        doc = registration.model_dump()
        if self._mongo_devices is not None:
            self._mongo_devices.update_one(
                {"device_id": registration.device_id}, {"$set": doc}, upsert=True
            )
            return

        path = self._path(registration.device_id)
        tmp_path = path.with_suffix(".json.tmp")
        tmp_path.write_text(json.dumps(doc, ensure_ascii=False, indent=2), encoding="utf-8")
        os.replace(tmp_path, path)

    def delete(self, device_id: str) -> bool:
        """Delete a registration, returning whether it existed."""
        if self._mongo_devices is not None:
            result = self._mongo_devices.delete_one({"device_id": device_id})
            return result.deleted_count > 0

        path = self._path(device_id)
        if not path.exists():
            return False
        path.unlink()
        return True

    def delete_all(self) -> int:
        """Delete every registration and return how many were removed."""
        if self._mongo_devices is not None:
            return int(self._mongo_devices.delete_many({}).deleted_count)

        count = 0
        for path in self._dir.glob("*.json"):
            path.unlink()
            count += 1
        return count

    def list_all(self) -> list[DeviceRegistration]:
        """Return every stored registration."""
        if self._mongo_devices is not None:
            return [
                DeviceRegistration.model_validate(doc)
                for doc in self._mongo_devices.find({}, {"_id": 0})
            ]

        items: list[DeviceRegistration] = []
        for path in sorted(self._dir.glob("*.json")):
            registration = self._read_file(path)
            if registration is not None:
                items.append(registration)
        return items

    def _read_file(self, path: Path) -> DeviceRegistration | None:
        """Read a registration file, skipping corrupted records."""
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
            return DeviceRegistration.model_validate(payload)
        except Exception:
            LOGGER.warning("device_record_unreadable", extra={"path": str(path)})
            return None
