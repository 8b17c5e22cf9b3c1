"""Runtime-mutable guest access policy persisted as JSON."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, replace
from pathlib import Path
from threading import Lock

from cacheguard.api.errors import ApiError, ApiErrorCode
from cacheguard.core.config import GuestConfig, validate_duration_hours

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class GuestPolicySnapshot:
    """Immutable view of the guest policy."""

    locked: bool
    duration_hours: int
    prefill_duration_hours: int


class GuestPolicy:
    """Guest lock flag and durations, validated on every change."""

    def __init__(self, config: GuestConfig) -> None:
        """Load persisted overrides on top of startup defaults."""
        self._path = config.policy_path
        self._lock = Lock()
        self._state = GuestPolicySnapshot(
            locked=config.locked,
            duration_hours=config.duration_hours,
            prefill_duration_hours=config.prefill_duration_hours,
        )
        persisted = self._read_file()
        if persisted is not None:
            self._state = persisted

    def snapshot(self) -> GuestPolicySnapshot:
        """Return the current immutable policy state."""
        with self._lock:
            return self._state

    @property
    def guest_access_enabled(self) -> bool:
        return not self.snapshot().locked

    @property
    def duration_hours(self) -> int:
        return self.snapshot().duration_hours

    @property
    def prefill_duration_hours(self) -> int:
        return self.snapshot().prefill_duration_hours

    def update(
        self,
        *,
        locked: bool | None = None,
        duration_hours: int | None = None,
        prefill_duration_hours: int | None = None,
    ) -> GuestPolicySnapshot:
        """Apply a partial change; out-of-range durations are rejected, not clamped."""
        try:
            if duration_hours is not None:
                validate_duration_hours(duration_hours, field="duration_hours")
            if prefill_duration_hours is not None:
                validate_duration_hours(prefill_duration_hours, field="prefill_duration_hours")
        except ValueError as exc:
            raise ApiError(
                status_code=400,
                error_code=ApiErrorCode.VALIDATION_ERROR,
                message=str(exc),
            ) from exc

        with self._lock:
            changes: dict[str, object] = {}
            if locked is not None:
                changes["locked"] = bool(locked)
            if duration_hours is not None:
                changes["duration_hours"] = int(duration_hours)
            if prefill_duration_hours is not None:
                changes["prefill_duration_hours"] = int(prefill_duration_hours)
            self._state = replace(self._state, **changes)  # type: ignore[arg-type]
            self._write_file(self._state)
            state = self._state

        LOGGER.info("guest_policy_updated")
        return state

    def _read_file(self) -> GuestPolicySnapshot | None:
        if not self._path.exists():
            return None
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
            return GuestPolicySnapshot(
                locked=bool(payload["locked"]),
                duration_hours=validate_duration_hours(
                    payload["duration_hours"], field="duration_hours"
                ),
                prefill_duration_hours=validate_duration_hours(
                    payload["prefill_duration_hours"], field="prefill_duration_hours"
                ),
            )
        except (OSError, ValueError, KeyError, TypeError):
            LOGGER.warning("guest_policy_file_ignored", extra={"path": str(self._path)})
            return None

    def _write_file(self, state: GuestPolicySnapshot) -> None:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self._path.with_suffix(".json.tmp")
            tmp_path.write_text(json.dumps(asdict(state), indent=2), encoding="utf-8")
            os.replace(tmp_path, self._path)
        except OSError:
            LOGGER.exception("guest_policy_persist_failed", extra={"path": str(self._path)})
