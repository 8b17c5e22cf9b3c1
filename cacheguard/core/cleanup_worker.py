"""Background sweep of expired cookie sessions and guest records."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable

LOGGER = logging.getLogger(__name__)

Sweep = Callable[[], int]


class CleanupWorker:
    """Run every registered sweep on a fixed interval until stopped."""

    def __init__(self, sweeps: dict[str, Sweep], *, interval_seconds: float) -> None:
        self._sweeps = dict(sweeps)
        self._interval_seconds = max(1.0, float(interval_seconds))
        self._worker_task: asyncio.Task[None] | None = None
        self._stop_event = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._worker_task is not None and not self._worker_task.done()

    async def start(self) -> None:
        """Start background loop if not already running."""
        if self.running:
            return
        self._stop_event.clear()
        self._worker_task = asyncio.create_task(self._worker_loop())

    async def stop(self) -> None:
        """Stop background loop and wait for the current sweep to finish."""
        self._stop_event.set()
        if self._worker_task:
            await self._worker_task
            self._worker_task = None

    def run_once(self) -> dict[str, int]:
        """Run each sweep once and return removed counts keyed by sweep name."""
        removed: dict[str, int] = {}
        for name, sweep in self._sweeps.items():
            try:
                removed[name] = int(sweep())
            except Exception:
                LOGGER.exception("cleanup_sweep_failed", extra={"reason": name})
                removed[name] = 0
        return removed

    async def _worker_loop(self) -> None:
        while not self._stop_event.is_set():
            removed = await asyncio.to_thread(self.run_once)
            if any(removed.values()):
                LOGGER.info("cleanup_completed", extra={"count": sum(removed.values())})
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval_seconds)
            except asyncio.TimeoutError:
                continue
