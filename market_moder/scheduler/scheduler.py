from __future__ import annotations

import asyncio
from typing import Optional

import structlog

from ..cascade.coordinator import CascadeCoordinator
from ..config import SweepSettings
from ..lifecycle.manager import ListingLifecycleManager
from ..models import SYSTEM_ACTOR, SweepReport

logger = structlog.get_logger(__name__)


class MaintenanceScheduler:
    """Periodic listing expiration and ban expiry sweeps."""

    def __init__(
        self,
        lifecycle: ListingLifecycleManager,
        coordinator: CascadeCoordinator,
        *,
        settings: Optional[SweepSettings] = None,
    ) -> None:
        self._lifecycle = lifecycle
        self._coordinator = coordinator
        self._settings = settings or SweepSettings()
        self._running = False
        self._main_task: Optional[asyncio.Task[None]] = None

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._main_task = asyncio.create_task(self._run())
        logger.info("maintenance_scheduler_started", interval=self._settings.interval_seconds)

    async def stop(self) -> None:
        self._running = False
        if self._main_task:
            self._main_task.cancel()
            await asyncio.gather(self._main_task, return_exceptions=True)
            self._main_task = None
        logger.info("maintenance_scheduler_stopped")

    async def tick(self) -> Optional[SweepReport]:
        """Run both sweeps once. A failing sweep is logged and retried next tick."""
        report: Optional[SweepReport] = None
        try:
            report = await self._lifecycle.run_expiration_sweep(
                SYSTEM_ACTOR, limit=self._settings.batch_size
            )
        except Exception as exc:  # pylint: disable=broad-except
            logger.error("expiration_sweep_failed", error=str(exc))
        try:
            await self._coordinator.on_ban_expiry_sweep()
        except Exception as exc:  # pylint: disable=broad-except
            logger.error("ban_expiry_sweep_failed", error=str(exc))
        return report

    async def _run(self) -> None:
        while self._running:
            await self.tick()
            await asyncio.sleep(self._settings.interval_seconds)
