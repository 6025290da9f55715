from __future__ import annotations

import asyncio
from typing import Optional

import structlog

from ..config import WorkerSettings
from ..errors import InternalError
from ..models import DomainEvent
from ..notifications.base import NOTIFIABLE_EVENTS, NotificationSink, NullNotifier
from ..storage.base import OutboxRepository
from .coordinator import CascadeCoordinator

logger = structlog.get_logger(__name__)


class CascadeWorker:
    """Drains the event outbox into the cascade coordinator and the notifier.

    Delivery is at-least-once: an event is marked done only after its cascade
    finished. Failed events stay pending until ``max_attempts`` and are then
    parked as dead.
    """

    def __init__(
        self,
        outbox: OutboxRepository,
        coordinator: CascadeCoordinator,
        *,
        notifier: Optional[NotificationSink] = None,
        settings: Optional[WorkerSettings] = None,
    ) -> None:
        self._outbox = outbox
        self._coordinator = coordinator
        self._notifier = notifier or NullNotifier()
        self._settings = settings or WorkerSettings()
        self._running = False
        self._main_task: Optional[asyncio.Task[None]] = None

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._main_task = asyncio.create_task(self._run())
        logger.info("cascade_worker_started", poll_interval=self._settings.poll_interval_seconds)

    async def stop(self) -> None:
        self._running = False
        if self._main_task:
            self._main_task.cancel()
            await asyncio.gather(self._main_task, return_exceptions=True)
            self._main_task = None
        logger.info("cascade_worker_stopped")

    async def run_once(self) -> int:
        """Process one batch of pending events; returns how many were handled."""
        batch = await self._outbox.fetch_pending_events(self._settings.batch_size)
        for event in batch:
            await self._process(event)
        if batch:
            logger.debug("cascade_worker_batch", size=len(batch))
        return len(batch)

    async def _run(self) -> None:
        while self._running:
            try:
                handled = await self.run_once()
            except Exception as exc:  # pylint: disable=broad-except
                logger.error("cascade_worker_poll_failed", error=str(exc))
                handled = 0
            if handled < self._settings.batch_size:
                await asyncio.sleep(self._settings.poll_interval_seconds)

    async def _process(self, event: DomainEvent) -> None:
        if event.id is None:
            raise InternalError("Outbox event has no id", kind=event.kind.value)
        try:
            await self._coordinator.dispatch(event)
        except Exception as exc:  # pylint: disable=broad-except
            attempts = event.attempts + 1
            dead = attempts >= self._settings.max_attempts
            await self._outbox.mark_event_failed(event.id, str(exc), dead=dead)
            if dead:
                logger.error("cascade_event_dead", event_id=event.id, kind=event.kind.value, error=str(exc))
            else:
                logger.warning(
                    "cascade_event_failed",
                    event_id=event.id,
                    kind=event.kind.value,
                    attempts=attempts,
                    error=str(exc),
                )
            return

        if event.kind in NOTIFIABLE_EVENTS:
            try:
                await self._notifier.publish(event)
            except Exception as exc:  # pylint: disable=broad-except
                logger.warning("notification_failed", event_id=event.id, kind=event.kind.value, error=str(exc))
        await self._outbox.mark_event_done(event.id)
        logger.debug("cascade_event_done", event_id=event.id, kind=event.kind.value)
