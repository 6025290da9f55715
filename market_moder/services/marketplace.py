from __future__ import annotations

import asyncio
from typing import Optional

import structlog
from aiogram import Bot

from ..access import AdminDirectory
from ..appeals.gate import AppealGate
from ..cache import CacheInvalidator, CacheSink, LocalTTLCache
from ..cascade.coordinator import CascadeCoordinator
from ..cascade.worker import CascadeWorker
from ..config import MarketSettings
from ..content_filter import ContentFilter
from ..flags.registry import FlagRegistry
from ..ledger.ledger import ModerationActionLedger
from ..lifecycle.manager import ListingLifecycleManager
from ..logging.events import setup_logging
from ..notifications.base import NotificationSink, NullNotifier
from ..notifications.telegram import TelegramNotifier
from ..scheduler.scheduler import MaintenanceScheduler
from ..storage.base import StorageGateway
from ..storage.sqlite import SQLiteStorage
from ..utils.clock import Clock, utc_now

logger = structlog.get_logger(__name__)


class MarketModerationService:
    """Wires storage, moderation components and the background loops together."""

    def __init__(
        self,
        settings: MarketSettings,
        *,
        storage: Optional[StorageGateway] = None,
        notifier: Optional[NotificationSink] = None,
        cache: Optional[CacheSink] = None,
        clock: Clock = utc_now,
        configure_logging: bool = True,
    ) -> None:
        if configure_logging:
            setup_logging(level=settings.logging.level, use_json=settings.logging.use_json)
        self._settings = settings
        self._storage = storage or SQLiteStorage(settings.storage.sqlite_path)
        self._notifier = notifier or self._build_notifier(settings)
        self.cache = cache if cache is not None else LocalTTLCache()
        invalidator = CacheInvalidator(self.cache)

        self.admins = AdminDirectory(self._storage, clock=clock)
        self.ledger = ModerationActionLedger(
            self._storage, settings=settings.moderation, cache=invalidator, clock=clock
        )
        self.content_filter = ContentFilter(self._storage, settings=settings.content_filter, clock=clock)
        self.lifecycle = ListingLifecycleManager(
            self._storage,
            self.ledger,
            settings=settings.lifecycle,
            cache=invalidator,
            content_filter=self.content_filter,
            clock=clock,
        )
        self.flags = FlagRegistry(self._storage, self.ledger, settings=settings.moderation, clock=clock)
        self.appeals = AppealGate(self._storage, self.ledger, settings=settings.moderation, clock=clock)
        self.cascade = CascadeCoordinator(
            self._storage, self.lifecycle, self.ledger, cache=invalidator, clock=clock
        )
        self.worker = CascadeWorker(
            self._storage, self.cascade, notifier=self._notifier, settings=settings.worker
        )
        self.scheduler = MaintenanceScheduler(self.lifecycle, self.cascade, settings=settings.sweep)
        self._ready = asyncio.Event()

    @property
    def storage(self) -> StorageGateway:
        return self._storage

    @property
    def ready(self) -> bool:
        return self._ready.is_set()

    async def start(self, *, background: bool = True) -> None:
        await self._storage.connect()
        await self.admins.seed(self._settings.admin_ids)
        await self.content_filter.seed(self._settings.content_filter.blocked_words)
        if background:
            await self.worker.start()
            await self.scheduler.start()
        self._ready.set()
        logger.info("market_moderation_started", background=background)

    async def shutdown(self) -> None:
        await self.scheduler.stop()
        await self.worker.stop()
        await self._storage.disconnect()
        close = getattr(self._notifier, "close", None)
        if close is not None:
            await close()
        self._ready.clear()
        logger.info("market_moderation_stopped")

    async def wait_ready(self) -> None:
        await self._ready.wait()

    @staticmethod
    def _build_notifier(settings: MarketSettings) -> NotificationSink:
        if not settings.telegram.bot_token:
            logger.info("notifier_disabled", reason="no bot token")
            return NullNotifier()
        return TelegramNotifier(Bot(token=settings.telegram.bot_token), admin_chat_id=settings.telegram.admin_chat_id)
