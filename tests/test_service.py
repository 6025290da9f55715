from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import AsyncIterator

import pytest
import pytest_asyncio

from market_moder import MarketModerationService
from market_moder.config import ContentFilterSettings, MarketSettings, StorageSettings, SweepSettings
from market_moder.errors import ValidationError
from market_moder.models import ListingStatus, ModerationActionType, SweepReport
from market_moder.notifications.base import NullNotifier
from market_moder.scheduler.scheduler import MaintenanceScheduler
from tests.factories import ADMIN, OWNER, REPORTER, FrozenClock, make_draft


@pytest_asyncio.fixture
async def service(clock: FrozenClock) -> AsyncIterator[MarketModerationService]:
    settings = MarketSettings(
        _env_file=None,
        admin_ids=[ADMIN.user_id],
        storage=StorageSettings(sqlite_path=":memory:"),
    )
    app = MarketModerationService(settings, notifier=NullNotifier(), clock=clock, configure_logging=False)
    await app.start(background=False)
    try:
        yield app
    finally:
        await app.shutdown()


async def drain(service: MarketModerationService) -> None:
    while await service.worker.run_once():
        pass


@pytest.mark.asyncio
async def test_report_ban_appeal_round_trip(service, clock) -> None:
    admin = await service.admins.resolve_actor(ADMIN.user_id)
    owner = await service.admins.resolve_actor(OWNER.user_id)
    assert admin.is_admin and not owner.is_admin

    draft = await service.lifecycle.create_draft(owner, make_draft())
    listing = await service.lifecycle.publish(draft.id, owner)
    assert listing.status == ListingStatus.ACTIVE
    assert listing.expires_at == clock.now + timedelta(days=7)

    flag = await service.flags.file(listing.id, REPORTER.user_id, "fake")
    await service.flags.review(flag.id, "upheld", admin)
    await drain(service)
    assert (await service.lifecycle.get(listing.id)).status == ListingStatus.HIDDEN
    removal = await service.ledger.find_by_reference(f"flag:{flag.id}")
    assert removal.action_type == ModerationActionType.CONTENT_REMOVAL
    assert removal.target_user_id == OWNER.user_id
    assert removal.admin_id == ADMIN.user_id

    ban = await service.ledger.ban(OWNER.user_id, admin, "counterfeit goods", 7)
    await drain(service)
    assert (await service.ledger.get_active_ban(OWNER.user_id)).id == ban.id

    clock.advance(days=2)
    appeal = await service.appeals.submit(ban.id, OWNER.user_id, "The item was genuine")
    await service.appeals.resolve(appeal.id, True, admin, "Receipt checked")
    await drain(service)

    assert await service.ledger.get_active_ban(OWNER.user_id) is None
    actions = await service.ledger.get_user_actions(OWNER.user_id)
    assert actions[0].action_type == ModerationActionType.UNBAN

    fresh = await service.lifecycle.create_draft(owner, make_draft(title="Second bike"))
    fresh = await service.lifecycle.publish(fresh.id, owner)
    assert fresh.status == ListingStatus.ACTIVE
    assert (await service.lifecycle.get(listing.id)).status == ListingStatus.HIDDEN
    assert await service.lifecycle.count_active(OWNER.user_id) == 1


@pytest.mark.asyncio
async def test_scheduler_tick_runs_sweeps(service, clock) -> None:
    owner = await service.admins.resolve_actor(OWNER.user_id)
    draft = await service.lifecycle.create_draft(owner, make_draft())
    await service.lifecycle.publish(draft.id, owner)
    clock.advance(days=8)

    report = await service.scheduler.tick()

    assert report.expired == [draft.id]


class BrokenLifecycle:
    async def run_expiration_sweep(self, actor, *, limit: int = 200) -> SweepReport:
        raise RuntimeError("disk full")


class CountingCoordinator:
    def __init__(self) -> None:
        self.sweeps = 0

    async def on_ban_expiry_sweep(self) -> list:
        self.sweeps += 1
        return []


@pytest.mark.asyncio
async def test_failing_sweep_does_not_stop_the_other() -> None:
    coordinator = CountingCoordinator()
    scheduler = MaintenanceScheduler(
        BrokenLifecycle(), coordinator, settings=SweepSettings(interval_seconds=0.01)
    )

    assert await scheduler.tick() is None
    assert coordinator.sweeps == 1

    await scheduler.start()
    await asyncio.sleep(0.05)
    await scheduler.stop()
    assert coordinator.sweeps >= 2


@pytest.mark.asyncio
async def test_configured_blocked_words_are_seeded_on_start(clock) -> None:
    settings = MarketSettings(
        _env_file=None,
        storage=StorageSettings(sqlite_path=":memory:"),
        content_filter=ContentFilterSettings(blocked_words=["Counterfeit"]),
    )
    app = MarketModerationService(settings, notifier=NullNotifier(), clock=clock, configure_logging=False)
    await app.start(background=False)
    try:
        with pytest.raises(ValidationError):
            await app.lifecycle.create_draft(OWNER, make_draft(title="Counterfeit sneakers"))
        assert [entry.word for entry in await app.content_filter.list_words()] == ["counterfeit"]
    finally:
        await app.shutdown()
