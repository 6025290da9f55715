from __future__ import annotations

import pytest

from market_moder.cascade.worker import CascadeWorker
from market_moder.config import WorkerSettings
from market_moder.errors import InternalError
from market_moder.models import DomainEvent, EventKind, ListingStatus
from tests.factories import ADMIN, OWNER, START, publish_listing


class RecordingNotifier:
    def __init__(self, fail: bool = False) -> None:
        self.events: list[DomainEvent] = []
        self.fail = fail

    async def publish(self, event: DomainEvent) -> None:
        self.events.append(event)
        if self.fail:
            raise RuntimeError("telegram is down")


class ExplodingCoordinator:
    def __init__(self) -> None:
        self.calls = 0

    async def dispatch(self, event: DomainEvent) -> None:
        self.calls += 1
        raise RuntimeError("cascade failed")


class UnsavedOutbox:
    def __init__(self) -> None:
        self.marked: list[int] = []

    async def fetch_pending_events(self, limit: int) -> list[DomainEvent]:
        return [DomainEvent(kind=EventKind.USER_BANNED, payload={"user_id": OWNER.user_id}, occurred_at=START)]

    async def mark_event_done(self, event_id: int) -> None:
        self.marked.append(event_id)

    async def mark_event_failed(self, event_id: int, error: str, *, dead: bool) -> None:
        self.marked.append(event_id)


@pytest.mark.asyncio
async def test_worker_runs_ban_cascade_and_notifies(components) -> None:
    listing = await publish_listing(components)
    notifier = RecordingNotifier()
    worker = CascadeWorker(components.storage, components.cascade, notifier=notifier)
    await components.ledger.ban(OWNER.user_id, ADMIN, "fraud", 7)

    assert await worker.run_once() == 1
    assert (await components.lifecycle.get(listing.id)).status == ListingStatus.HIDDEN
    assert await worker.run_once() == 1
    assert await worker.run_once() == 0

    assert [event.kind for event in notifier.events] == [EventKind.USER_BANNED, EventKind.LISTING_HIDDEN]
    assert notifier.events[1].payload["owner_id"] == OWNER.user_id


@pytest.mark.asyncio
async def test_flag_upheld_is_not_sent_to_users(components) -> None:
    listing = await publish_listing(components)
    flag = await components.flags.file(listing.id, 99, "spam")
    await components.flags.review(flag.id, "upheld", ADMIN)
    notifier = RecordingNotifier()
    worker = CascadeWorker(components.storage, components.cascade, notifier=notifier)

    await worker.run_once()
    await worker.run_once()

    assert [event.kind for event in notifier.events] == [EventKind.LISTING_HIDDEN]


@pytest.mark.asyncio
async def test_failing_event_goes_dead_after_max_attempts(components) -> None:
    coordinator = ExplodingCoordinator()
    notifier = RecordingNotifier()
    worker = CascadeWorker(
        components.storage,
        coordinator,
        notifier=notifier,
        settings=WorkerSettings(max_attempts=2),
    )
    await components.ledger.ban(OWNER.user_id, ADMIN, "fraud", 7)

    await worker.run_once()
    pending = await components.storage.fetch_pending_events(10)
    assert pending[0].attempts == 1
    assert pending[0].last_error == "cascade failed"

    await worker.run_once()
    assert await components.storage.fetch_pending_events(10) == []
    assert coordinator.calls == 2
    assert notifier.events == []


@pytest.mark.asyncio
async def test_notification_failure_does_not_block_event(components) -> None:
    worker = CascadeWorker(components.storage, components.cascade, notifier=RecordingNotifier(fail=True))
    await components.ledger.ban(OWNER.user_id, ADMIN, "fraud", 7)

    await worker.run_once()

    assert await components.storage.fetch_pending_events(10) == []


@pytest.mark.asyncio
async def test_start_and_stop(components) -> None:
    worker = CascadeWorker(
        components.storage,
        components.cascade,
        settings=WorkerSettings(poll_interval_seconds=0.01),
    )

    await worker.start()
    await worker.start()
    await worker.stop()


@pytest.mark.asyncio
async def test_event_without_id_is_rejected() -> None:
    outbox = UnsavedOutbox()
    coordinator = ExplodingCoordinator()
    worker = CascadeWorker(outbox, coordinator)

    with pytest.raises(InternalError):
        await worker.run_once()

    assert coordinator.calls == 0
    assert outbox.marked == []
