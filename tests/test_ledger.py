from __future__ import annotations

import sqlite3
from datetime import timedelta

import pytest

from market_moder.errors import (
    Conflict,
    ConflictReason,
    NotFound,
    TransientStoreError,
    Unauthorized,
    ValidationError,
)
from market_moder.ledger.escalation import get_escalation_path, severity
from market_moder.ledger.ledger import ModerationActionLedger
from market_moder.ledger.state import derive_active_ban
from market_moder.models import (
    SYSTEM_ACTOR,
    EventKind,
    ModerationAction,
    ModerationActionType,
)
from market_moder.storage.sqlite import SQLiteStorage
from tests.factories import ADMIN, OWNER, START, FrozenClock

USER = OWNER.user_id


@pytest.fixture
def ledger(storage, clock) -> ModerationActionLedger:
    return ModerationActionLedger(storage, clock=clock)


@pytest.mark.asyncio
async def test_ban_then_unban_keeps_both_rows(ledger, clock) -> None:
    ban = await ledger.ban(USER, ADMIN, "x", 7)
    assert (await ledger.get_active_ban(USER)).id == ban.id
    assert ban.expires_at == clock.now + timedelta(days=7)

    unban = await ledger.unban(USER, ADMIN, "y")

    assert await ledger.get_active_ban(USER) is None
    actions = await ledger.get_user_actions(USER)
    assert [action.id for action in actions] == [unban.id, ban.id]
    assert actions[1].reason == "x"
    assert actions[1].expires_at == ban.expires_at


@pytest.mark.asyncio
async def test_double_ban_conflicts(ledger) -> None:
    await ledger.ban(USER, ADMIN, "spam")

    with pytest.raises(Conflict) as excinfo:
        await ledger.ban(USER, ADMIN, "spam again", 1)

    assert excinfo.value.reason == ConflictReason.ALREADY_BANNED


@pytest.mark.asyncio
async def test_unban_without_ban_conflicts(ledger) -> None:
    with pytest.raises(Conflict) as excinfo:
        await ledger.unban(USER, ADMIN, "nothing to lift")

    assert excinfo.value.reason == ConflictReason.NOT_BANNED


@pytest.mark.asyncio
async def test_ban_lapses_without_unban_row(ledger, clock) -> None:
    await ledger.ban(USER, ADMIN, "cool off", 1)
    clock.advance(days=1)

    assert await ledger.get_active_ban(USER) is None
    assert await ledger.reconstruct_active_ban(USER) is None
    history = await ledger.get_user_history(USER)
    assert history.unbans == 0
    again = await ledger.ban(USER, ADMIN, "repeat offence", 7)
    assert (await ledger.get_active_ban(USER)).id == again.id


@pytest.mark.asyncio
async def test_ban_validation_and_authorization(ledger) -> None:
    with pytest.raises(Unauthorized):
        await ledger.ban(USER, OWNER, "self service")
    with pytest.raises(ValidationError):
        await ledger.ban(USER, ADMIN, "   ")
    with pytest.raises(ValidationError):
        await ledger.ban(USER, ADMIN, "too long", 366)
    with pytest.raises(ValidationError):
        await ledger.warn(USER, ADMIN, "")
    assert await ledger.get_user_actions(USER) == []


@pytest.mark.asyncio
async def test_ban_and_unban_enqueue_events(ledger, storage) -> None:
    ban = await ledger.ban(USER, ADMIN, "fraud", 30)
    await ledger.unban(USER, ADMIN, "mistake")

    events = await storage.fetch_pending_events(10)

    assert [event.kind for event in events] == [EventKind.USER_BANNED, EventKind.USER_UNBANNED]
    assert events[0].payload["expires_at"] == ban.expires_at.isoformat()
    assert events[1].payload["ban_id"] == ban.id


@pytest.mark.asyncio
async def test_system_actor_can_moderate(ledger) -> None:
    action = await ledger.warn(USER, SYSTEM_ACTOR, "automated warning", "listing-1")

    assert action.action_type == ModerationActionType.WARNING
    assert action.target_listing_id == "listing-1"


@pytest.mark.asyncio
async def test_content_removal_reference_is_idempotent(ledger) -> None:
    first = await ledger.remove_content("listing-1", ADMIN, "fake", USER, reference="flag:1")
    second = await ledger.remove_content("listing-1", ADMIN, "fake", USER, reference="flag:1")

    assert first.id == second.id
    assert (await ledger.find_by_reference("flag:1")).id == first.id
    assert (await ledger.get_user_history(USER)).content_removals == 1


@pytest.mark.asyncio
async def test_pointer_matches_reconstruction(ledger, storage, clock) -> None:
    await ledger.ban(USER, ADMIN, "one", 1)
    await ledger.unban(USER, ADMIN, "lifted")
    clock.advance(hours=1)
    latest = await ledger.ban(USER, ADMIN, "two", 7)

    assert (await ledger.get_active_ban(USER)).id == latest.id
    assert (await ledger.reconstruct_active_ban(USER)).id == latest.id

    await storage.set_ban_pointer(USER, None)
    assert await ledger.get_active_ban(USER) is None
    assert await ledger.rebuild_ban_index(USER) == latest.id
    assert (await ledger.get_active_ban(USER)).id == latest.id


@pytest.mark.asyncio
async def test_stale_pointer_rejects_ban(storage, clock) -> None:
    action = ModerationAction(
        id=0,
        target_user_id=USER,
        admin_id=ADMIN.user_id,
        action_type=ModerationActionType.BAN,
        reason="racing",
        created_at=clock.now,
    )
    stored = await storage.append_ban(action, expected_pointer=None)

    assert stored is not None
    assert await storage.append_ban(action, expected_pointer=None) is None
    assert await storage.get_ban_pointer(USER) == stored.id


@pytest.mark.asyncio
async def test_action_rows_cannot_be_rewritten(storage, ledger) -> None:
    ban = await ledger.ban(USER, ADMIN, "x")

    with pytest.raises(sqlite3.IntegrityError):
        await storage._db().execute("UPDATE moderation_actions SET reason = 'y' WHERE id = ?", (ban.id,))

    assert (await ledger.get_action(ban.id)).reason == "x"


@pytest.mark.asyncio
async def test_unknown_action_is_not_found(ledger) -> None:
    with pytest.raises(NotFound):
        await ledger.get_action(404)


class FlakyStorage(SQLiteStorage):
    def __init__(self, failures: int) -> None:
        super().__init__(":memory:")
        self.failures = failures

    async def get_ban_pointer(self, user_id: int):
        if self.failures:
            self.failures -= 1
            raise TransientStoreError("Store busy during get_ban_pointer")
        return await super().get_ban_pointer(user_id)


@pytest.mark.asyncio
async def test_ban_retries_once_on_transient_error() -> None:
    storage = FlakyStorage(failures=1)
    await storage.connect()
    try:
        ledger = ModerationActionLedger(storage, clock=FrozenClock())
        ban = await ledger.ban(USER, ADMIN, "flaky store", 1)
        assert ban.id > 0
    finally:
        await storage.disconnect()


@pytest.mark.asyncio
async def test_ban_surfaces_retryable_error_after_retry() -> None:
    storage = FlakyStorage(failures=2)
    await storage.connect()
    try:
        ledger = ModerationActionLedger(storage, clock=FrozenClock())
        with pytest.raises(TransientStoreError) as excinfo:
            await ledger.ban(USER, ADMIN, "flaky store", 1)
        assert excinfo.value.retryable
        assert await storage.list_actions_for_user(USER) == []
    finally:
        await storage.disconnect()


def test_escalation_ladder() -> None:
    assert get_escalation_path(0).action_type == ModerationActionType.WARNING
    assert get_escalation_path(1).action_type == ModerationActionType.WARNING
    assert get_escalation_path(2).duration_days == 1
    assert get_escalation_path(4).duration_days == 7
    assert get_escalation_path(6).duration_days == 30
    assert get_escalation_path(11).permanent
    with pytest.raises(ValidationError):
        get_escalation_path(-1)


def test_escalation_is_monotonic_across_breakpoints() -> None:
    weights = [severity(get_escalation_path(n)) for n in (1, 3, 5, 10, 11)]

    assert weights == sorted(weights)
    assert weights[0] == 0 and weights[-1] == float("inf")


@pytest.mark.asyncio
async def test_recommend_next_step_counts_violations(ledger) -> None:
    await ledger.warn(USER, ADMIN, "first")
    await ledger.warn(USER, ADMIN, "second")

    step = await ledger.recommend_next_step(USER)

    assert step.action_type == ModerationActionType.BAN
    assert step.duration_days == 1


def test_derive_active_ban_uses_append_order_within_a_tick() -> None:
    ban = ModerationAction(
        id=1,
        target_user_id=USER,
        admin_id=1,
        action_type=ModerationActionType.BAN,
        reason="x",
        created_at=START,
    )
    unban = ModerationAction(
        id=2,
        target_user_id=USER,
        admin_id=1,
        action_type=ModerationActionType.UNBAN,
        reason="y",
        created_at=START,
    )

    assert derive_active_ban([ban], START) is ban
    assert derive_active_ban([unban, ban], START) is None


@pytest.mark.asyncio
async def test_list_lapsed_bans(ledger, clock) -> None:
    start = clock.now
    short = await ledger.ban(USER, ADMIN, "short", 1)
    await ledger.ban(OWNER.user_id + 1, ADMIN, "permanent")
    clock.advance(days=2)

    lapsed = await ledger.list_lapsed_bans(start)

    assert [action.id for action in lapsed] == [short.id]
