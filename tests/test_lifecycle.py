from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

import pytest

from market_moder.config import LifecycleSettings
from market_moder.errors import (
    Conflict,
    ConflictReason,
    InvalidTransition,
    NotFound,
    Unauthorized,
    ValidationError,
)
from market_moder.models import SYSTEM_ACTOR, Actor, ListingStatus
from tests.factories import (
    ADMIN,
    OWNER,
    REPORTER,
    RecordingCache,
    make_components,
    make_draft,
    make_listing,
    publish_listing,
)


@pytest.mark.asyncio
async def test_create_draft_normalises_input(components) -> None:
    listing = await components.lifecycle.create_draft(OWNER, make_draft(title="  Road bike  "))

    assert listing.status == ListingStatus.DRAFT
    assert listing.title == "Road bike"
    assert listing.contact_username == "seller"
    assert listing.price_usd == Decimal("250.00")
    assert (await components.lifecycle.get(listing.id)).title == "Road bike"


@pytest.mark.asyncio
async def test_create_draft_rejects_bad_price(components) -> None:
    with pytest.raises(ValidationError) as excinfo:
        await components.lifecycle.create_draft(OWNER, make_draft(price_usd="0"))

    assert "price_usd" in excinfo.value.details["fields"]


@pytest.mark.asyncio
async def test_create_draft_rejects_too_many_images(components) -> None:
    images = [f"https://cdn.example.org/{i}.jpg" for i in range(10)]
    with pytest.raises(ValidationError):
        await components.lifecycle.create_draft(OWNER, make_draft(images=images))


@pytest.mark.asyncio
async def test_publish_sets_seven_day_expiry(components, clock) -> None:
    published = await publish_listing(components)

    assert published.status == ListingStatus.ACTIVE
    assert published.published_at == clock.now
    assert published.expires_at == clock.now + timedelta(days=7)
    assert published.version == 1


@pytest.mark.asyncio
async def test_publish_requires_owner(components) -> None:
    draft = await components.lifecycle.create_draft(OWNER, make_draft())

    with pytest.raises(Unauthorized):
        await components.lifecycle.publish(draft.id, REPORTER)


@pytest.mark.asyncio
async def test_publish_twice_is_invalid(components) -> None:
    published = await publish_listing(components)

    with pytest.raises(InvalidTransition):
        await components.lifecycle.publish(published.id, OWNER)


@pytest.mark.asyncio
async def test_twenty_first_publish_hits_limit(components) -> None:
    for _ in range(20):
        await publish_listing(components)
    extra = await components.lifecycle.create_draft(OWNER, make_draft())

    with pytest.raises(Conflict) as excinfo:
        await components.lifecycle.publish(extra.id, OWNER)

    assert excinfo.value.reason == ConflictReason.LIMIT
    assert await components.lifecycle.count_active(OWNER.user_id) == 20
    assert (await components.lifecycle.get(extra.id)).status == ListingStatus.DRAFT


@pytest.mark.asyncio
async def test_admin_owner_is_not_limited(storage, clock) -> None:
    components = make_components(storage, clock, lifecycle_settings=LifecycleSettings(max_active_listings=1))
    admin_owner = Actor(user_id=OWNER.user_id, is_admin=True)

    await publish_listing(components, admin_owner)
    await publish_listing(components, admin_owner)

    assert await components.lifecycle.count_active(OWNER.user_id) == 2


@pytest.mark.asyncio
async def test_banned_owner_cannot_publish(components) -> None:
    draft = await components.lifecycle.create_draft(OWNER, make_draft())
    await components.ledger.ban(OWNER.user_id, ADMIN, "scam", 7)

    with pytest.raises(Unauthorized):
        await components.lifecycle.publish(draft.id, OWNER)
    with pytest.raises(Unauthorized):
        await components.lifecycle.create_draft(OWNER, make_draft())


@pytest.mark.asyncio
async def test_second_bump_within_cooldown_conflicts(components, clock) -> None:
    published = await publish_listing(components)
    first = await components.lifecycle.bump(published.id, OWNER)
    clock.advance(hours=1)

    with pytest.raises(Conflict) as excinfo:
        await components.lifecycle.bump(published.id, OWNER)

    assert first.bump_count == 1
    assert excinfo.value.reason == ConflictReason.COOLDOWN
    assert excinfo.value.details["next_bump_at"] == first.bumped_at + timedelta(hours=24)


@pytest.mark.asyncio
async def test_bump_allowed_after_cooldown(components, clock) -> None:
    published = await publish_listing(components)
    await components.lifecycle.bump(published.id, OWNER)
    clock.advance(hours=24)

    bumped = await components.lifecycle.bump(published.id, OWNER)

    assert bumped.bump_count == 2
    assert bumped.expires_at == clock.now + timedelta(days=7)


@pytest.mark.asyncio
async def test_bump_reactivates_expired_listing(components, clock) -> None:
    published = await publish_listing(components)
    clock.advance(days=7)
    await components.lifecycle.run_expiration_sweep(SYSTEM_ACTOR)

    bumped = await components.lifecycle.bump(published.id, OWNER)

    assert bumped.status == ListingStatus.ACTIVE
    assert bumped.expires_at == clock.now + timedelta(days=7)


@pytest.mark.asyncio
async def test_stale_version_is_not_written(components) -> None:
    published = await publish_listing(components)
    await components.lifecycle.mark_sold(published.id, OWNER)

    written = await components.storage.compare_and_set_listing(
        published, expected_status=ListingStatus.ACTIVE, expected_version=published.version
    )

    assert written is False
    assert (await components.lifecycle.get(published.id)).status == ListingStatus.SOLD


@pytest.mark.asyncio
async def test_mark_sold_then_archive(components, clock) -> None:
    published = await publish_listing(components)

    sold = await components.lifecycle.mark_sold(published.id, OWNER)
    archived = await components.lifecycle.archive(published.id, OWNER)

    assert sold.status == ListingStatus.SOLD
    assert archived.status == ListingStatus.ARCHIVED
    assert archived.archived_at == clock.now
    with pytest.raises(InvalidTransition):
        await components.lifecycle.transition(published.id, ListingStatus.ACTIVE, OWNER)


@pytest.mark.asyncio
async def test_archive_by_other_user_needs_admin_role(components) -> None:
    draft = await components.lifecycle.create_draft(OWNER, make_draft())

    with pytest.raises(Unauthorized):
        await components.lifecycle.archive(draft.id, REPORTER)
    archived = await components.lifecycle.archive(draft.id, ADMIN)

    assert archived.status == ListingStatus.ARCHIVED


@pytest.mark.asyncio
async def test_hide_requires_admin_and_is_idempotent(components) -> None:
    published = await publish_listing(components)

    with pytest.raises(Unauthorized):
        await components.lifecycle.hide(published.id, OWNER)
    hidden = await components.lifecycle.hide(published.id, ADMIN, "policy")
    again = await components.lifecycle.hide(published.id, ADMIN, "policy")

    assert hidden.status == ListingStatus.HIDDEN
    assert again.version == hidden.version
    pending = await components.storage.fetch_pending_events(10)
    assert [event.payload["listing_id"] for event in pending] == [published.id]


@pytest.mark.asyncio
async def test_reactivate_is_admin_only(components, clock) -> None:
    published = await publish_listing(components)
    await components.lifecycle.hide(published.id, ADMIN)
    clock.advance(days=2)

    with pytest.raises(Unauthorized):
        await components.lifecycle.reactivate(published.id, OWNER)
    restored = await components.lifecycle.reactivate(published.id, ADMIN)

    assert restored.status == ListingStatus.ACTIVE
    assert restored.expires_at == clock.now + timedelta(days=7)


@pytest.mark.asyncio
async def test_reactivate_refused_while_owner_banned(components) -> None:
    published = await publish_listing(components)
    await components.lifecycle.hide(published.id, ADMIN)
    await components.ledger.ban(OWNER.user_id, ADMIN, "fraud")

    with pytest.raises(Unauthorized) as excinfo:
        await components.lifecycle.reactivate(published.id, ADMIN)

    assert excinfo.value.details["user_id"] == OWNER.user_id
    assert (await components.lifecycle.get(published.id)).status == ListingStatus.HIDDEN


@pytest.mark.asyncio
async def test_expire_is_system_only_and_respects_deadline(components, clock) -> None:
    published = await publish_listing(components)

    with pytest.raises(Unauthorized):
        await components.lifecycle.expire(published.id, ADMIN)
    with pytest.raises(InvalidTransition):
        await components.lifecycle.expire(published.id, SYSTEM_ACTOR)
    clock.advance(days=7)
    expired = await components.lifecycle.expire(published.id, SYSTEM_ACTOR)

    assert expired.status == ListingStatus.EXPIRED


@pytest.mark.asyncio
async def test_expiration_sweep_expires_and_auto_bumps(components, clock) -> None:
    plain = await publish_listing(components)
    auto = await publish_listing(components, auto_bump_enabled=True)
    fresh_clock_start = clock.now
    clock.advance(days=7)
    fresh = await publish_listing(components)

    report = await components.lifecycle.run_expiration_sweep(SYSTEM_ACTOR)

    assert report.examined == 2
    assert report.expired == [plain.id]
    assert report.auto_bumped == [auto.id]
    bumped = await components.lifecycle.get(auto.id)
    assert bumped.status == ListingStatus.ACTIVE
    assert bumped.expires_at == fresh_clock_start + timedelta(days=14)
    assert (await components.lifecycle.get(fresh.id)).status == ListingStatus.ACTIVE

    again = await components.lifecycle.run_expiration_sweep(SYSTEM_ACTOR)
    assert again.examined == 0


@pytest.mark.asyncio
async def test_auto_bump_ignores_owner_cooldown(storage, clock) -> None:
    components = make_components(storage, clock, lifecycle_settings=LifecycleSettings(bump_cooldown_hours=240))
    published = await publish_listing(components, auto_bump_enabled=True)
    await components.lifecycle.bump(published.id, OWNER)
    clock.advance(days=7)

    report = await components.lifecycle.run_expiration_sweep(SYSTEM_ACTOR)

    assert report.auto_bumped == [published.id]


@pytest.mark.asyncio
async def test_sweep_requires_system_actor(components) -> None:
    with pytest.raises(Unauthorized):
        await components.lifecycle.run_expiration_sweep(ADMIN)


@pytest.mark.asyncio
async def test_successful_writes_invalidate_cache(storage, clock) -> None:
    cache = RecordingCache()
    components = make_components(storage, clock, cache=cache)

    published = await publish_listing(components)

    assert cache.keys == [f"listing:{published.id}"]
    assert cache.patterns == ["search:*"]


@pytest.mark.asyncio
async def test_unknown_listing_is_not_found(components) -> None:
    with pytest.raises(NotFound):
        await components.lifecycle.get("missing")


@pytest.mark.asyncio
async def test_list_for_owner_filters_status(components) -> None:
    published = await publish_listing(components)
    await components.storage.insert_listing(make_listing(status=ListingStatus.SOLD))

    active = await components.lifecycle.list_for_owner(OWNER.user_id, ListingStatus.ACTIVE)
    everything = await components.lifecycle.list_for_owner(OWNER.user_id)

    assert [item.id for item in active] == [published.id]
    assert len(everything) == 2
