from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Iterable, Optional
from uuid import uuid4

import structlog

from .. import events
from ..cache import CacheInvalidator
from ..config import LifecycleSettings
from ..content_filter import ContentFilter
from ..errors import (
    Conflict,
    ConflictReason,
    InvalidTransition,
    NotFound,
    RaceLost,
    Unauthorized,
)
from ..ledger.ledger import ModerationActionLedger
from ..models import Actor, DomainEvent, Listing, ListingStatus, SweepReport
from ..storage.base import StorageGateway
from ..utils.clock import Clock, utc_now
from .schemas import ListingDraft, parse_draft
from .transitions import ensure_transition

logger = structlog.get_logger(__name__)

ListingRef = Listing | str

BUMPABLE = (ListingStatus.ACTIVE, ListingStatus.EXPIRED)


class ListingLifecycleManager:
    """Owns the listing status graph.

    Every write is a compare-and-swap on the stored (status, version) pair, so
    a caller working from a stale read gets ``RaceLost`` instead of silently
    overwriting a concurrent change. Successful writes invalidate the listing
    and search caches afterwards, best-effort.
    """

    def __init__(
        self,
        storage: StorageGateway,
        ledger: ModerationActionLedger,
        *,
        settings: Optional[LifecycleSettings] = None,
        cache: Optional[CacheInvalidator] = None,
        content_filter: Optional[ContentFilter] = None,
        clock: Clock = utc_now,
    ) -> None:
        self._storage = storage
        self._ledger = ledger
        self._settings = settings or LifecycleSettings()
        self._cache = cache or CacheInvalidator()
        self._filter = content_filter or ContentFilter(storage, clock=clock)
        self._clock = clock

    @property
    def expiration(self) -> timedelta:
        return timedelta(days=self._settings.expiration_days)

    @property
    def bump_cooldown(self) -> timedelta:
        return timedelta(hours=self._settings.bump_cooldown_hours)

    async def create_draft(self, owner: Actor, draft: ListingDraft | dict[str, Any]) -> Listing:
        content = parse_draft(draft)
        if await self._ledger.is_banned(owner.user_id):
            raise Unauthorized("Banned users cannot create listings", user_id=owner.user_id)
        await self._filter.ensure_clean(title=content.title, description=content.description)
        now = self._clock()
        listing = Listing(
            id=str(uuid4()),
            owner_id=owner.user_id,
            category_id=content.category_id,
            title=content.title,
            description=content.description,
            price_usd=content.price_usd,
            images=list(content.images),
            contact_username=content.contact_username,
            auto_bump_enabled=content.auto_bump_enabled,
            created_at=now,
            expires_at=now + self.expiration,
        )
        await self._storage.insert_listing(listing)
        logger.info("listing_draft_created", listing_id=listing.id, owner_id=owner.user_id)
        return listing

    async def get(self, listing_id: str) -> Listing:
        listing = await self._storage.get_listing(listing_id)
        if listing is None:
            raise NotFound("Listing", listing_id)
        return listing

    async def list_for_owner(self, owner_id: int, status: Optional[ListingStatus] = None) -> list[Listing]:
        return await self._storage.list_listings_by_owner(owner_id, status)

    async def count_active(self, owner_id: int) -> int:
        return await self._storage.count_listings_by_owner(owner_id, ListingStatus.ACTIVE)

    def next_bump_at(self, listing: Listing) -> Optional[datetime]:
        if listing.bumped_at is None:
            return None
        return listing.bumped_at + self.bump_cooldown

    async def transition(self, listing: ListingRef, target: ListingStatus, actor: Actor) -> Listing:
        """Move ``listing`` to ``target`` through the operation that owns that edge."""
        current = await self._load(listing)
        ensure_transition(current.status, target, listing_id=current.id)
        if target == ListingStatus.ACTIVE:
            if current.status == ListingStatus.DRAFT:
                return await self.publish(current, actor)
            if current.status == ListingStatus.EXPIRED:
                return await self.bump(current, actor)
            return await self.reactivate(current, actor)
        if target == ListingStatus.EXPIRED:
            return await self.expire(current, actor)
        if target == ListingStatus.SOLD:
            return await self.mark_sold(current, actor)
        if target == ListingStatus.ARCHIVED:
            return await self.archive(current, actor)
        return await self.hide(current, actor)

    async def publish(self, listing: ListingRef, actor: Actor) -> Listing:
        current = await self._load(listing)
        self._require_owner(current, actor, "publish")
        if current.status != ListingStatus.DRAFT:
            raise InvalidTransition(current.status.value, ListingStatus.ACTIVE.value, listing_id=current.id)
        if await self._ledger.is_banned(current.owner_id):
            logger.info("publish_rejected_banned", listing_id=current.id, owner_id=current.owner_id)
            raise Unauthorized("Banned users cannot publish listings", user_id=current.owner_id)
        await self._filter.ensure_clean(title=current.title, description=current.description)

        now = self._clock()
        updated = replace(
            current,
            status=ListingStatus.ACTIVE,
            published_at=now,
            expires_at=now + self.expiration,
            version=current.version + 1,
        )
        async with self._storage.transaction():
            if not actor.is_admin:
                active = await self.count_active(current.owner_id)
                if active >= self._settings.max_active_listings:
                    logger.info("publish_rejected_limit", listing_id=current.id, active=active)
                    raise Conflict(
                        ConflictReason.LIMIT,
                        f"Active listing limit of {self._settings.max_active_listings} reached",
                        owner_id=current.owner_id,
                        active=active,
                    )
            await self._write(current, updated)
        await self._cache.listing_changed(current.id)
        logger.info("listing_published", listing_id=current.id, expires_at=updated.expires_at.isoformat())
        return updated

    async def bump(self, listing: ListingRef, actor: Actor) -> Listing:
        current = await self._load(listing)
        if not actor.is_system:
            self._require_owner(current, actor, "bump")
        if current.status not in BUMPABLE:
            raise InvalidTransition(current.status.value, ListingStatus.ACTIVE.value, listing_id=current.id)

        now = self._clock()
        if not actor.is_system:
            if await self._ledger.is_banned(current.owner_id):
                raise Unauthorized("Banned users cannot bump listings", user_id=current.owner_id)
            next_bump = self.next_bump_at(current)
            if next_bump is not None and now < next_bump:
                logger.info("bump_rejected_cooldown", listing_id=current.id, next_bump_at=next_bump.isoformat())
                raise Conflict(
                    ConflictReason.COOLDOWN,
                    "Cannot bump listing yet",
                    listing_id=current.id,
                    next_bump_at=next_bump,
                )

        updated = replace(
            current,
            status=ListingStatus.ACTIVE,
            bumped_at=now,
            expires_at=now + self.expiration,
            bump_count=current.bump_count + 1,
            version=current.version + 1,
        )
        await self._commit(current, updated)
        logger.info(
            "listing_bumped",
            listing_id=current.id,
            reactivated=current.status == ListingStatus.EXPIRED,
            system=actor.is_system,
        )
        return updated

    async def mark_sold(self, listing: ListingRef, actor: Actor) -> Listing:
        current = await self._load(listing)
        self._require_owner(current, actor, "mark as sold")
        ensure_transition(current.status, ListingStatus.SOLD, listing_id=current.id)
        updated = replace(current, status=ListingStatus.SOLD, version=current.version + 1)
        await self._commit(current, updated)
        logger.info("listing_sold", listing_id=current.id)
        return updated

    async def archive(self, listing: ListingRef, actor: Actor) -> Listing:
        current = await self._load(listing)
        if not actor.privileged:
            self._require_owner(current, actor, "archive")
        ensure_transition(current.status, ListingStatus.ARCHIVED, listing_id=current.id)
        updated = replace(
            current,
            status=ListingStatus.ARCHIVED,
            archived_at=self._clock(),
            version=current.version + 1,
        )
        await self._commit(current, updated)
        logger.info(
            "listing_archived",
            listing_id=current.id,
            previous=current.status.value,
            actor_id=actor.user_id,
        )
        return updated

    async def hide(self, listing: ListingRef, actor: Actor, reason: str = "Hidden by moderation") -> Listing:
        current = await self._load(listing)
        if not actor.privileged:
            raise Unauthorized("Only administrators can hide listings", user_id=actor.user_id)
        if current.status == ListingStatus.HIDDEN:
            logger.debug("listing_already_hidden", listing_id=current.id)
            return current
        ensure_transition(current.status, ListingStatus.HIDDEN, listing_id=current.id)
        now = self._clock()
        updated = replace(current, status=ListingStatus.HIDDEN, version=current.version + 1)
        await self._commit(current, updated, [events.listing_hidden(updated, actor.user_id, reason, now)])
        logger.info("listing_hidden", listing_id=current.id, actor_id=actor.user_id, reason=reason)
        return updated

    async def reactivate(self, listing: ListingRef, actor: Actor) -> Listing:
        current = await self._load(listing)
        if not actor.privileged:
            raise Unauthorized("Only administrators can reactivate hidden listings", user_id=actor.user_id)
        if current.status != ListingStatus.HIDDEN:
            raise InvalidTransition(current.status.value, ListingStatus.ACTIVE.value, listing_id=current.id)
        if await self._ledger.is_banned(current.owner_id):
            raise Unauthorized("Banned users' listings cannot be reactivated", user_id=current.owner_id)
        now = self._clock()
        updated = replace(
            current,
            status=ListingStatus.ACTIVE,
            published_at=current.published_at or now,
            expires_at=now + self.expiration,
            version=current.version + 1,
        )
        await self._commit(current, updated)
        logger.info("listing_reactivated", listing_id=current.id, admin_id=actor.user_id)
        return updated

    async def expire(self, listing: ListingRef, actor: Actor) -> Listing:
        current = await self._load(listing)
        if not actor.is_system:
            raise Unauthorized("Listings expire through the expiration sweep only", user_id=actor.user_id)
        ensure_transition(current.status, ListingStatus.EXPIRED, listing_id=current.id)
        if current.expires_at > self._clock():
            raise InvalidTransition(
                current.status.value,
                ListingStatus.EXPIRED.value,
                listing_id=current.id,
                expires_at=current.expires_at,
            )
        updated = replace(current, status=ListingStatus.EXPIRED, version=current.version + 1)
        await self._commit(current, updated)
        logger.info("listing_expired", listing_id=current.id)
        return updated

    async def run_expiration_sweep(self, actor: Actor, *, limit: int = 200) -> SweepReport:
        """Expire or auto-bump every active listing whose term has run out.

        Safe to run concurrently or twice: each listing is re-validated and
        written with a conditional update, and a lost race is counted as
        skipped rather than failing the sweep.
        """
        if not actor.is_system:
            raise Unauthorized("Only the system can run the expiration sweep", user_id=actor.user_id)
        report = SweepReport()
        due = await self._storage.list_expiring_listings(self._clock(), limit)
        for listing in due:
            report.examined += 1
            try:
                if listing.auto_bump_enabled:
                    await self.bump(listing, actor)
                    report.auto_bumped.append(listing.id)
                else:
                    await self.expire(listing, actor)
                    report.expired.append(listing.id)
            except (RaceLost, InvalidTransition) as exc:
                logger.info("sweep_listing_skipped", listing_id=listing.id, error=str(exc))
                report.skipped.append(listing.id)
        logger.info(
            "expiration_sweep_complete",
            examined=report.examined,
            expired=len(report.expired),
            auto_bumped=len(report.auto_bumped),
            skipped=len(report.skipped),
        )
        return report

    async def _load(self, listing: ListingRef) -> Listing:
        # Always re-read so checks run against the stored row, not a caller's copy.
        listing_id = listing.id if isinstance(listing, Listing) else listing
        return await self.get(listing_id)

    async def _write(self, current: Listing, updated: Listing, pending: Iterable[DomainEvent] = ()) -> None:
        ok = await self._storage.compare_and_set_listing(
            updated,
            expected_status=current.status,
            expected_version=current.version,
        )
        if not ok:
            raise RaceLost("Listing", current.id)
        pending = list(pending)
        if pending:
            await self._storage.enqueue_events(pending)

    async def _commit(self, current: Listing, updated: Listing, pending: Iterable[DomainEvent] = ()) -> None:
        async with self._storage.transaction():
            await self._write(current, updated, pending)
        await self._cache.listing_changed(current.id)

    @staticmethod
    def _require_owner(listing: Listing, actor: Actor, operation: str) -> None:
        if not actor.owns(listing):
            logger.info("listing_rejected_not_owner", listing_id=listing.id, actor_id=actor.user_id)
            raise Unauthorized(f"Only the owner can {operation} this listing", user_id=actor.user_id)
