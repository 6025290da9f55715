from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

import structlog

from ..cache import CacheInvalidator
from ..errors import InvalidTransition, NotFound, RaceLost
from ..ledger.ledger import ModerationActionLedger
from ..lifecycle.manager import ListingLifecycleManager
from ..models import (
    SYSTEM_ACTOR,
    Actor,
    CascadeReport,
    DomainEvent,
    EventKind,
    Flag,
    ListingStatus,
    ModerationAction,
)
from ..storage.base import StorageGateway
from ..utils.clock import Clock, utc_now

logger = structlog.get_logger(__name__)

EXPIRY_SWEEP_KEY = "ban_expiry_sweep"


def ban_job_key(user_id: int, ban_id: int) -> str:
    return f"ban:{user_id}:{ban_id}"


def flag_reference(flag_id: int) -> str:
    return f"flag:{flag_id}"


ARCHIVE_ON_UPHOLD = (ListingStatus.DRAFT, ListingStatus.EXPIRED)


class CascadeCoordinator:
    """Carries ledger and flag outcomes over to listing state.

    Handlers are safe to run more than once for the same trigger: listings
    already hidden are left alone and the content removal row for a flag is
    keyed by ``flag:{id}``.
    """

    def __init__(
        self,
        storage: StorageGateway,
        lifecycle: ListingLifecycleManager,
        ledger: ModerationActionLedger,
        *,
        cache: Optional[CacheInvalidator] = None,
        clock: Clock = utc_now,
        expiry_lookback: timedelta = timedelta(days=1),
    ) -> None:
        self._storage = storage
        self._lifecycle = lifecycle
        self._ledger = ledger
        self._cache = cache or CacheInvalidator()
        self._clock = clock
        self._expiry_lookback = expiry_lookback

    async def dispatch(self, event: DomainEvent) -> Optional[CascadeReport]:
        if event.kind == EventKind.USER_BANNED:
            ban_id = event.payload.get("action_id")
            return await self.on_ban(
                int(event.payload["user_id"]),
                int(ban_id) if ban_id is not None else None,
            )
        if event.kind == EventKind.FLAG_UPHELD:
            flag = await self._storage.get_flag(int(event.payload["flag_id"]))
            if flag is None:
                raise NotFound("Flag", event.payload["flag_id"])
            return await self.on_flag_upheld(flag)
        return None

    async def on_ban(self, user_id: int, ban_id: Optional[int] = None) -> CascadeReport:
        """Hide every active listing of a banned user.

        Progress is checkpointed per ban after each listing so a crash resumes
        where it stopped. The walk stops early once the ban is no longer the
        one in force, and checkpoints left by earlier bans are discarded.
        """
        active = await self._ledger.get_active_ban(user_id)
        if active is None or (ban_id is not None and active.id != ban_id):
            report = CascadeReport(trigger=ban_job_key(user_id, ban_id or 0), aborted=True)
            await self._discard_ban_checkpoints(
                user_id, keep=ban_job_key(user_id, active.id) if active else None
            )
            logger.info(
                "ban_cascade_skipped_not_in_force",
                user_id=user_id,
                ban_id=ban_id,
                active_ban_id=active.id if active else None,
            )
            return report

        job_key = ban_job_key(user_id, active.id)
        await self._discard_ban_checkpoints(user_id, keep=job_key)
        resumed_after = await self._storage.get_checkpoint(job_key)
        report = CascadeReport(trigger=job_key, resumed_after=resumed_after)
        if resumed_after:
            logger.info("ban_cascade_resumed", user_id=user_id, ban_id=active.id, after=resumed_after)

        listings = sorted(await self._lifecycle.list_for_owner(user_id), key=lambda item: item.id)
        for listing in listings:
            if resumed_after is not None and listing.id <= resumed_after:
                continue
            if listing.status == ListingStatus.HIDDEN:
                report.already_hidden.append(listing.id)
            elif listing.status == ListingStatus.ACTIVE:
                current = await self._ledger.get_active_ban(user_id)
                if current is None or current.id != active.id:
                    logger.info("ban_cascade_aborted_unbanned", user_id=user_id, ban_id=active.id, at=listing.id)
                    report.aborted = True
                    break
                await self._hide(listing.id, f"Owner {user_id} banned", report)
            await self._storage.save_checkpoint(job_key, listing.id)

        await self._storage.clear_checkpoint(job_key)
        logger.info(
            "ban_cascade_complete",
            user_id=user_id,
            ban_id=active.id,
            hidden=len(report.hidden),
            already_hidden=len(report.already_hidden),
            aborted=report.aborted,
        )
        return report

    async def on_flag_upheld(self, flag: Flag) -> CascadeReport:
        """Log the content removal and take the flagged listing out of circulation.

        Active listings are hidden. Drafts and expired listings are archived so
        the owner cannot publish or bump them back.
        """
        reference = flag_reference(flag.id)
        report = CascadeReport(trigger=reference)
        listing = await self._lifecycle.get(flag.listing_id)
        reviewer = Actor(user_id=flag.reviewed_by, is_admin=True) if flag.reviewed_by else SYSTEM_ACTOR

        if await self._ledger.find_by_reference(reference) is None:
            await self._ledger.remove_content(
                listing.id,
                reviewer,
                f"Flag upheld: {flag.reason.value}",
                listing.owner_id,
                reference=reference,
            )
        else:
            logger.debug("content_removal_already_logged", reference=reference)

        if listing.status == ListingStatus.HIDDEN:
            report.already_hidden.append(listing.id)
        elif listing.status == ListingStatus.ACTIVE:
            await self._hide(listing.id, f"Flag {flag.id} upheld", report)
        elif listing.status in ARCHIVE_ON_UPHOLD:
            await self._archive(listing.id, report)
        logger.info(
            "flag_cascade_complete",
            flag_id=flag.id,
            listing_id=listing.id,
            hidden=report.hidden,
            archived=report.archived,
        )
        return report

    async def on_ban_expiry_sweep(self) -> list[ModerationAction]:
        """Report bans that ran out since the previous sweep.

        Natural expiry needs no ledger write; the derived ban state already
        treats these users as unbanned. Only cached user state is refreshed.
        """
        now = self._clock()
        previous = await self._storage.get_checkpoint(EXPIRY_SWEEP_KEY)
        since = datetime.fromisoformat(previous) if previous else now - self._expiry_lookback
        lapsed = await self._ledger.list_lapsed_bans(since, now)
        for action in lapsed:
            logger.info(
                "ban_lapsed",
                user_id=action.target_user_id,
                action_id=action.id,
                expired_at=action.expires_at.isoformat() if action.expires_at else None,
            )
            await self._cache.user_changed(action.target_user_id)
        await self._storage.save_checkpoint(EXPIRY_SWEEP_KEY, now.isoformat())
        logger.info("ban_expiry_sweep_complete", lapsed=len(lapsed), since=since.isoformat())
        return lapsed

    async def _hide(self, listing_id: str, reason: str, report: CascadeReport) -> None:
        try:
            hidden = await self._lifecycle.hide(listing_id, SYSTEM_ACTOR, reason)
        except (RaceLost, InvalidTransition) as exc:
            # The listing moved underneath us; re-read and accept a hidden outcome.
            current = await self._lifecycle.get(listing_id)
            if current.status == ListingStatus.ACTIVE:
                raise
            logger.info("cascade_hide_skipped", listing_id=listing_id, status=current.status.value, error=str(exc))
            if current.status == ListingStatus.HIDDEN:
                report.already_hidden.append(listing_id)
            return
        report.hidden.append(hidden.id)

    async def _archive(self, listing_id: str, report: CascadeReport) -> None:
        try:
            archived = await self._lifecycle.archive(listing_id, SYSTEM_ACTOR)
        except (RaceLost, InvalidTransition) as exc:
            current = await self._lifecycle.get(listing_id)
            if current.status in ARCHIVE_ON_UPHOLD:
                raise
            logger.info("cascade_archive_skipped", listing_id=listing_id, status=current.status.value, error=str(exc))
            if current.status == ListingStatus.ACTIVE:
                await self._hide(listing_id, "Flag upheld", report)
            elif current.status == ListingStatus.HIDDEN:
                report.already_hidden.append(listing_id)
            return
        report.archived.append(archived.id)

    async def _discard_ban_checkpoints(self, user_id: int, keep: Optional[str] = None) -> None:
        # Covers keys of earlier bans and the unscoped ``ban:{user_id}`` form.
        prefix = f"ban:{user_id}"
        for key in await self._storage.list_checkpoint_keys(prefix):
            if key == keep or not (key == prefix or key.startswith(prefix + ":")):
                continue
            await self._storage.clear_checkpoint(key)
            logger.info("ban_checkpoint_discarded", user_id=user_id, job_key=key)
