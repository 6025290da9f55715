from __future__ import annotations

from dataclasses import replace
from datetime import timedelta
from typing import Optional

import structlog

from .. import events
from ..config import ModerationSettings
from ..errors import (
    AlreadyReviewed,
    Conflict,
    ConflictReason,
    DuplicateFlag,
    NotFound,
    SelfFlag,
    Unauthorized,
    ValidationError,
)
from ..ledger.ledger import ModerationActionLedger
from ..models import Actor, Flag, FlagReason, FlagStatus
from ..storage.base import StorageGateway
from ..utils.clock import Clock, utc_now

logger = structlog.get_logger(__name__)

MAX_DESCRIPTION_LENGTH = 500
MAX_NOTES_LENGTH = 1000

REVIEW_DECISIONS = (FlagStatus.UPHELD, FlagStatus.DISMISSED)


class FlagRegistry:
    """Records user reports against listings and their review outcome."""

    def __init__(
        self,
        storage: StorageGateway,
        ledger: ModerationActionLedger,
        *,
        settings: Optional[ModerationSettings] = None,
        clock: Clock = utc_now,
    ) -> None:
        self._storage = storage
        self._ledger = ledger
        self._settings = settings or ModerationSettings()
        self._clock = clock

    async def file(
        self,
        listing_id: str,
        reporter_id: int,
        reason: FlagReason | str,
        description: Optional[str] = None,
    ) -> Flag:
        reason = self._parse_reason(reason)
        description = self._clean_description(reason, description)

        listing = await self._storage.get_listing(listing_id)
        if listing is None:
            raise NotFound("Listing", listing_id)
        if listing.owner_id == reporter_id:
            logger.info("flag_rejected_self", listing_id=listing_id, reporter_id=reporter_id)
            raise SelfFlag(listing_id)
        if await self._ledger.is_banned(reporter_id):
            logger.info("flag_rejected_banned", listing_id=listing_id, reporter_id=reporter_id)
            raise Unauthorized("Banned users cannot flag listings", user_id=reporter_id)

        now = self._clock()
        window_start = now - timedelta(hours=self._settings.flag_rate_window_hours)
        recent = await self._storage.count_flags_by_reporter_since(reporter_id, window_start)
        if recent >= self._settings.flag_rate_limit:
            logger.info("flag_rejected_rate_limited", reporter_id=reporter_id, recent=recent)
            raise Conflict(
                ConflictReason.RATE_LIMITED,
                "Too many flags filed recently",
                reporter_id=reporter_id,
                limit=self._settings.flag_rate_limit,
            )

        # The unique (listing_id, reporter_id) constraint decides duplicates,
        # including two reports racing each other.
        stored = await self._storage.insert_flag(
            Flag(
                id=0,
                listing_id=listing_id,
                reporter_id=reporter_id,
                reason=reason,
                description=description,
                created_at=now,
            )
        )
        if stored is None:
            logger.info("flag_rejected_duplicate", listing_id=listing_id, reporter_id=reporter_id)
            raise DuplicateFlag(listing_id, reporter_id)
        logger.info("flag_filed", flag_id=stored.id, listing_id=listing_id, reason=reason.value)
        return stored

    async def review(
        self,
        flag_id: int,
        decision: FlagStatus | str,
        admin: Actor,
        notes: Optional[str] = None,
    ) -> Flag:
        if not admin.privileged:
            logger.info("flag_review_rejected_not_admin", flag_id=flag_id, user_id=admin.user_id)
            raise Unauthorized("Only administrators can review flags", user_id=admin.user_id)
        if decision not in REVIEW_DECISIONS:
            raise ValidationError("Decision must be upheld or dismissed", decision=str(decision))
        decision = FlagStatus(decision)
        if notes is not None and len(notes) > MAX_NOTES_LENGTH:
            raise ValidationError(f"Review notes cannot exceed {MAX_NOTES_LENGTH} characters")

        async with self._storage.transaction():
            flag = await self.get(flag_id)
            if flag.status != FlagStatus.PENDING:
                raise AlreadyReviewed(flag_id, flag.status.value)
            reviewed = replace(
                flag,
                status=decision,
                reviewed_by=admin.user_id,
                reviewed_at=self._clock(),
                review_notes=notes,
            )
            if not await self._storage.compare_and_set_flag(reviewed, expected_status=FlagStatus.PENDING):
                raise AlreadyReviewed(flag_id, "unknown")
            if decision == FlagStatus.UPHELD:
                await self._storage.enqueue_events([events.flag_upheld(reviewed)])

        logger.info(
            "flag_reviewed",
            flag_id=flag_id,
            listing_id=flag.listing_id,
            decision=decision.value,
            admin_id=admin.user_id,
        )
        return reviewed

    async def get(self, flag_id: int) -> Flag:
        flag = await self._storage.get_flag(flag_id)
        if flag is None:
            raise NotFound("Flag", flag_id)
        return flag

    async def get_pending(self, limit: int = 50) -> list[Flag]:
        return await self._storage.list_flags_by_status(FlagStatus.PENDING, limit=limit)

    async def get_urgent(self, age_threshold_hours: int = 24, limit: int = 50) -> list[Flag]:
        """Pending flags older than ``age_threshold_hours``, oldest first."""
        cutoff = self._clock() - timedelta(hours=age_threshold_hours)
        return await self._storage.list_flags_by_status(
            FlagStatus.PENDING, created_before=cutoff, limit=limit
        )

    async def get_for_listing(self, listing_id: str) -> list[Flag]:
        return await self._storage.list_flags_by_listing(listing_id)

    @staticmethod
    def _parse_reason(reason: FlagReason | str) -> FlagReason:
        try:
            return FlagReason(reason)
        except ValueError as exc:
            raise ValidationError("Unknown flag reason", reason=str(reason)) from exc

    @staticmethod
    def _clean_description(reason: FlagReason, description: Optional[str]) -> Optional[str]:
        cleaned = (description or "").strip() or None
        if reason == FlagReason.OTHER and cleaned is None:
            raise ValidationError("Description is required when reason is 'other'")
        if cleaned is not None and len(cleaned) > MAX_DESCRIPTION_LENGTH:
            raise ValidationError(f"Description cannot exceed {MAX_DESCRIPTION_LENGTH} characters")
        return cleaned
