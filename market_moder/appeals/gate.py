from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta
from typing import Optional

import structlog

from .. import events
from ..config import ModerationSettings
from ..errors import (
    AlreadyResolved,
    Conflict,
    ConflictReason,
    NotFound,
    Unauthorized,
    ValidationError,
)
from ..ledger.ledger import ModerationActionLedger
from ..models import Actor, Appeal, AppealStatus, ModerationAction
from ..storage.base import StorageGateway
from ..utils.clock import Clock, utc_now

logger = structlog.get_logger(__name__)

MAX_APPEAL_LENGTH = 500
MAX_RESPONSE_LENGTH = 1000
APPROVAL_REASON = "appeal approved"


class AppealGate:
    """Appeal window for bans and the admin decision that closes an appeal.

    Approving an appeal lifts the ban it targets through the ledger inside the
    same store transaction as the appeal update, so the unban row and the
    resolution land together or not at all.
    """

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

    @property
    def deadline(self) -> timedelta:
        return timedelta(days=self._settings.appeal_deadline_days)

    def deadline_for(self, action: ModerationAction) -> datetime:
        return action.created_at + self.deadline

    def can_appeal(self, action: ModerationAction) -> bool:
        return action.is_ban() and self._clock() <= self.deadline_for(action)

    async def submit(self, action_id: int, user_id: int, text: str) -> Appeal:
        action = await self._ledger.get_action(action_id)
        if action.target_user_id != user_id:
            logger.info("appeal_rejected_not_target", action_id=action_id, user_id=user_id)
            raise Unauthorized("Only the banned user can appeal this action", user_id=user_id)
        if not action.is_ban():
            raise ValidationError("Only bans can be appealed", action_type=action.action_type.value)
        cleaned = (text or "").strip()
        if not cleaned:
            raise ValidationError("Appeal text is required")
        if len(cleaned) > MAX_APPEAL_LENGTH:
            raise ValidationError(f"Appeal text cannot exceed {MAX_APPEAL_LENGTH} characters")
        if not self.can_appeal(action):
            logger.info("appeal_rejected_deadline", action_id=action_id, user_id=user_id)
            raise Conflict(
                ConflictReason.DEADLINE_PASSED,
                "Appeal window has closed",
                action_id=action_id,
                deadline=self.deadline_for(action),
            )

        stored = await self._storage.insert_appeal(
            Appeal(
                id=0,
                moderation_action_id=action_id,
                user_id=user_id,
                text=cleaned,
                created_at=self._clock(),
            )
        )
        if stored is None:
            logger.info("appeal_rejected_duplicate", action_id=action_id, user_id=user_id)
            raise Conflict(
                ConflictReason.DUPLICATE_OPEN_APPEAL,
                "An appeal for this action is already open",
                action_id=action_id,
            )
        logger.info("appeal_submitted", appeal_id=stored.id, action_id=action_id, user_id=user_id)
        return stored

    async def resolve(
        self,
        appeal_id: int,
        approve: bool,
        admin: Actor,
        response: Optional[str] = None,
    ) -> Appeal:
        if not admin.privileged:
            logger.info("appeal_resolve_rejected_not_admin", appeal_id=appeal_id, user_id=admin.user_id)
            raise Unauthorized("Only administrators can resolve appeals", user_id=admin.user_id)
        if response is not None and len(response) > MAX_RESPONSE_LENGTH:
            raise ValidationError(f"Response cannot exceed {MAX_RESPONSE_LENGTH} characters")

        unban_id: Optional[int] = None
        async with self._storage.transaction():
            appeal = await self.get(appeal_id)
            if appeal.status != AppealStatus.OPEN:
                raise AlreadyResolved(appeal_id, appeal.status.value)
            if approve:
                active = await self._ledger.get_active_ban(appeal.user_id)
                # Only lift the ban under appeal; a newer ban stands on its own.
                if active is not None and active.id == appeal.moderation_action_id:
                    unban = await self._ledger.unban(appeal.user_id, admin, APPROVAL_REASON)
                    unban_id = unban.id
            resolved = replace(
                appeal,
                status=AppealStatus.APPROVED if approve else AppealStatus.DENIED,
                resolved_at=self._clock(),
                resolved_by=admin.user_id,
                admin_response=response,
            )
            if not await self._storage.compare_and_set_appeal(resolved, expected_status=AppealStatus.OPEN):
                raise AlreadyResolved(appeal_id, "unknown")
            await self._storage.enqueue_events([events.appeal_resolved(resolved, unban_id)])

        logger.info(
            "appeal_resolved",
            appeal_id=appeal_id,
            approved=approve,
            admin_id=admin.user_id,
            unban_action_id=unban_id,
        )
        return resolved

    async def get(self, appeal_id: int) -> Appeal:
        appeal = await self._storage.get_appeal(appeal_id)
        if appeal is None:
            raise NotFound("Appeal", appeal_id)
        return appeal

    async def get_open(self, limit: int = 50) -> list[Appeal]:
        return await self._storage.list_appeals_by_status(AppealStatus.OPEN, limit)

    async def get_for_user(self, user_id: int) -> list[Appeal]:
        return await self._storage.list_appeals_for_user(user_id)
