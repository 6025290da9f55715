from __future__ import annotations

from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional, TypeVar

import structlog
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .. import events
from ..cache import CacheInvalidator
from ..config import ModerationSettings
from ..errors import (
    Conflict,
    ConflictReason,
    NotFound,
    RaceLost,
    TransientStoreError,
    Unauthorized,
    ValidationError,
)
from ..models import (
    Actor,
    EscalationStep,
    ModerationAction,
    ModerationActionType,
    UserModerationHistory,
)
from ..storage.base import StorageGateway
from ..utils.clock import Clock, utc_now
from .escalation import get_escalation_path
from .state import derive_active_ban, derive_ban_pointer

logger = structlog.get_logger(__name__)

T = TypeVar("T")

MAX_REASON_LENGTH = 1000

VIOLATION_TYPES = (
    ModerationActionType.WARNING,
    ModerationActionType.BAN,
    ModerationActionType.CONTENT_REMOVAL,
)


class ModerationActionLedger:
    """Append-only log of admin actions and the ban state derived from it.

    Rows are never updated. The user's current ban is read through a per-user
    ban pointer that is written in the same transaction as every ban and
    unban; ``reconstruct_active_ban`` re-derives the same answer from the raw
    history.
    """

    def __init__(
        self,
        storage: StorageGateway,
        *,
        settings: Optional[ModerationSettings] = None,
        cache: Optional[CacheInvalidator] = None,
        clock: Clock = utc_now,
    ) -> None:
        self._storage = storage
        self._settings = settings or ModerationSettings()
        self._cache = cache or CacheInvalidator()
        self._clock = clock

    async def ban(
        self,
        target_user_id: int,
        admin: Actor,
        reason: str,
        duration_days: Optional[int] = None,
        *,
        target_listing_id: Optional[str] = None,
    ) -> ModerationAction:
        self._require_admin(admin, "ban")
        reason = self._clean_reason(reason)
        if duration_days is not None and not 1 <= duration_days <= self._settings.max_ban_days:
            raise ValidationError(
                f"Ban duration must be between 1 and {self._settings.max_ban_days} days",
                duration_days=duration_days,
            )

        async def attempt() -> ModerationAction:
            async with self._storage.transaction():
                now = self._clock()
                pointer = await self._storage.get_ban_pointer(target_user_id)
                active = await self._ban_in_force(pointer, now)
                if active is not None:
                    logger.info("ban_rejected_already_banned", user_id=target_user_id, ban_id=active.id)
                    raise Conflict(
                        ConflictReason.ALREADY_BANNED,
                        "User is already banned",
                        user_id=target_user_id,
                        ban_id=active.id,
                    )
                action = ModerationAction(
                    id=0,
                    target_user_id=target_user_id,
                    target_listing_id=target_listing_id,
                    admin_id=admin.user_id,
                    action_type=ModerationActionType.BAN,
                    reason=reason,
                    created_at=now,
                    expires_at=now + timedelta(days=duration_days) if duration_days else None,
                )
                stored = await self._storage.append_ban(action, expected_pointer=pointer)
                if stored is None:
                    raise RaceLost("ban", target_user_id)
                await self._storage.enqueue_events([events.user_banned(stored)])
                return stored

        stored = await self._retrying("ban", attempt)
        await self._cache.user_changed(target_user_id)
        logger.info(
            "user_banned",
            user_id=target_user_id,
            admin_id=admin.user_id,
            action_id=stored.id,
            duration_days=duration_days,
        )
        return stored

    async def unban(self, target_user_id: int, admin: Actor, reason: str) -> ModerationAction:
        self._require_admin(admin, "unban")
        reason = self._clean_reason(reason)

        async def attempt() -> ModerationAction:
            async with self._storage.transaction():
                now = self._clock()
                pointer = await self._storage.get_ban_pointer(target_user_id)
                active = await self._ban_in_force(pointer, now)
                if active is None:
                    logger.info("unban_rejected_not_banned", user_id=target_user_id)
                    raise Conflict(
                        ConflictReason.NOT_BANNED,
                        "User is not currently banned",
                        user_id=target_user_id,
                    )
                action = ModerationAction(
                    id=0,
                    target_user_id=target_user_id,
                    admin_id=admin.user_id,
                    action_type=ModerationActionType.UNBAN,
                    reason=reason,
                    created_at=now,
                )
                stored = await self._storage.append_unban(action, expected_pointer=active.id)
                if stored is None:
                    raise RaceLost("unban", target_user_id)
                await self._storage.enqueue_events([events.user_unbanned(stored, active.id)])
                return stored

        stored = await self._retrying("unban", attempt)
        await self._cache.user_changed(target_user_id)
        logger.info("user_unbanned", user_id=target_user_id, admin_id=admin.user_id, action_id=stored.id)
        return stored

    async def warn(
        self,
        target_user_id: int,
        admin: Actor,
        reason: str,
        target_listing_id: Optional[str] = None,
    ) -> ModerationAction:
        self._require_admin(admin, "warn")
        action = ModerationAction(
            id=0,
            target_user_id=target_user_id,
            target_listing_id=target_listing_id,
            admin_id=admin.user_id,
            action_type=ModerationActionType.WARNING,
            reason=self._clean_reason(reason),
            created_at=self._clock(),
        )
        stored = await self._retrying("warn", lambda: self._storage.append_action(action))
        logger.info("user_warned", user_id=target_user_id, admin_id=admin.user_id, action_id=stored.id)
        return stored

    async def remove_content(
        self,
        target_listing_id: str,
        admin: Actor,
        reason: str,
        target_user_id: int,
        *,
        reference: Optional[str] = None,
    ) -> ModerationAction:
        self._require_admin(admin, "remove_content")
        if not target_listing_id:
            raise ValidationError("Target listing is required for content removal actions")
        action = ModerationAction(
            id=0,
            target_user_id=target_user_id,
            target_listing_id=target_listing_id,
            admin_id=admin.user_id,
            action_type=ModerationActionType.CONTENT_REMOVAL,
            reason=self._clean_reason(reason),
            created_at=self._clock(),
            reference=reference,
        )
        stored = await self._storage.append_action(action)
        logger.info(
            "content_removal_logged",
            listing_id=target_listing_id,
            user_id=target_user_id,
            action_id=stored.id,
            reference=reference,
        )
        return stored

    async def get_active_ban(self, user_id: int) -> Optional[ModerationAction]:
        pointer = await self._storage.get_ban_pointer(user_id)
        return await self._ban_in_force(pointer, self._clock())

    async def is_banned(self, user_id: int) -> bool:
        return await self.get_active_ban(user_id) is not None

    async def reconstruct_active_ban(self, user_id: int) -> Optional[ModerationAction]:
        history = await self._storage.list_actions_for_user(
            user_id, (ModerationActionType.BAN, ModerationActionType.UNBAN)
        )
        return derive_active_ban(history, self._clock())

    async def rebuild_ban_index(self, user_id: int) -> Optional[int]:
        async with self._storage.transaction():
            history = await self._storage.list_actions_for_user(
                user_id, (ModerationActionType.BAN, ModerationActionType.UNBAN)
            )
            pointer = derive_ban_pointer(history)
            previous = await self._storage.get_ban_pointer(user_id)
            await self._storage.set_ban_pointer(user_id, pointer)
        if previous != pointer:
            logger.warning("ban_index_repaired", user_id=user_id, previous=previous, current=pointer)
        return pointer

    async def get_action(self, action_id: int) -> ModerationAction:
        action = await self._storage.get_action(action_id)
        if action is None:
            raise NotFound("Moderation action", action_id)
        return action

    async def get_user_actions(self, user_id: int) -> list[ModerationAction]:
        return await self._storage.list_actions_for_user(user_id)

    async def find_by_reference(self, reference: str) -> Optional[ModerationAction]:
        return await self._storage.find_action_by_reference(reference)

    async def get_user_history(self, user_id: int) -> UserModerationHistory:
        actions = await self._storage.list_actions_for_user(user_id)
        by_type = {action_type: 0 for action_type in ModerationActionType}
        for action in actions:
            by_type[action.action_type] += 1
        return UserModerationHistory(
            user_id=user_id,
            total_actions=len(actions),
            warnings=by_type[ModerationActionType.WARNING],
            bans=by_type[ModerationActionType.BAN],
            unbans=by_type[ModerationActionType.UNBAN],
            content_removals=by_type[ModerationActionType.CONTENT_REMOVAL],
            currently_banned=await self.is_banned(user_id),
            last_action=actions[0] if actions else None,
        )

    async def list_lapsed_bans(self, since: datetime, until: Optional[datetime] = None) -> list[ModerationAction]:
        return await self._storage.list_bans_lapsing_between(since, until or self._clock())

    def get_escalation_path(self, violation_count: int) -> EscalationStep:
        return get_escalation_path(violation_count)

    async def recommend_next_step(self, user_id: int) -> EscalationStep:
        violations = await self._storage.list_actions_for_user(user_id, VIOLATION_TYPES)
        return get_escalation_path(len(violations) + 1)

    async def _ban_in_force(self, pointer: Optional[int], now: datetime) -> Optional[ModerationAction]:
        if pointer is None:
            return None
        action = await self._storage.get_action(pointer)
        if action is None or not action.in_force_at(now):
            return None
        return action

    async def _retrying(self, operation: str, func: Callable[[], Awaitable[T]]) -> T:
        retry = AsyncRetrying(
            wait=wait_exponential(multiplier=0.05, min=0.05, max=0.5),
            stop=stop_after_attempt(2),
            retry=retry_if_exception_type(TransientStoreError),
            reraise=True,
        )
        async for attempt in retry:
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.warning("ledger_write_retry", operation=operation)
                return await func()
        raise TransientStoreError(f"{operation} retries exhausted", operation=operation)

    def _clean_reason(self, reason: str) -> str:
        cleaned = (reason or "").strip()
        if not cleaned:
            raise ValidationError("Reason is required")
        if len(cleaned) > MAX_REASON_LENGTH:
            raise ValidationError(f"Reason cannot exceed {MAX_REASON_LENGTH} characters")
        return cleaned

    @staticmethod
    def _require_admin(actor: Actor, operation: str) -> None:
        if not actor.privileged:
            logger.info("ledger_rejected_not_admin", operation=operation, user_id=actor.user_id)
            raise Unauthorized(f"Only administrators can {operation.replace('_', ' ')}", user_id=actor.user_id)
