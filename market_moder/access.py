from __future__ import annotations

from typing import Iterable, Optional

import structlog

from .errors import Unauthorized
from .models import Actor
from .storage.base import AdminRepository
from .utils.clock import Clock, utc_now

logger = structlog.get_logger(__name__)


class AdminDirectory:
    """Role lookup against the persisted set of admin principals."""

    def __init__(self, storage: AdminRepository, *, clock: Clock = utc_now) -> None:
        self._storage = storage
        self._clock = clock

    async def seed(self, user_ids: Iterable[int]) -> int:
        added = 0
        for user_id in user_ids:
            if await self._storage.add_admin(user_id, None, self._clock()):
                added += 1
        logger.info("admin_directory_seeded", added=added)
        return added

    async def is_admin(self, user_id: int) -> bool:
        return await self._storage.is_admin(user_id)

    async def resolve_actor(self, user_id: int) -> Actor:
        return Actor(user_id=user_id, is_admin=await self._storage.is_admin(user_id))

    async def grant(self, user_id: int, granted_by: Actor) -> bool:
        self._require_admin(granted_by)
        added = await self._storage.add_admin(user_id, granted_by.user_id, self._clock())
        logger.info("admin_granted", user_id=user_id, granted_by=granted_by.user_id, added=added)
        return added

    async def revoke(self, user_id: int, revoked_by: Actor) -> bool:
        self._require_admin(revoked_by)
        if user_id == revoked_by.user_id:
            raise Unauthorized("Admins cannot revoke their own role", user_id=user_id)
        removed = await self._storage.remove_admin(user_id)
        logger.info("admin_revoked", user_id=user_id, revoked_by=revoked_by.user_id, removed=removed)
        return removed

    async def list_admins(self) -> list[int]:
        return await self._storage.list_admins()

    @staticmethod
    def _require_admin(actor: Optional[Actor]) -> None:
        if actor is None or not actor.privileged:
            raise Unauthorized("Administrator role required")
