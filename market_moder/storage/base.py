from __future__ import annotations

import abc
from contextlib import AbstractAsyncContextManager
from datetime import datetime
from typing import Iterable, Optional

from ..models import (
    Appeal,
    AppealStatus,
    BlockedWord,
    DomainEvent,
    Flag,
    FlagStatus,
    Listing,
    ListingStatus,
    ModerationAction,
    ModerationActionType,
)


class ListingRepository(abc.ABC):
    @abc.abstractmethod
    async def get_listing(self, listing_id: str) -> Optional[Listing]:
        ...

    @abc.abstractmethod
    async def insert_listing(self, listing: Listing) -> None:
        ...

    @abc.abstractmethod
    async def compare_and_set_listing(
        self,
        listing: Listing,
        *,
        expected_status: ListingStatus,
        expected_version: int,
    ) -> bool:
        """Persist ``listing`` only if the stored row still has the expected status and version."""

    @abc.abstractmethod
    async def list_listings_by_owner(
        self, owner_id: int, status: Optional[ListingStatus] = None
    ) -> list[Listing]:
        ...

    @abc.abstractmethod
    async def count_listings_by_owner(self, owner_id: int, status: ListingStatus) -> int:
        ...

    @abc.abstractmethod
    async def list_expiring_listings(self, cutoff: datetime, limit: int) -> list[Listing]:
        """Active listings with ``expires_at <= cutoff``, soonest first."""


class FlagRepository(abc.ABC):
    @abc.abstractmethod
    async def get_flag(self, flag_id: int) -> Optional[Flag]:
        ...

    @abc.abstractmethod
    async def insert_flag(self, flag: Flag) -> Optional[Flag]:
        """Insert and return the stored flag, or None if (listing, reporter) already exists."""

    @abc.abstractmethod
    async def compare_and_set_flag(self, flag: Flag, *, expected_status: FlagStatus) -> bool:
        ...

    @abc.abstractmethod
    async def list_flags_by_status(
        self,
        status: FlagStatus,
        *,
        created_before: Optional[datetime] = None,
        limit: int = 50,
    ) -> list[Flag]:
        """Flags with ``status`` ordered oldest first."""

    @abc.abstractmethod
    async def list_flags_by_listing(self, listing_id: str) -> list[Flag]:
        ...

    @abc.abstractmethod
    async def count_flags_by_reporter_since(self, reporter_id: int, since: datetime) -> int:
        ...


class ModerationActionRepository(abc.ABC):
    @abc.abstractmethod
    async def get_action(self, action_id: int) -> Optional[ModerationAction]:
        ...

    @abc.abstractmethod
    async def append_action(self, action: ModerationAction) -> ModerationAction:
        """Append a row. A repeated ``reference`` returns the row already stored."""

    @abc.abstractmethod
    async def append_ban(
        self, action: ModerationAction, *, expected_pointer: Optional[int]
    ) -> Optional[ModerationAction]:
        """Append a ban and move the user's ban pointer to it.

        Returns None when the pointer no longer matches ``expected_pointer``.
        """

    @abc.abstractmethod
    async def append_unban(
        self, action: ModerationAction, *, expected_pointer: int
    ) -> Optional[ModerationAction]:
        ...

    @abc.abstractmethod
    async def get_ban_pointer(self, user_id: int) -> Optional[int]:
        ...

    @abc.abstractmethod
    async def set_ban_pointer(self, user_id: int, action_id: Optional[int]) -> None:
        ...

    @abc.abstractmethod
    async def list_actions_for_user(
        self,
        user_id: int,
        action_types: Optional[Iterable[ModerationActionType]] = None,
    ) -> list[ModerationAction]:
        """Newest first, ordered by (created_at, id)."""

    @abc.abstractmethod
    async def find_action_by_reference(self, reference: str) -> Optional[ModerationAction]:
        ...

    @abc.abstractmethod
    async def list_bans_lapsing_between(self, start: datetime, end: datetime) -> list[ModerationAction]:
        """Bans with ``start < expires_at <= end``."""


class AppealRepository(abc.ABC):
    @abc.abstractmethod
    async def get_appeal(self, appeal_id: int) -> Optional[Appeal]:
        ...

    @abc.abstractmethod
    async def insert_appeal(self, appeal: Appeal) -> Optional[Appeal]:
        """Insert, or return None if the action already has an open appeal."""

    @abc.abstractmethod
    async def find_open_appeal(self, moderation_action_id: int) -> Optional[Appeal]:
        ...

    @abc.abstractmethod
    async def compare_and_set_appeal(self, appeal: Appeal, *, expected_status: AppealStatus) -> bool:
        ...

    @abc.abstractmethod
    async def list_appeals_by_status(self, status: AppealStatus, limit: int = 50) -> list[Appeal]:
        ...

    @abc.abstractmethod
    async def list_appeals_for_user(self, user_id: int) -> list[Appeal]:
        ...


class AdminRepository(abc.ABC):
    @abc.abstractmethod
    async def is_admin(self, user_id: int) -> bool:
        ...

    @abc.abstractmethod
    async def add_admin(self, user_id: int, granted_by: Optional[int], granted_at: datetime) -> bool:
        ...

    @abc.abstractmethod
    async def remove_admin(self, user_id: int) -> bool:
        ...

    @abc.abstractmethod
    async def list_admins(self) -> list[int]:
        ...


class OutboxRepository(abc.ABC):
    @abc.abstractmethod
    async def enqueue_events(self, events: Iterable[DomainEvent]) -> None:
        ...

    @abc.abstractmethod
    async def fetch_pending_events(self, limit: int) -> list[DomainEvent]:
        ...

    @abc.abstractmethod
    async def mark_event_done(self, event_id: int) -> None:
        ...

    @abc.abstractmethod
    async def mark_event_failed(self, event_id: int, error: str, *, dead: bool) -> None:
        ...


class CheckpointRepository(abc.ABC):
    @abc.abstractmethod
    async def get_checkpoint(self, job_key: str) -> Optional[str]:
        ...

    @abc.abstractmethod
    async def save_checkpoint(self, job_key: str, value: str) -> None:
        ...

    @abc.abstractmethod
    async def clear_checkpoint(self, job_key: str) -> None:
        ...

    @abc.abstractmethod
    async def list_checkpoint_keys(self, prefix: str) -> list[str]:
        ...


class BlockedWordRepository(abc.ABC):
    @abc.abstractmethod
    async def add_blocked_word(self, entry: BlockedWord) -> bool:
        ...

    @abc.abstractmethod
    async def remove_blocked_word(self, word: str) -> bool:
        ...

    @abc.abstractmethod
    async def list_blocked_words(self) -> list[BlockedWord]:
        ...


class StorageGateway(
    ListingRepository,
    FlagRepository,
    ModerationActionRepository,
    AppealRepository,
    AdminRepository,
    OutboxRepository,
    CheckpointRepository,
    BlockedWordRepository,
    abc.ABC,
):
    """Combined repository interface for convenience."""

    @abc.abstractmethod
    async def connect(self) -> None:
        ...

    @abc.abstractmethod
    async def disconnect(self) -> None:
        ...

    @abc.abstractmethod
    def transaction(self) -> AbstractAsyncContextManager[None]:
        """Unit of work; repository calls made inside it join the same transaction."""
