from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional


class ListingStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    EXPIRED = "expired"
    SOLD = "sold"
    ARCHIVED = "archived"
    HIDDEN = "hidden"


class FlagReason(str, Enum):
    SPAM = "spam"
    INAPPROPRIATE = "inappropriate"
    FAKE = "fake"
    OTHER = "other"


class FlagStatus(str, Enum):
    PENDING = "pending"
    UPHELD = "upheld"
    DISMISSED = "dismissed"


class ModerationActionType(str, Enum):
    WARNING = "warning"
    BAN = "ban"
    UNBAN = "unban"
    CONTENT_REMOVAL = "content_removal"


class AppealStatus(str, Enum):
    OPEN = "open"
    APPROVED = "approved"
    DENIED = "denied"


class EventKind(str, Enum):
    USER_BANNED = "user_banned"
    USER_UNBANNED = "user_unbanned"
    FLAG_UPHELD = "flag_upheld"
    APPEAL_RESOLVED = "appeal_resolved"
    LISTING_HIDDEN = "listing_hidden"


class EventStatus(str, Enum):
    PENDING = "pending"
    DONE = "done"
    DEAD = "dead"


class BlockedWordSeverity(str, Enum):
    WARNING = "warning"
    BLOCK = "block"


@dataclass(slots=True, frozen=True)
class Actor:
    user_id: int
    is_admin: bool = False
    is_system: bool = False

    def owns(self, listing: "Listing") -> bool:
        return self.user_id == listing.owner_id

    @property
    def privileged(self) -> bool:
        return self.is_admin or self.is_system


SYSTEM_ACTOR = Actor(user_id=0, is_admin=True, is_system=True)


@dataclass(slots=True)
class Listing:
    id: str
    owner_id: int
    category_id: int
    title: str
    description: str
    price_usd: Decimal
    images: list[str]
    contact_username: str
    created_at: datetime
    expires_at: datetime
    status: ListingStatus = ListingStatus.DRAFT
    is_sticky: bool = False
    is_highlighted: bool = False
    auto_bump_enabled: bool = False
    view_count: int = 0
    bump_count: int = 0
    published_at: Optional[datetime] = None
    bumped_at: Optional[datetime] = None
    archived_at: Optional[datetime] = None
    admin_notes: Optional[str] = None
    version: int = 0


@dataclass(slots=True)
class Flag:
    id: int
    listing_id: str
    reporter_id: int
    reason: FlagReason
    created_at: datetime
    status: FlagStatus = FlagStatus.PENDING
    description: Optional[str] = None
    reviewed_by: Optional[int] = None
    reviewed_at: Optional[datetime] = None
    review_notes: Optional[str] = None


@dataclass(slots=True)
class ModerationAction:
    id: int
    target_user_id: int
    admin_id: int
    action_type: ModerationActionType
    reason: str
    created_at: datetime
    target_listing_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    reference: Optional[str] = None

    def is_ban(self) -> bool:
        return self.action_type == ModerationActionType.BAN

    def is_permanent(self) -> bool:
        return self.is_ban() and self.expires_at is None

    def in_force_at(self, moment: datetime) -> bool:
        """True for a ban whose term has not run out at ``moment``.

        Says nothing about later unbans; see ``derive_active_ban``.
        """
        if not self.is_ban():
            return False
        return self.expires_at is None or self.expires_at > moment

    def sort_key(self) -> tuple[datetime, int]:
        return (self.created_at, self.id)


@dataclass(slots=True)
class Appeal:
    id: int
    moderation_action_id: int
    user_id: int
    text: str
    created_at: datetime
    status: AppealStatus = AppealStatus.OPEN
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[int] = None
    admin_response: Optional[str] = None


@dataclass(slots=True)
class DomainEvent:
    kind: EventKind
    payload: dict[str, Any]
    occurred_at: datetime
    id: Optional[int] = None
    attempts: int = 0
    status: EventStatus = EventStatus.PENDING
    last_error: Optional[str] = None


@dataclass(slots=True)
class EscalationStep:
    action_type: ModerationActionType
    duration_days: Optional[int] = None

    @property
    def permanent(self) -> bool:
        return self.action_type == ModerationActionType.BAN and self.duration_days is None


@dataclass(slots=True)
class UserModerationHistory:
    user_id: int
    total_actions: int
    warnings: int
    bans: int
    unbans: int
    content_removals: int
    currently_banned: bool
    last_action: Optional[ModerationAction] = None


@dataclass(slots=True)
class SweepReport:
    examined: int = 0
    expired: list[str] = field(default_factory=list)
    auto_bumped: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)


@dataclass(slots=True)
class CascadeReport:
    trigger: str
    hidden: list[str] = field(default_factory=list)
    already_hidden: list[str] = field(default_factory=list)
    archived: list[str] = field(default_factory=list)
    resumed_after: Optional[str] = None
    aborted: bool = False


@dataclass(slots=True)
class BlockedWord:
    word: str
    severity: BlockedWordSeverity
    added_by: int
    created_at: datetime


__all__ = [
    "Actor",
    "Appeal",
    "AppealStatus",
    "BlockedWord",
    "BlockedWordSeverity",
    "CascadeReport",
    "DomainEvent",
    "EscalationStep",
    "EventKind",
    "EventStatus",
    "Flag",
    "FlagReason",
    "FlagStatus",
    "Listing",
    "ListingStatus",
    "ModerationAction",
    "ModerationActionType",
    "SYSTEM_ACTOR",
    "SweepReport",
    "UserModerationHistory",
]
