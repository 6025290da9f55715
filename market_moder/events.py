from __future__ import annotations

from datetime import datetime
from typing import Optional

from .models import Appeal, DomainEvent, EventKind, Flag, Listing, ModerationAction


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def user_banned(action: ModerationAction) -> DomainEvent:
    return DomainEvent(
        kind=EventKind.USER_BANNED,
        occurred_at=action.created_at,
        payload={
            "action_id": action.id,
            "user_id": action.target_user_id,
            "admin_id": action.admin_id,
            "reason": action.reason,
            "expires_at": _iso(action.expires_at),
        },
    )


def user_unbanned(action: ModerationAction, ban_id: int) -> DomainEvent:
    return DomainEvent(
        kind=EventKind.USER_UNBANNED,
        occurred_at=action.created_at,
        payload={
            "action_id": action.id,
            "ban_id": ban_id,
            "user_id": action.target_user_id,
            "admin_id": action.admin_id,
            "reason": action.reason,
        },
    )


def flag_upheld(flag: Flag) -> DomainEvent:
    return DomainEvent(
        kind=EventKind.FLAG_UPHELD,
        occurred_at=flag.reviewed_at or flag.created_at,
        payload={
            "flag_id": flag.id,
            "listing_id": flag.listing_id,
            "reason": flag.reason.value,
            "reviewed_by": flag.reviewed_by,
        },
    )


def appeal_resolved(appeal: Appeal, unban_action_id: Optional[int]) -> DomainEvent:
    return DomainEvent(
        kind=EventKind.APPEAL_RESOLVED,
        occurred_at=appeal.resolved_at or appeal.created_at,
        payload={
            "appeal_id": appeal.id,
            "action_id": appeal.moderation_action_id,
            "user_id": appeal.user_id,
            "approved": appeal.status.value == "approved",
            "admin_id": appeal.resolved_by,
            "response": appeal.admin_response,
            "unban_action_id": unban_action_id,
        },
    )


def listing_hidden(listing: Listing, actor_id: int, reason: str, at: datetime) -> DomainEvent:
    return DomainEvent(
        kind=EventKind.LISTING_HIDDEN,
        occurred_at=at,
        payload={
            "listing_id": listing.id,
            "owner_id": listing.owner_id,
            "actor_id": actor_id,
            "reason": reason,
        },
    )
