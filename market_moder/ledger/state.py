from __future__ import annotations

from datetime import datetime
from typing import Iterable, Optional

from ..models import ModerationAction, ModerationActionType


def derive_active_ban(actions: Iterable[ModerationAction], now: datetime) -> Optional[ModerationAction]:
    """Reconstruct a user's current ban from their action history.

    Walks bans newest first and returns the first one that is still in force
    and has no unban appended after it. Ordering uses (created_at, id) so rows
    written within one clock tick keep their append order.
    """
    ordered = sorted(actions, key=ModerationAction.sort_key, reverse=True)
    unbans = [action for action in ordered if action.action_type == ModerationActionType.UNBAN]
    for action in ordered:
        if not action.is_ban() or not action.in_force_at(now):
            continue
        lifted = any(unban.sort_key() > action.sort_key() for unban in unbans)
        if not lifted:
            return action
    return None


def derive_ban_pointer(actions: Iterable[ModerationAction]) -> Optional[int]:
    """Id of the newest ban without a later unban, regardless of expiry."""
    latest: Optional[ModerationAction] = None
    for action in sorted(actions, key=ModerationAction.sort_key):
        if action.action_type == ModerationActionType.BAN:
            latest = action
        elif action.action_type == ModerationActionType.UNBAN:
            latest = None
    return latest.id if latest else None
