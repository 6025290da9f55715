"""Error taxonomy shared by every moderation component."""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional


class ConflictReason(str, Enum):
    LIMIT = "limit"
    COOLDOWN = "cooldown"
    ALREADY_BANNED = "already_banned"
    NOT_BANNED = "not_banned"
    DUPLICATE_FLAG = "duplicate_flag"
    ALREADY_REVIEWED = "already_reviewed"
    ALREADY_RESOLVED = "already_resolved"
    DEADLINE_PASSED = "deadline_passed"
    DUPLICATE_OPEN_APPEAL = "duplicate_open_appeal"
    RATE_LIMITED = "rate_limited"
    RACE_LOST = "race_lost"


class MarketModerError(Exception):
    """Base exception for the moderation core."""

    code = "error"

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationError(MarketModerError):
    code = "validation_error"


class InvalidTransition(MarketModerError):
    code = "invalid_transition"

    def __init__(self, current: str, target: str, **details: Any) -> None:
        super().__init__(f"Cannot move listing from {current} to {target}", **details)
        self.current = current
        self.target = target


class Unauthorized(MarketModerError):
    code = "unauthorized"


class SelfFlag(Unauthorized):
    code = "self_flag"

    def __init__(self, listing_id: str) -> None:
        super().__init__("Cannot flag your own listing", listing_id=listing_id)


class NotFound(MarketModerError):
    code = "not_found"

    def __init__(self, entity: str, key: Any) -> None:
        super().__init__(f"{entity} {key} not found", entity=entity, key=key)


class Conflict(MarketModerError):
    code = "conflict"

    def __init__(self, reason: ConflictReason, message: Optional[str] = None, **details: Any) -> None:
        super().__init__(message or reason.value.replace("_", " "), **details)
        self.reason = reason


class DuplicateFlag(Conflict):
    def __init__(self, listing_id: str, reporter_id: int) -> None:
        super().__init__(
            ConflictReason.DUPLICATE_FLAG,
            "You have already flagged this listing",
            listing_id=listing_id,
            reporter_id=reporter_id,
        )


class AlreadyReviewed(Conflict):
    def __init__(self, flag_id: int, status: str) -> None:
        super().__init__(
            ConflictReason.ALREADY_REVIEWED,
            "Flag has already been reviewed",
            flag_id=flag_id,
            status=status,
        )


class AlreadyResolved(Conflict):
    def __init__(self, appeal_id: int, status: str) -> None:
        super().__init__(
            ConflictReason.ALREADY_RESOLVED,
            "Appeal has already been resolved",
            appeal_id=appeal_id,
            status=status,
        )


class RaceLost(Conflict):
    def __init__(self, entity: str, key: Any) -> None:
        super().__init__(
            ConflictReason.RACE_LOST,
            f"{entity} {key} was modified concurrently",
            entity=entity,
            key=key,
        )


class InternalError(MarketModerError):
    code = "internal_error"

    def __init__(self, message: str, *, retryable: bool = False, **details: Any) -> None:
        super().__init__(message, **details)
        self.retryable = retryable


class TransientStoreError(InternalError):
    """Store timed out or was busy; the caller may try again."""

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message, retryable=True, **details)


__all__ = [
    "AlreadyResolved",
    "AlreadyReviewed",
    "Conflict",
    "ConflictReason",
    "DuplicateFlag",
    "InternalError",
    "InvalidTransition",
    "MarketModerError",
    "NotFound",
    "RaceLost",
    "SelfFlag",
    "TransientStoreError",
    "Unauthorized",
    "ValidationError",
]
