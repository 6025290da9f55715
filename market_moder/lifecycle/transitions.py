from __future__ import annotations

from ..errors import InvalidTransition
from ..models import ListingStatus

VALID_STATUS_TRANSITIONS: dict[ListingStatus, frozenset[ListingStatus]] = {
    ListingStatus.DRAFT: frozenset({ListingStatus.ACTIVE, ListingStatus.ARCHIVED}),
    ListingStatus.ACTIVE: frozenset(
        {ListingStatus.EXPIRED, ListingStatus.SOLD, ListingStatus.ARCHIVED, ListingStatus.HIDDEN}
    ),
    # expired -> active only through a bump
    ListingStatus.EXPIRED: frozenset({ListingStatus.ACTIVE, ListingStatus.ARCHIVED}),
    ListingStatus.SOLD: frozenset({ListingStatus.ARCHIVED}),
    ListingStatus.ARCHIVED: frozenset(),
    # hidden -> active is reserved for admins
    ListingStatus.HIDDEN: frozenset({ListingStatus.ACTIVE, ListingStatus.ARCHIVED}),
}


def is_valid_transition(current: ListingStatus, target: ListingStatus) -> bool:
    return target in VALID_STATUS_TRANSITIONS[current]


def ensure_transition(current: ListingStatus, target: ListingStatus, *, listing_id: str) -> None:
    if not is_valid_transition(current, target):
        raise InvalidTransition(current.value, target.value, listing_id=listing_id)
