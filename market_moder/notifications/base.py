from __future__ import annotations

from typing import Protocol, runtime_checkable

import structlog

from ..models import DomainEvent, EventKind

logger = structlog.get_logger(__name__)

NOTIFIABLE_EVENTS = frozenset(
    {
        EventKind.USER_BANNED,
        EventKind.USER_UNBANNED,
        EventKind.APPEAL_RESOLVED,
        EventKind.LISTING_HIDDEN,
    }
)


@runtime_checkable
class NotificationSink(Protocol):
    async def publish(self, event: DomainEvent) -> None:
        ...


class NullNotifier:
    async def publish(self, event: DomainEvent) -> None:
        logger.debug("notification_dropped", kind=event.kind.value)
