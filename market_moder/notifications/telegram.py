from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

import structlog
from aiogram import Bot
from aiogram.exceptions import TelegramBadRequest, TelegramForbiddenError

from ..models import DomainEvent, EventKind
from .base import NOTIFIABLE_EVENTS

logger = structlog.get_logger(__name__)


def _format_expiry(raw: Optional[str]) -> str:
    if not raw:
        return "permanently"
    return "until " + datetime.fromisoformat(raw).strftime("%Y-%m-%d %H:%M UTC")


def render_message(event: DomainEvent) -> Optional[str]:
    payload = event.payload
    if event.kind == EventKind.USER_BANNED:
        return (
            f"⛔ Your account has been banned {_format_expiry(payload.get('expires_at'))}.\n"
            f"Reason: {payload.get('reason', '-')}"
        )
    if event.kind == EventKind.USER_UNBANNED:
        return f"✅ Your account has been unbanned.\nReason: {payload.get('reason', '-')}"
    if event.kind == EventKind.APPEAL_RESOLVED:
        verdict = "approved" if payload.get("approved") else "denied"
        text = f"📨 Your appeal #{payload.get('appeal_id')} was {verdict}."
        if payload.get("response"):
            text += f"\nAdmin response: {payload['response']}"
        return text
    if event.kind == EventKind.LISTING_HIDDEN:
        return (
            f"🙈 Your listing {payload.get('listing_id')} is no longer visible.\n"
            f"Reason: {payload.get('reason', '-')}"
        )
    return None


def recipient_for(event: DomainEvent) -> Optional[int]:
    payload: dict[str, Any] = event.payload
    if event.kind == EventKind.LISTING_HIDDEN:
        return payload.get("owner_id")
    return payload.get("user_id")


class TelegramNotifier:
    """Deliver moderation notices to the affected user through a Telegram bot.

    Users who blocked the bot or never started it are skipped; an optional
    admin chat receives a copy of ban-related notices.
    """

    def __init__(self, bot: Bot, *, admin_chat_id: Optional[int] = None) -> None:
        self._bot = bot
        self._admin_chat_id = admin_chat_id

    async def publish(self, event: DomainEvent) -> None:
        if event.kind not in NOTIFIABLE_EVENTS:
            return
        text = render_message(event)
        chat_id = recipient_for(event)
        if text is None or chat_id is None:
            logger.warning("telegram_notice_unroutable", kind=event.kind.value, event_id=event.id)
            return
        await self._send(chat_id, text, kind=event.kind)
        if self._admin_chat_id is not None and event.kind in (EventKind.USER_BANNED, EventKind.USER_UNBANNED):
            await self._send(
                self._admin_chat_id,
                f"[{event.kind.value}] user={chat_id} admin={event.payload.get('admin_id')}",
                kind=event.kind,
            )

    async def _send(self, chat_id: int, text: str, *, kind: EventKind) -> None:
        try:
            await self._bot.send_message(chat_id, text)
        except (TelegramForbiddenError, TelegramBadRequest) as exc:
            logger.warning("telegram_notice_undeliverable", chat_id=chat_id, kind=kind.value, error=str(exc))
            return
        logger.info("telegram_notice_sent", chat_id=chat_id, kind=kind.value)

    async def close(self) -> None:
        await self._bot.session.close()
