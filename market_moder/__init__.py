"""
Marketplace moderation core.

Listing lifecycle, user reports, the moderation ledger and ban appeals for a
Telegram marketplace, plus the outbox worker that carries bans and upheld
reports over to listing visibility.
"""

from .services.marketplace import MarketModerationService

__all__ = ["MarketModerationService"]
