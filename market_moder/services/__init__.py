from .marketplace import MarketModerationService

__all__ = ["MarketModerationService"]
