#!/usr/bin/env python3
"""
Entry point for the marketplace moderation worker.

Usage:
    python run_worker.py

Environment:
    - MARKET_ADMIN_IDS (JSON list, e.g. [1001, 1002])
    - MARKET_STORAGE__SQLITE_PATH
    - MARKET_TELEGRAM__BOT_TOKEN (optional, enables user notices)

Loads MarketSettings (reads .env by default), starts the outbox worker and the
maintenance sweeps, and shuts down cleanly on Ctrl+C.
"""

import asyncio

from market_moder import MarketModerationService
from market_moder.config import MarketSettings


async def _main() -> None:
    service = MarketModerationService(MarketSettings())
    await service.start()
    try:
        await asyncio.Event().wait()
    finally:
        await service.shutdown()


if __name__ == "__main__":
    try:
        asyncio.run(_main())
    except KeyboardInterrupt:
        print("\n\n🛑 Worker shutdown requested by user.")
