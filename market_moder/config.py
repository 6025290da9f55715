from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class LifecycleSettings(BaseModel):
    expiration_days: int = Field(default=7, ge=1)
    bump_cooldown_hours: int = Field(default=24, ge=0)
    max_active_listings: int = Field(default=20, ge=1)


class ModerationSettings(BaseModel):
    appeal_deadline_days: int = Field(default=7, ge=1)
    flag_rate_limit: int = Field(default=5, ge=1, description="Flags allowed per reporter per window")
    flag_rate_window_hours: int = Field(default=24, ge=1)
    max_ban_days: int = Field(default=365, ge=1)


class ContentFilterSettings(BaseModel):
    blocked_words: list[str] = Field(default_factory=list, description="Words blocked at startup.")
    cache_ttl_seconds: float = Field(default=300.0, ge=0)


class WorkerSettings(BaseModel):
    poll_interval_seconds: float = Field(default=1.0, gt=0)
    batch_size: int = Field(default=50, ge=1)
    max_attempts: int = Field(default=5, ge=1)


class SweepSettings(BaseModel):
    interval_seconds: float = Field(default=300.0, gt=0)
    batch_size: int = Field(default=200, ge=1)


class StorageSettings(BaseModel):
    sqlite_path: str = "marketplace.db"


class LoggingSettings(BaseModel):
    level: str = Field(default="INFO", description="Logging level: DEBUG, INFO, WARNING, ERROR")
    use_json: bool = Field(default=False, description="Use JSON format instead of colored output")


class TelegramSettings(BaseModel):
    bot_token: Optional[str] = Field(default=None, description="Bot used to deliver moderation notices.")
    admin_chat_id: Optional[int] = Field(default=None, description="Chat that receives moderation digests.")


class MarketSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="MARKET_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
    )

    admin_ids: list[int] = Field(default_factory=list, description="Admins granted at startup.")
    lifecycle: LifecycleSettings = LifecycleSettings()
    moderation: ModerationSettings = ModerationSettings()
    content_filter: ContentFilterSettings = ContentFilterSettings()
    worker: WorkerSettings = WorkerSettings()
    sweep: SweepSettings = SweepSettings()
    storage: StorageSettings = StorageSettings()
    logging: LoggingSettings = LoggingSettings()
    telegram: TelegramSettings = TelegramSettings()
