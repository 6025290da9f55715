from __future__ import annotations

import re
import time
from dataclasses import dataclass, field
from typing import Iterable, Optional

import structlog

from .config import ContentFilterSettings
from .errors import Unauthorized, ValidationError
from .models import Actor, BlockedWord, BlockedWordSeverity
from .storage.base import BlockedWordRepository
from .utils.clock import Clock, utc_now

logger = structlog.get_logger(__name__)


@dataclass(slots=True)
class Violation:
    word: str
    severity: BlockedWordSeverity
    field_name: str
    position: int


@dataclass(slots=True)
class ContentAnalysis:
    violations: list[Violation] = field(default_factory=list)

    @property
    def should_block(self) -> bool:
        return any(item.severity == BlockedWordSeverity.BLOCK for item in self.violations)

    @property
    def blocked_words(self) -> list[str]:
        words: list[str] = []
        for item in self.violations:
            if item.severity == BlockedWordSeverity.BLOCK and item.word not in words:
                words.append(item.word)
        return words


def normalize_word(word: str) -> str:
    return " ".join(word.split()).lower()


def _pattern_for(word: str) -> re.Pattern[str]:
    return re.compile(rf"\b{re.escape(word)}\b", re.IGNORECASE)


class ContentFilter:
    """Admin-managed blocked word list checked against listing text.

    Words match case-insensitively on word boundaries. ``block`` words reject
    the listing; ``warning`` words are only logged.
    """

    def __init__(
        self,
        storage: BlockedWordRepository,
        *,
        settings: Optional[ContentFilterSettings] = None,
        clock: Clock = utc_now,
    ) -> None:
        self._storage = storage
        self._settings = settings or ContentFilterSettings()
        self._clock = clock
        self._patterns: list[tuple[BlockedWord, re.Pattern[str]]] = []
        self._loaded_at: Optional[float] = None

    async def seed(self, words: Iterable[str]) -> int:
        added = 0
        for word in words:
            entry = BlockedWord(
                word=normalize_word(word),
                severity=BlockedWordSeverity.BLOCK,
                added_by=0,
                created_at=self._clock(),
            )
            if entry.word and await self._storage.add_blocked_word(entry):
                added += 1
        self._loaded_at = None
        logger.info("content_filter_seeded", added=added)
        return added

    async def add_word(
        self,
        word: str,
        admin: Actor,
        severity: BlockedWordSeverity = BlockedWordSeverity.BLOCK,
    ) -> BlockedWord:
        self._require_admin(admin)
        normalized = normalize_word(word)
        if not normalized or len(normalized) > 100:
            raise ValidationError("Blocked word must be 1-100 characters", word=word)
        entry = BlockedWord(
            word=normalized,
            severity=BlockedWordSeverity(severity),
            added_by=admin.user_id,
            created_at=self._clock(),
        )
        changed = await self._storage.add_blocked_word(entry)
        self._loaded_at = None
        logger.info(
            "blocked_word_added",
            word=normalized,
            severity=entry.severity.value,
            admin_id=admin.user_id,
            changed=changed,
        )
        return entry

    async def remove_word(self, word: str, admin: Actor) -> bool:
        self._require_admin(admin)
        removed = await self._storage.remove_blocked_word(normalize_word(word))
        self._loaded_at = None
        logger.info("blocked_word_removed", word=word, admin_id=admin.user_id, removed=removed)
        return removed

    async def list_words(self) -> list[BlockedWord]:
        return await self._storage.list_blocked_words()

    async def analyze(self, **texts: Optional[str]) -> ContentAnalysis:
        """Scan named text fields, e.g. ``analyze(title=..., description=...)``."""
        patterns = await self._load()
        analysis = ContentAnalysis()
        for name, text in texts.items():
            if not text:
                continue
            for entry, pattern in patterns:
                for match in pattern.finditer(text):
                    analysis.violations.append(
                        Violation(
                            word=entry.word,
                            severity=entry.severity,
                            field_name=name,
                            position=match.start(),
                        )
                    )
        return analysis

    async def ensure_clean(self, **texts: Optional[str]) -> ContentAnalysis:
        analysis = await self.analyze(**texts)
        if analysis.should_block:
            logger.info("content_blocked", words=analysis.blocked_words)
            raise ValidationError(
                "Listing contains blocked words",
                blocked_words=analysis.blocked_words,
                fields=sorted({item.field_name for item in analysis.violations}),
            )
        if analysis.violations:
            logger.info("content_warning", words=[item.word for item in analysis.violations])
        return analysis

    async def _load(self) -> list[tuple[BlockedWord, re.Pattern[str]]]:
        now = time.monotonic()
        if self._loaded_at is not None and now - self._loaded_at < self._settings.cache_ttl_seconds:
            return self._patterns
        words = await self._storage.list_blocked_words()
        self._patterns = [(entry, _pattern_for(entry.word)) for entry in words]
        self._loaded_at = now
        return self._patterns

    @staticmethod
    def _require_admin(actor: Optional[Actor]) -> None:
        if actor is None or not actor.privileged:
            raise Unauthorized("Administrator role required")
