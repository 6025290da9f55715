from __future__ import annotations

import asyncio
import json
import sqlite3
from contextlib import asynccontextmanager, contextmanager
from contextvars import ContextVar
from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import AsyncIterator, Iterable, Iterator, Optional

import aiosqlite
import structlog

from ..errors import InternalError, TransientStoreError
from ..models import (
    Appeal,
    AppealStatus,
    BlockedWord,
    BlockedWordSeverity,
    DomainEvent,
    EventKind,
    EventStatus,
    Flag,
    FlagReason,
    FlagStatus,
    Listing,
    ListingStatus,
    ModerationAction,
    ModerationActionType,
)
from ..utils.clock import to_utc
from .base import StorageGateway

logger = structlog.get_logger(__name__)


SCHEMA = """
CREATE TABLE IF NOT EXISTS listings (
    id TEXT PRIMARY KEY,
    owner_id INTEGER NOT NULL,
    category_id INTEGER NOT NULL,
    title TEXT NOT NULL,
    description TEXT NOT NULL,
    price_usd TEXT NOT NULL,
    images_json TEXT NOT NULL,
    contact_username TEXT NOT NULL,
    status TEXT NOT NULL,
    is_sticky INTEGER NOT NULL DEFAULT 0,
    is_highlighted INTEGER NOT NULL DEFAULT 0,
    auto_bump_enabled INTEGER NOT NULL DEFAULT 0,
    view_count INTEGER NOT NULL DEFAULT 0,
    bump_count INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    published_at TEXT,
    bumped_at TEXT,
    archived_at TEXT,
    expires_at TEXT NOT NULL,
    admin_notes TEXT,
    version INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS listings_owner_status_idx ON listings(owner_id, status);
CREATE INDEX IF NOT EXISTS listings_status_expires_idx ON listings(status, expires_at);

CREATE TABLE IF NOT EXISTS flags (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    listing_id TEXT NOT NULL,
    reporter_id INTEGER NOT NULL,
    reason TEXT NOT NULL,
    description TEXT,
    status TEXT NOT NULL,
    created_at TEXT NOT NULL,
    reviewed_by INTEGER,
    reviewed_at TEXT,
    review_notes TEXT,
    UNIQUE (listing_id, reporter_id)
);
CREATE INDEX IF NOT EXISTS flags_status_created_idx ON flags(status, created_at);
CREATE INDEX IF NOT EXISTS flags_reporter_created_idx ON flags(reporter_id, created_at);

CREATE TABLE IF NOT EXISTS moderation_actions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    target_user_id INTEGER NOT NULL,
    target_listing_id TEXT,
    admin_id INTEGER NOT NULL,
    action_type TEXT NOT NULL,
    reason TEXT NOT NULL,
    created_at TEXT NOT NULL,
    expires_at TEXT,
    reference TEXT UNIQUE
);
CREATE INDEX IF NOT EXISTS moderation_target_user_idx
    ON moderation_actions(target_user_id, action_type, created_at);
CREATE INDEX IF NOT EXISTS moderation_expires_idx ON moderation_actions(action_type, expires_at);

CREATE TRIGGER IF NOT EXISTS moderation_actions_no_update
BEFORE UPDATE ON moderation_actions
BEGIN
    SELECT RAISE(ABORT, 'moderation_actions is append-only');
END;

CREATE TRIGGER IF NOT EXISTS moderation_actions_no_delete
BEFORE DELETE ON moderation_actions
BEGIN
    SELECT RAISE(ABORT, 'moderation_actions is append-only');
END;

CREATE TABLE IF NOT EXISTS ban_pointers (
    user_id INTEGER PRIMARY KEY,
    action_id INTEGER
);

CREATE TABLE IF NOT EXISTS appeals (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    moderation_action_id INTEGER NOT NULL,
    user_id INTEGER NOT NULL,
    text TEXT NOT NULL,
    status TEXT NOT NULL,
    created_at TEXT NOT NULL,
    resolved_at TEXT,
    resolved_by INTEGER,
    admin_response TEXT
);
CREATE UNIQUE INDEX IF NOT EXISTS appeals_one_open_idx
    ON appeals(moderation_action_id) WHERE status = 'open';
CREATE INDEX IF NOT EXISTS appeals_status_created_idx ON appeals(status, created_at);

CREATE TABLE IF NOT EXISTS admins (
    user_id INTEGER PRIMARY KEY,
    granted_by INTEGER,
    granted_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS outbox (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    kind TEXT NOT NULL,
    payload_json TEXT NOT NULL,
    occurred_at TEXT NOT NULL,
    status TEXT NOT NULL,
    attempts INTEGER NOT NULL DEFAULT 0,
    last_error TEXT
);
CREATE INDEX IF NOT EXISTS outbox_status_idx ON outbox(status, id);

CREATE TABLE IF NOT EXISTS cascade_checkpoints (
    job_key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS blocked_words (
    word TEXT PRIMARY KEY,
    severity TEXT NOT NULL,
    added_by INTEGER NOT NULL,
    created_at TEXT NOT NULL
);
"""

LISTING_COLUMNS = (
    "id, owner_id, category_id, title, description, price_usd, images_json, contact_username, "
    "status, is_sticky, is_highlighted, auto_bump_enabled, view_count, bump_count, created_at, "
    "published_at, bumped_at, archived_at, expires_at, admin_notes, version"
)


def _ts(value: Optional[datetime]) -> Optional[str]:
    # Fixed-width UTC text so that string comparison in SQL orders chronologically.
    if value is None:
        return None
    return to_utc(value).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def _dt(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromisoformat(value)


def _is_busy(exc: sqlite3.OperationalError) -> bool:
    text = str(exc).lower()
    return "locked" in text or "busy" in text


@contextmanager
def _translate_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except sqlite3.OperationalError as exc:
        if _is_busy(exc):
            logger.warning("sqlite_busy", operation=operation, error=str(exc))
            raise TransientStoreError(f"Store busy during {operation}", operation=operation) from exc
        logger.error("sqlite_operational_error", operation=operation, error=str(exc))
        raise InternalError(f"Store failure during {operation}", operation=operation) from exc
    except sqlite3.IntegrityError as exc:
        logger.info("sqlite_constraint_violation", operation=operation, error=str(exc))
        raise InternalError(f"Constraint violated during {operation}", operation=operation) from exc
    except sqlite3.DatabaseError as exc:
        logger.error("sqlite_error", operation=operation, error=str(exc))
        raise InternalError(f"Store failure during {operation}", operation=operation) from exc


class SQLiteStorage(StorageGateway):
    def __init__(self, path: str | Path) -> None:
        self._path = str(path)
        self._conn: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()
        self._in_tx: ContextVar[bool] = ContextVar(f"sqlite_tx_{id(self)}", default=False)

    async def connect(self) -> None:
        self._conn = await aiosqlite.connect(self._path, isolation_level=None)
        self._conn.row_factory = aiosqlite.Row
        if self._path != ":memory:":
            await self._conn.execute("PRAGMA journal_mode=WAL")
        await self._conn.execute("PRAGMA busy_timeout=5000")
        await self._conn.executescript(SCHEMA)
        logger.info("sqlite_connected", path=self._path)

    async def disconnect(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None
            logger.info("sqlite_disconnected", path=self._path)

    def _db(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise InternalError("Storage is not connected")
        return self._conn

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        if self._in_tx.get():
            yield
            return
        conn = self._db()
        async with self._lock:
            token = self._in_tx.set(True)
            try:
                with _translate_errors("begin"):
                    await conn.execute("BEGIN IMMEDIATE")
                try:
                    yield
                except BaseException:
                    await conn.rollback()
                    raise
                with _translate_errors("commit"):
                    await conn.commit()
            finally:
                self._in_tx.reset(token)

    @asynccontextmanager
    async def _reading(self, operation: str) -> AsyncIterator[aiosqlite.Connection]:
        # Reads wait for an open transaction so they never observe uncommitted rows.
        conn = self._db()
        if self._in_tx.get():
            with _translate_errors(operation):
                yield conn
            return
        async with self._lock:
            with _translate_errors(operation):
                yield conn

    async def _fetchone(self, operation: str, sql: str, params: tuple = ()) -> Optional[aiosqlite.Row]:
        async with self._reading(operation) as conn:
            async with conn.execute(sql, params) as cursor:
                return await cursor.fetchone()

    async def _fetchall(self, operation: str, sql: str, params: tuple = ()) -> list[aiosqlite.Row]:
        async with self._reading(operation) as conn:
            async with conn.execute(sql, params) as cursor:
                return list(await cursor.fetchall())

    # listings

    async def get_listing(self, listing_id: str) -> Optional[Listing]:
        row = await self._fetchone(
            "get_listing", f"SELECT {LISTING_COLUMNS} FROM listings WHERE id = ?", (listing_id,)
        )
        return self._row_to_listing(row) if row else None

    async def insert_listing(self, listing: Listing) -> None:
        async with self.transaction():
            with _translate_errors("insert_listing"):
                await self._db().execute(
                    f"INSERT INTO listings ({LISTING_COLUMNS}) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    self._listing_params(listing),
                )
        logger.debug("sqlite_insert_listing", listing_id=listing.id, owner_id=listing.owner_id)

    async def compare_and_set_listing(
        self,
        listing: Listing,
        *,
        expected_status: ListingStatus,
        expected_version: int,
    ) -> bool:
        params = self._listing_params(listing)
        async with self.transaction():
            with _translate_errors("compare_and_set_listing"):
                cursor = await self._db().execute(
                    """
                    UPDATE listings SET
                        owner_id = ?, category_id = ?, title = ?, description = ?, price_usd = ?,
                        images_json = ?, contact_username = ?, status = ?, is_sticky = ?,
                        is_highlighted = ?, auto_bump_enabled = ?, view_count = ?, bump_count = ?,
                        created_at = ?, published_at = ?, bumped_at = ?, archived_at = ?,
                        expires_at = ?, admin_notes = ?, version = ?
                    WHERE id = ? AND status = ? AND version = ?
                    """,
                    (*params[1:], listing.id, expected_status.value, expected_version),
                )
                updated = cursor.rowcount == 1
                await cursor.close()
        if not updated:
            logger.info(
                "sqlite_listing_cas_failed",
                listing_id=listing.id,
                expected_status=expected_status.value,
                expected_version=expected_version,
            )
        return updated

    async def list_listings_by_owner(
        self, owner_id: int, status: Optional[ListingStatus] = None
    ) -> list[Listing]:
        if status is None:
            rows = await self._fetchall(
                "list_listings_by_owner",
                f"SELECT {LISTING_COLUMNS} FROM listings WHERE owner_id = ? ORDER BY id",
                (owner_id,),
            )
        else:
            rows = await self._fetchall(
                "list_listings_by_owner",
                f"SELECT {LISTING_COLUMNS} FROM listings WHERE owner_id = ? AND status = ? ORDER BY id",
                (owner_id, status.value),
            )
        return [self._row_to_listing(row) for row in rows]

    async def count_listings_by_owner(self, owner_id: int, status: ListingStatus) -> int:
        row = await self._fetchone(
            "count_listings_by_owner",
            "SELECT COUNT(*) FROM listings WHERE owner_id = ? AND status = ?",
            (owner_id, status.value),
        )
        return int(row[0]) if row else 0

    async def list_expiring_listings(self, cutoff: datetime, limit: int) -> list[Listing]:
        rows = await self._fetchall(
            "list_expiring_listings",
            f"""
            SELECT {LISTING_COLUMNS} FROM listings
            WHERE status = ? AND expires_at <= ?
            ORDER BY expires_at, id
            LIMIT ?
            """,
            (ListingStatus.ACTIVE.value, _ts(cutoff), limit),
        )
        return [self._row_to_listing(row) for row in rows]

    # flags

    async def get_flag(self, flag_id: int) -> Optional[Flag]:
        row = await self._fetchone("get_flag", "SELECT * FROM flags WHERE id = ?", (flag_id,))
        return self._row_to_flag(row) if row else None

    async def insert_flag(self, flag: Flag) -> Optional[Flag]:
        async with self.transaction():
            try:
                with _translate_errors("insert_flag"):
                    cursor = await self._db().execute(
                        """
                        INSERT INTO flags (
                            listing_id, reporter_id, reason, description, status, created_at,
                            reviewed_by, reviewed_at, review_notes
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            flag.listing_id,
                            flag.reporter_id,
                            flag.reason.value,
                            flag.description,
                            flag.status.value,
                            _ts(flag.created_at),
                            flag.reviewed_by,
                            _ts(flag.reviewed_at),
                            flag.review_notes,
                        ),
                    )
            except InternalError as exc:
                if isinstance(exc.__cause__, sqlite3.IntegrityError):
                    logger.info(
                        "sqlite_flag_duplicate",
                        listing_id=flag.listing_id,
                        reporter_id=flag.reporter_id,
                    )
                    return None
                raise
            flag_id = cursor.lastrowid
            await cursor.close()
        logger.info("sqlite_insert_flag", flag_id=flag_id, listing_id=flag.listing_id)
        return replace(flag, id=flag_id)

    async def compare_and_set_flag(self, flag: Flag, *, expected_status: FlagStatus) -> bool:
        async with self.transaction():
            with _translate_errors("compare_and_set_flag"):
                cursor = await self._db().execute(
                    """
                    UPDATE flags SET status = ?, reviewed_by = ?, reviewed_at = ?, review_notes = ?
                    WHERE id = ? AND status = ?
                    """,
                    (
                        flag.status.value,
                        flag.reviewed_by,
                        _ts(flag.reviewed_at),
                        flag.review_notes,
                        flag.id,
                        expected_status.value,
                    ),
                )
                updated = cursor.rowcount == 1
                await cursor.close()
        return updated

    async def list_flags_by_status(
        self,
        status: FlagStatus,
        *,
        created_before: Optional[datetime] = None,
        limit: int = 50,
    ) -> list[Flag]:
        if created_before is None:
            rows = await self._fetchall(
                "list_flags_by_status",
                "SELECT * FROM flags WHERE status = ? ORDER BY created_at, id LIMIT ?",
                (status.value, limit),
            )
        else:
            rows = await self._fetchall(
                "list_flags_by_status",
                """
                SELECT * FROM flags WHERE status = ? AND created_at <= ?
                ORDER BY created_at, id LIMIT ?
                """,
                (status.value, _ts(created_before), limit),
            )
        return [self._row_to_flag(row) for row in rows]

    async def list_flags_by_listing(self, listing_id: str) -> list[Flag]:
        rows = await self._fetchall(
            "list_flags_by_listing",
            "SELECT * FROM flags WHERE listing_id = ? ORDER BY created_at, id",
            (listing_id,),
        )
        return [self._row_to_flag(row) for row in rows]

    async def count_flags_by_reporter_since(self, reporter_id: int, since: datetime) -> int:
        row = await self._fetchone(
            "count_flags_by_reporter_since",
            "SELECT COUNT(*) FROM flags WHERE reporter_id = ? AND created_at > ?",
            (reporter_id, _ts(since)),
        )
        return int(row[0]) if row else 0

    # moderation ledger

    async def get_action(self, action_id: int) -> Optional[ModerationAction]:
        row = await self._fetchone(
            "get_action", "SELECT * FROM moderation_actions WHERE id = ?", (action_id,)
        )
        return self._row_to_action(row) if row else None

    async def append_action(self, action: ModerationAction) -> ModerationAction:
        async with self.transaction():
            if action.reference is not None:
                existing = await self.find_action_by_reference(action.reference)
                if existing is not None:
                    logger.info("sqlite_action_reference_exists", reference=action.reference)
                    return existing
            stored = await self._insert_action(action)
        return stored

    async def append_ban(
        self, action: ModerationAction, *, expected_pointer: Optional[int]
    ) -> Optional[ModerationAction]:
        async with self.transaction():
            current = await self.get_ban_pointer(action.target_user_id)
            if current != expected_pointer:
                logger.info(
                    "sqlite_ban_pointer_moved",
                    user_id=action.target_user_id,
                    expected=expected_pointer,
                    current=current,
                )
                return None
            stored = await self._insert_action(action)
            await self.set_ban_pointer(action.target_user_id, stored.id)
        return stored

    async def append_unban(
        self, action: ModerationAction, *, expected_pointer: int
    ) -> Optional[ModerationAction]:
        async with self.transaction():
            current = await self.get_ban_pointer(action.target_user_id)
            if current != expected_pointer:
                logger.info(
                    "sqlite_ban_pointer_moved",
                    user_id=action.target_user_id,
                    expected=expected_pointer,
                    current=current,
                )
                return None
            stored = await self._insert_action(action)
            await self.set_ban_pointer(action.target_user_id, None)
        return stored

    async def get_ban_pointer(self, user_id: int) -> Optional[int]:
        row = await self._fetchone(
            "get_ban_pointer", "SELECT action_id FROM ban_pointers WHERE user_id = ?", (user_id,)
        )
        return row[0] if row else None

    async def set_ban_pointer(self, user_id: int, action_id: Optional[int]) -> None:
        async with self.transaction():
            with _translate_errors("set_ban_pointer"):
                await self._db().execute(
                    """
                    INSERT INTO ban_pointers (user_id, action_id) VALUES (?, ?)
                    ON CONFLICT(user_id) DO UPDATE SET action_id = excluded.action_id
                    """,
                    (user_id, action_id),
                )

    async def list_actions_for_user(
        self,
        user_id: int,
        action_types: Optional[Iterable[ModerationActionType]] = None,
    ) -> list[ModerationAction]:
        sql = "SELECT * FROM moderation_actions WHERE target_user_id = ?"
        params: list = [user_id]
        if action_types is not None:
            types = [action_type.value for action_type in action_types]
            sql += f" AND action_type IN ({', '.join('?' for _ in types)})"
            params.extend(types)
        sql += " ORDER BY created_at DESC, id DESC"
        rows = await self._fetchall("list_actions_for_user", sql, tuple(params))
        return [self._row_to_action(row) for row in rows]

    async def find_action_by_reference(self, reference: str) -> Optional[ModerationAction]:
        row = await self._fetchone(
            "find_action_by_reference",
            "SELECT * FROM moderation_actions WHERE reference = ?",
            (reference,),
        )
        return self._row_to_action(row) if row else None

    async def list_bans_lapsing_between(self, start: datetime, end: datetime) -> list[ModerationAction]:
        rows = await self._fetchall(
            "list_bans_lapsing_between",
            """
            SELECT * FROM moderation_actions
            WHERE action_type = ? AND expires_at IS NOT NULL AND expires_at > ? AND expires_at <= ?
            ORDER BY expires_at, id
            """,
            (ModerationActionType.BAN.value, _ts(start), _ts(end)),
        )
        return [self._row_to_action(row) for row in rows]

    async def _insert_action(self, action: ModerationAction) -> ModerationAction:
        with _translate_errors("append_action"):
            cursor = await self._db().execute(
                """
                INSERT INTO moderation_actions (
                    target_user_id, target_listing_id, admin_id, action_type, reason,
                    created_at, expires_at, reference
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    action.target_user_id,
                    action.target_listing_id,
                    action.admin_id,
                    action.action_type.value,
                    action.reason,
                    _ts(action.created_at),
                    _ts(action.expires_at),
                    action.reference,
                ),
            )
            action_id = cursor.lastrowid
            await cursor.close()
        logger.info(
            "sqlite_append_action",
            action_id=action_id,
            action_type=action.action_type.value,
            target_user_id=action.target_user_id,
        )
        return replace(action, id=action_id)

    # appeals

    async def get_appeal(self, appeal_id: int) -> Optional[Appeal]:
        row = await self._fetchone("get_appeal", "SELECT * FROM appeals WHERE id = ?", (appeal_id,))
        return self._row_to_appeal(row) if row else None

    async def insert_appeal(self, appeal: Appeal) -> Optional[Appeal]:
        async with self.transaction():
            try:
                with _translate_errors("insert_appeal"):
                    cursor = await self._db().execute(
                        """
                        INSERT INTO appeals (
                            moderation_action_id, user_id, text, status, created_at,
                            resolved_at, resolved_by, admin_response
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            appeal.moderation_action_id,
                            appeal.user_id,
                            appeal.text,
                            appeal.status.value,
                            _ts(appeal.created_at),
                            _ts(appeal.resolved_at),
                            appeal.resolved_by,
                            appeal.admin_response,
                        ),
                    )
            except InternalError as exc:
                if isinstance(exc.__cause__, sqlite3.IntegrityError):
                    return None
                raise
            appeal_id = cursor.lastrowid
            await cursor.close()
        return replace(appeal, id=appeal_id)

    async def find_open_appeal(self, moderation_action_id: int) -> Optional[Appeal]:
        row = await self._fetchone(
            "find_open_appeal",
            "SELECT * FROM appeals WHERE moderation_action_id = ? AND status = ?",
            (moderation_action_id, AppealStatus.OPEN.value),
        )
        return self._row_to_appeal(row) if row else None

    async def compare_and_set_appeal(self, appeal: Appeal, *, expected_status: AppealStatus) -> bool:
        async with self.transaction():
            with _translate_errors("compare_and_set_appeal"):
                cursor = await self._db().execute(
                    """
                    UPDATE appeals SET status = ?, resolved_at = ?, resolved_by = ?, admin_response = ?
                    WHERE id = ? AND status = ?
                    """,
                    (
                        appeal.status.value,
                        _ts(appeal.resolved_at),
                        appeal.resolved_by,
                        appeal.admin_response,
                        appeal.id,
                        expected_status.value,
                    ),
                )
                updated = cursor.rowcount == 1
                await cursor.close()
        return updated

    async def list_appeals_by_status(self, status: AppealStatus, limit: int = 50) -> list[Appeal]:
        rows = await self._fetchall(
            "list_appeals_by_status",
            "SELECT * FROM appeals WHERE status = ? ORDER BY created_at, id LIMIT ?",
            (status.value, limit),
        )
        return [self._row_to_appeal(row) for row in rows]

    async def list_appeals_for_user(self, user_id: int) -> list[Appeal]:
        rows = await self._fetchall(
            "list_appeals_for_user",
            "SELECT * FROM appeals WHERE user_id = ? ORDER BY created_at DESC, id DESC",
            (user_id,),
        )
        return [self._row_to_appeal(row) for row in rows]

    # admins

    async def is_admin(self, user_id: int) -> bool:
        row = await self._fetchone("is_admin", "SELECT 1 FROM admins WHERE user_id = ?", (user_id,))
        return row is not None

    async def add_admin(self, user_id: int, granted_by: Optional[int], granted_at: datetime) -> bool:
        async with self.transaction():
            with _translate_errors("add_admin"):
                cursor = await self._db().execute(
                    "INSERT OR IGNORE INTO admins (user_id, granted_by, granted_at) VALUES (?, ?, ?)",
                    (user_id, granted_by, _ts(granted_at)),
                )
                added = cursor.rowcount == 1
                await cursor.close()
        return added

    async def remove_admin(self, user_id: int) -> bool:
        async with self.transaction():
            with _translate_errors("remove_admin"):
                cursor = await self._db().execute("DELETE FROM admins WHERE user_id = ?", (user_id,))
                removed = cursor.rowcount == 1
                await cursor.close()
        return removed

    async def list_admins(self) -> list[int]:
        rows = await self._fetchall("list_admins", "SELECT user_id FROM admins ORDER BY user_id")
        return [row[0] for row in rows]

    # outbox

    async def enqueue_events(self, events: Iterable[DomainEvent]) -> None:
        entries = [
            (
                event.kind.value,
                json.dumps(event.payload),
                _ts(event.occurred_at),
                EventStatus.PENDING.value,
            )
            for event in events
        ]
        if not entries:
            return
        async with self.transaction():
            with _translate_errors("enqueue_events"):
                await self._db().executemany(
                    "INSERT INTO outbox (kind, payload_json, occurred_at, status) VALUES (?, ?, ?, ?)",
                    entries,
                )
        logger.debug("sqlite_enqueue_events", count=len(entries))

    async def fetch_pending_events(self, limit: int) -> list[DomainEvent]:
        rows = await self._fetchall(
            "fetch_pending_events",
            "SELECT * FROM outbox WHERE status = ? ORDER BY id LIMIT ?",
            (EventStatus.PENDING.value, limit),
        )
        return [
            DomainEvent(
                id=row["id"],
                kind=EventKind(row["kind"]),
                payload=json.loads(row["payload_json"]),
                occurred_at=_dt(row["occurred_at"]),
                attempts=row["attempts"],
                status=EventStatus(row["status"]),
                last_error=row["last_error"],
            )
            for row in rows
        ]

    async def mark_event_done(self, event_id: int) -> None:
        async with self.transaction():
            with _translate_errors("mark_event_done"):
                await self._db().execute(
                    "UPDATE outbox SET status = ?, attempts = attempts + 1 WHERE id = ?",
                    (EventStatus.DONE.value, event_id),
                )

    async def mark_event_failed(self, event_id: int, error: str, *, dead: bool) -> None:
        status = EventStatus.DEAD if dead else EventStatus.PENDING
        async with self.transaction():
            with _translate_errors("mark_event_failed"):
                await self._db().execute(
                    "UPDATE outbox SET status = ?, attempts = attempts + 1, last_error = ? WHERE id = ?",
                    (status.value, error, event_id),
                )

    # cascade checkpoints

    async def get_checkpoint(self, job_key: str) -> Optional[str]:
        row = await self._fetchone(
            "get_checkpoint", "SELECT value FROM cascade_checkpoints WHERE job_key = ?", (job_key,)
        )
        return row[0] if row else None

    async def save_checkpoint(self, job_key: str, value: str) -> None:
        async with self.transaction():
            with _translate_errors("save_checkpoint"):
                await self._db().execute(
                    """
                    INSERT INTO cascade_checkpoints (job_key, value) VALUES (?, ?)
                    ON CONFLICT(job_key) DO UPDATE SET value = excluded.value
                    """,
                    (job_key, value),
                )

    async def clear_checkpoint(self, job_key: str) -> None:
        async with self.transaction():
            with _translate_errors("clear_checkpoint"):
                await self._db().execute(
                    "DELETE FROM cascade_checkpoints WHERE job_key = ?", (job_key,)
                )

    async def list_checkpoint_keys(self, prefix: str) -> list[str]:
        rows = await self._fetchall(
            "list_checkpoint_keys",
            "SELECT job_key FROM cascade_checkpoints WHERE substr(job_key, 1, ?) = ? ORDER BY job_key",
            (len(prefix), prefix),
        )
        return [row[0] for row in rows]

    # blocked words

    async def add_blocked_word(self, entry: BlockedWord) -> bool:
        async with self.transaction():
            with _translate_errors("add_blocked_word"):
                cursor = await self._db().execute(
                    """
                    INSERT INTO blocked_words (word, severity, added_by, created_at) VALUES (?, ?, ?, ?)
                    ON CONFLICT(word) DO UPDATE SET severity = excluded.severity
                    WHERE blocked_words.severity != excluded.severity
                    """,
                    (entry.word, entry.severity.value, entry.added_by, _ts(entry.created_at)),
                )
                changed = cursor.rowcount == 1
                await cursor.close()
        return changed

    async def remove_blocked_word(self, word: str) -> bool:
        async with self.transaction():
            with _translate_errors("remove_blocked_word"):
                cursor = await self._db().execute("DELETE FROM blocked_words WHERE word = ?", (word,))
                removed = cursor.rowcount == 1
                await cursor.close()
        return removed

    async def list_blocked_words(self) -> list[BlockedWord]:
        rows = await self._fetchall("list_blocked_words", "SELECT * FROM blocked_words ORDER BY word")
        return [
            BlockedWord(
                word=row["word"],
                severity=BlockedWordSeverity(row["severity"]),
                added_by=row["added_by"],
                created_at=_dt(row["created_at"]),
            )
            for row in rows
        ]

    # row mapping

    def _listing_params(self, listing: Listing) -> tuple:
        return (
            listing.id,
            listing.owner_id,
            listing.category_id,
            listing.title,
            listing.description,
            str(listing.price_usd),
            json.dumps(listing.images),
            listing.contact_username,
            listing.status.value,
            int(listing.is_sticky),
            int(listing.is_highlighted),
            int(listing.auto_bump_enabled),
            listing.view_count,
            listing.bump_count,
            _ts(listing.created_at),
            _ts(listing.published_at),
            _ts(listing.bumped_at),
            _ts(listing.archived_at),
            _ts(listing.expires_at),
            listing.admin_notes,
            listing.version,
        )

    def _row_to_listing(self, row: aiosqlite.Row) -> Listing:
        return Listing(
            id=row["id"],
            owner_id=row["owner_id"],
            category_id=row["category_id"],
            title=row["title"],
            description=row["description"],
            price_usd=Decimal(row["price_usd"]),
            images=json.loads(row["images_json"]),
            contact_username=row["contact_username"],
            status=ListingStatus(row["status"]),
            is_sticky=bool(row["is_sticky"]),
            is_highlighted=bool(row["is_highlighted"]),
            auto_bump_enabled=bool(row["auto_bump_enabled"]),
            view_count=row["view_count"],
            bump_count=row["bump_count"],
            created_at=_dt(row["created_at"]),
            published_at=_dt(row["published_at"]),
            bumped_at=_dt(row["bumped_at"]),
            archived_at=_dt(row["archived_at"]),
            expires_at=_dt(row["expires_at"]),
            admin_notes=row["admin_notes"],
            version=row["version"],
        )

    def _row_to_flag(self, row: aiosqlite.Row) -> Flag:
        return Flag(
            id=row["id"],
            listing_id=row["listing_id"],
            reporter_id=row["reporter_id"],
            reason=FlagReason(row["reason"]),
            description=row["description"],
            status=FlagStatus(row["status"]),
            created_at=_dt(row["created_at"]),
            reviewed_by=row["reviewed_by"],
            reviewed_at=_dt(row["reviewed_at"]),
            review_notes=row["review_notes"],
        )

    def _row_to_action(self, row: aiosqlite.Row) -> ModerationAction:
        return ModerationAction(
            id=row["id"],
            target_user_id=row["target_user_id"],
            target_listing_id=row["target_listing_id"],
            admin_id=row["admin_id"],
            action_type=ModerationActionType(row["action_type"]),
            reason=row["reason"],
            created_at=_dt(row["created_at"]),
            expires_at=_dt(row["expires_at"]),
            reference=row["reference"],
        )

    def _row_to_appeal(self, row: aiosqlite.Row) -> Appeal:
        return Appeal(
            id=row["id"],
            moderation_action_id=row["moderation_action_id"],
            user_id=row["user_id"],
            text=row["text"],
            status=AppealStatus(row["status"]),
            created_at=_dt(row["created_at"]),
            resolved_at=_dt(row["resolved_at"]),
            resolved_by=row["resolved_by"],
            admin_response=row["admin_response"],
        )
