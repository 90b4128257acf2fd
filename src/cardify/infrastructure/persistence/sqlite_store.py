"""
SQLite Local Store — Infrastructure adapter for the device-local cache.

Implements LocalStore on a single SQLite file through aiosqlite. Every public
mutation runs in one IMMEDIATE transaction under a single-writer lock.
"""

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, TypeVar

import aiosqlite

from cardify.application.id_service import generate_entry_id
from cardify.domain.constants import (
    DESCRIPTION_MAX_LENGTH,
    MIN_EASE_FACTOR,
    TITLE_MAX_LENGTH,
    TITLE_MIN_LENGTH,
)
from cardify.domain.errors import NotFoundError, StorageError, ValidationError
from cardify.domain.interfaces import LocalStore
from cardify.domain.models import (
    Card,
    Deck,
    DeckSummary,
    EntityTable,
    EntryStatus,
    SRSState,
    SyncOperation,
    SyncQueueEntry,
    format_timestamp,
    parse_timestamp,
    utc_now,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

SCHEMA = """
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS decks (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    description TEXT,
    cover_image_path TEXT,
    is_public INTEGER NOT NULL DEFAULT 0,
    owner_id TEXT,
    tags TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS cards (
    id TEXT PRIMARY KEY,
    deck_id TEXT NOT NULL,
    front_content TEXT NOT NULL,
    back_content TEXT NOT NULL,
    tags TEXT,
    media_path TEXT,
    ease_factor REAL NOT NULL,
    interval INTEGER NOT NULL,
    repetitions INTEGER NOT NULL,
    due_date TEXT NOT NULL,
    last_reviewed_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    FOREIGN KEY (deck_id) REFERENCES decks (id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS ix_cards_deck ON cards (deck_id);
CREATE INDEX IF NOT EXISTS ix_cards_due ON cards (due_date);

CREATE TABLE IF NOT EXISTS sync_queue (
    id TEXT PRIMARY KEY,
    entity_table TEXT NOT NULL,
    entity_id TEXT NOT NULL,
    operation TEXT NOT NULL,
    payload TEXT NOT NULL,
    created_at TEXT NOT NULL,
    retry_count INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL DEFAULT 'pending',
    revision INTEGER NOT NULL DEFAULT 1,
    next_attempt_at TEXT,
    last_error TEXT
);

CREATE UNIQUE INDEX IF NOT EXISTS ux_sync_queue_pending
    ON sync_queue (entity_table, entity_id) WHERE status = 'pending';

CREATE TABLE IF NOT EXISTS settings (
    key TEXT PRIMARY KEY,
    value TEXT
);
"""


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def validate_deck(deck: Deck) -> None:
    if not deck.id:
        raise ValidationError("Deck id is required")
    title = (deck.title or "").strip()
    if not TITLE_MIN_LENGTH <= len(title) <= TITLE_MAX_LENGTH:
        raise ValidationError(
            f"Deck title must be {TITLE_MIN_LENGTH}-{TITLE_MAX_LENGTH} characters"
        )
    if deck.description and len(deck.description) > DESCRIPTION_MAX_LENGTH:
        raise ValidationError(
            f"Deck description must be at most {DESCRIPTION_MAX_LENGTH} characters"
        )


def validate_srs(srs: SRSState) -> None:
    if srs.ease_factor < MIN_EASE_FACTOR:
        raise ValidationError(f"ease_factor must be >= {MIN_EASE_FACTOR}")
    if srs.interval < 0 or srs.repetitions < 0:
        raise ValidationError("interval and repetitions must be non-negative")
    if srs.due_date is None:
        raise ValidationError("due_date is required")


def validate_card(card: Card) -> None:
    if not card.id:
        raise ValidationError("Card id is required")
    if not card.deck_id:
        raise ValidationError(f"Card {card.id} has no deck")
    if not (card.front_content or "").strip() or not (card.back_content or "").strip():
        raise ValidationError(f"Card {card.id} needs both front and back content")
    validate_srs(card.srs)


# ---------------------------------------------------------------------------
# Row mapping
# ---------------------------------------------------------------------------


def _dump_tags(tags: Iterable[str] | None) -> str | None:
    return json.dumps(sorted(tags)) if tags else None


def _load_tags(raw: str | None) -> set[str]:
    return set(json.loads(raw)) if raw else set()


def _row_to_deck(row: aiosqlite.Row) -> Deck:
    return Deck(
        id=row["id"],
        title=row["title"],
        owner_id=row["owner_id"],
        description=row["description"],
        is_public=bool(row["is_public"]),
        tags=_load_tags(row["tags"]),
        cover_image_path=row["cover_image_path"],
        created_at=parse_timestamp(row["created_at"]),
        updated_at=parse_timestamp(row["updated_at"]),
    )


def _row_to_srs(row: aiosqlite.Row) -> SRSState:
    return SRSState(
        ease_factor=row["ease_factor"],
        interval=row["interval"],
        repetitions=row["repetitions"],
        due_date=parse_timestamp(row["due_date"]),
        last_reviewed_at=parse_timestamp(row["last_reviewed_at"]),
    )


def _row_to_card(row: aiosqlite.Row) -> Card:
    return Card(
        id=row["id"],
        deck_id=row["deck_id"],
        front_content=row["front_content"],
        back_content=row["back_content"],
        srs=_row_to_srs(row),
        media_path=row["media_path"],
        tags=_load_tags(row["tags"]),
        created_at=parse_timestamp(row["created_at"]),
        updated_at=parse_timestamp(row["updated_at"]),
    )


def _row_to_entry(row: aiosqlite.Row) -> SyncQueueEntry:
    return SyncQueueEntry(
        id=row["id"],
        entity_table=EntityTable(row["entity_table"]),
        entity_id=row["entity_id"],
        operation=SyncOperation(row["operation"]),
        payload=json.loads(row["payload"]),
        created_at=parse_timestamp(row["created_at"]),
        retry_count=row["retry_count"],
        status=EntryStatus(row["status"]),
        revision=row["revision"],
        next_attempt_at=parse_timestamp(row["next_attempt_at"]),
        last_error=row["last_error"],
    )


def coalesce(
    existing: SyncOperation,
    incoming: SyncOperation,
    old_payload: dict[str, Any],
    new_payload: dict[str, Any],
) -> tuple[SyncOperation, dict[str, Any]]:
    """Fold a new mutation into the pending one for the same entity."""
    if incoming == SyncOperation.DELETE:
        return SyncOperation.DELETE, new_payload
    if existing == SyncOperation.DELETE:
        # Re-created after a pending delete: the remote still has the entity.
        return SyncOperation.UPDATE, new_payload
    if existing == SyncOperation.CREATE:
        return SyncOperation.CREATE, {**old_payload, **new_payload}
    return SyncOperation.UPDATE, {**old_payload, **new_payload}




async def _fetchone(db: aiosqlite.Connection, sql: str, params: Iterable[Any] = ()) -> Any:
    async with db.execute(sql, tuple(params)) as cursor:
        return await cursor.fetchone()


async def _fetchall(db: aiosqlite.Connection, sql: str, params: Iterable[Any] = ()) -> list[Any]:
    async with db.execute(sql, tuple(params)) as cursor:
        return list(await cursor.fetchall())


async def _changes(db: aiosqlite.Connection, sql: str, params: Iterable[Any] = ()) -> int:
    async with db.execute(sql, tuple(params)) as cursor:
        return cursor.rowcount


class SqliteLocalStore(LocalStore):
    """
    Durable store for decks, cards, the sync queue and scalar settings.

    One instance per database file; create it, `await init()`, pass it to
    collaborators, and `await close()` on shutdown.
    """

    def __init__(self, db_path: Path | str, busy_timeout: float = 5.0):
        self.db_path = Path(db_path)
        self.busy_timeout = busy_timeout
        self._write_lock = asyncio.Lock()
        self._initialized = False
        self._closed = False

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _connect(self) -> AsyncIterator[aiosqlite.Connection]:
        async with aiosqlite.connect(
            self.db_path, timeout=self.busy_timeout, isolation_level=None
        ) as db:
            db.row_factory = aiosqlite.Row
            await db.execute("PRAGMA foreign_keys = ON")
            yield db

    def _ensure_open(self) -> None:
        if self._closed:
            raise StorageError("Local store is closed")
        if not self._initialized:
            raise StorageError("Local store is not initialized; call init() first")

    async def _run(self, fn: Callable[..., Awaitable[T]], write: bool, *args: Any) -> T:
        self._ensure_open()
        try:
            if not write:
                async with self._connect() as db:
                    return await fn(db, *args)
            async with self._write_lock, self._connect() as db:
                await db.execute("BEGIN IMMEDIATE")
                try:
                    result = await fn(db, *args)
                except BaseException:
                    await db.execute("ROLLBACK")
                    raise
                await db.execute("COMMIT")
                return result
        except aiosqlite.Error as e:
            logger.error(f"[store] {fn.__name__} failed: {e}")
            raise StorageError(f"{fn.__name__} failed: {e}") from e

    async def _read(self, fn: Callable[..., Awaitable[T]], *args: Any) -> T:
        return await self._run(fn, False, *args)

    async def _write(self, fn: Callable[..., Awaitable[T]], *args: Any) -> T:
        return await self._run(fn, True, *args)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def init(self) -> None:
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            async with aiosqlite.connect(self.db_path, timeout=self.busy_timeout) as db:
                await db.executescript(SCHEMA)
        except (aiosqlite.Error, OSError) as e:
            raise StorageError(f"Failed to initialize {self.db_path}: {e}") from e
        self._initialized = True
        self._closed = False
        logger.debug(f"[store] initialized at {self.db_path}")

    async def close(self) -> None:
        self._closed = True

    # ------------------------------------------------------------------
    # Queue helpers (run inside a write transaction)
    # ------------------------------------------------------------------

    @staticmethod
    async def _pending_row(
        db: aiosqlite.Connection, table: EntityTable, entity_id: str
    ) -> aiosqlite.Row | None:
        return await _fetchone(
            db,
            "SELECT * FROM sync_queue WHERE entity_table = ? AND entity_id = ? "
            "AND status = 'pending'",
            (table.value, entity_id),
        )

    async def _enqueue(self, db: aiosqlite.Connection, entry: SyncQueueEntry) -> SyncQueueEntry:
        row = await self._pending_row(db, entry.entity_table, entry.entity_id)
        if row is None:
            await db.execute(
                "INSERT INTO sync_queue (id, entity_table, entity_id, operation, payload, "
                "created_at, retry_count, status, revision, next_attempt_at, last_error) "
                "VALUES (?, ?, ?, ?, ?, ?, 0, 'pending', 1, NULL, NULL)",
                (
                    entry.id,
                    entry.entity_table.value,
                    entry.entity_id,
                    entry.operation.value,
                    json.dumps(entry.payload),
                    format_timestamp(entry.created_at),
                ),
            )
            return SyncQueueEntry(
                id=entry.id,
                entity_table=entry.entity_table,
                entity_id=entry.entity_id,
                operation=entry.operation,
                payload=dict(entry.payload),
                created_at=entry.created_at,
            )

        existing = _row_to_entry(row)
        operation, payload = coalesce(
            existing.operation, entry.operation, existing.payload, entry.payload
        )
        await db.execute(
            "UPDATE sync_queue SET operation = ?, payload = ?, revision = revision + 1, "
            "retry_count = 0, next_attempt_at = NULL, last_error = NULL WHERE id = ?",
            (operation.value, json.dumps(payload), existing.id),
        )
        logger.debug(
            f"[queue] coalesced {entry.operation.value} into {existing.operation.value} "
            f"for {existing.entity_table.value}/{existing.entity_id} -> {operation.value}"
        )
        return _row_to_entry(
            await _fetchone(db, "SELECT * FROM sync_queue WHERE id = ?", (existing.id,))
        )

    async def _track(
        self,
        db: aiosqlite.Connection,
        table: EntityTable,
        entity_id: str,
        operation: SyncOperation,
        payload: dict[str, Any],
    ) -> SyncQueueEntry:
        return await self._enqueue(
            db,
            SyncQueueEntry(
                id=generate_entry_id(),
                entity_table=table,
                entity_id=entity_id,
                operation=operation,
                payload=payload,
            ),
        )

    @staticmethod
    async def _purge_entries(
        db: aiosqlite.Connection,
        table: EntityTable,
        ids: list[str],
        dead_letters_only: bool = False,
    ) -> None:
        sql = "DELETE FROM sync_queue WHERE entity_table = ? AND entity_id = ?"
        if dead_letters_only:
            sql += " AND status = 'dead_letter'"
        await db.executemany(sql, [(table.value, entity_id) for entity_id in ids])

    # ------------------------------------------------------------------
    # Decks
    # ------------------------------------------------------------------

    @staticmethod
    async def _upsert_deck(db: aiosqlite.Connection, deck: Deck) -> bool:
        """Insert or update a deck row. Returns True when the row already existed."""
        existed = await _fetchone(db, "SELECT 1 FROM decks WHERE id = ?", (deck.id,)) is not None
        await db.execute(
            "INSERT INTO decks (id, title, description, cover_image_path, is_public, "
            "owner_id, tags, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?) "
            "ON CONFLICT(id) DO UPDATE SET title = excluded.title, "
            "description = excluded.description, "
            "cover_image_path = excluded.cover_image_path, "
            "is_public = excluded.is_public, owner_id = excluded.owner_id, "
            "tags = excluded.tags, created_at = excluded.created_at, "
            "updated_at = excluded.updated_at",
            (
                deck.id,
                deck.title.strip(),
                deck.description,
                deck.cover_image_path,
                1 if deck.is_public else 0,
                deck.owner_id,
                _dump_tags(deck.tags),
                format_timestamp(deck.created_at),
                format_timestamp(deck.updated_at),
            ),
        )
        return existed

    async def put_decks(self, decks: Iterable[Deck], track: bool = False) -> None:
        batch = list(decks)
        for deck in batch:
            validate_deck(deck)

        async def _put(db: aiosqlite.Connection) -> None:
            for deck in batch:
                existed = await self._upsert_deck(db, deck)
                if track:
                    op = SyncOperation.UPDATE if existed else SyncOperation.CREATE
                    await self._track(db, EntityTable.DECKS, deck.id, op, deck.to_payload())

        await self._write(_put)

    async def get_decks(self) -> list[Deck]:
        async def _get(db: aiosqlite.Connection) -> list[Deck]:
            rows = await _fetchall(db, "SELECT * FROM decks ORDER BY updated_at DESC")
            return [_row_to_deck(r) for r in rows]

        return await self._read(_get)

    async def get_deck(self, deck_id: str) -> Deck | None:
        async def _get(db: aiosqlite.Connection) -> Deck | None:
            row = await _fetchone(db, "SELECT * FROM decks WHERE id = ?", (deck_id,))
            return _row_to_deck(row) if row else None

        return await self._read(_get)

    async def get_deck_summaries(self, now: datetime | None = None) -> list[DeckSummary]:
        now_text = format_timestamp(now or utc_now())

        async def _get(db: aiosqlite.Connection) -> list[DeckSummary]:
            rows = await _fetchall(
                db,
                "SELECT d.*, COUNT(c.id) AS card_count, "
                "COALESCE(SUM(CASE WHEN c.due_date <= ? THEN 1 ELSE 0 END), 0) AS due_count "
                "FROM decks d LEFT JOIN cards c ON c.deck_id = d.id "
                "GROUP BY d.id ORDER BY d.updated_at DESC",
                (now_text,),
            )
            return [
                DeckSummary(
                    deck=_row_to_deck(r), card_count=r["card_count"], due_count=r["due_count"]
                )
                for r in rows
            ]

        return await self._read(_get)

    async def _delete_deck_rows(
        self, db: aiosqlite.Connection, deck_id: str, track: bool = False
    ) -> bool:
        rows = await _fetchall(db, "SELECT id FROM cards WHERE deck_id = ?", (deck_id,))
        card_ids = [r["id"] for r in rows]
        if track:
            # The remote keeps a deck's cards when the deck goes; each card is
            # deleted on its own. A pending create folds into the delete.
            await self._purge_entries(db, EntityTable.CARDS, card_ids, dead_letters_only=True)
            for card_id in card_ids:
                await self._track(
                    db, EntityTable.CARDS, card_id, SyncOperation.DELETE, {"id": card_id}
                )
        else:
            await self._purge_entries(db, EntityTable.CARDS, card_ids)
        await db.execute("DELETE FROM cards WHERE deck_id = ?", (deck_id,))
        return await _changes(db, "DELETE FROM decks WHERE id = ?", (deck_id,)) > 0

    async def delete_deck(self, deck_id: str, track: bool = False) -> bool:
        async def _delete(db: aiosqlite.Connection) -> bool:
            deleted = await self._delete_deck_rows(db, deck_id, track=track)
            if deleted and track:
                await self._track(
                    db, EntityTable.DECKS, deck_id, SyncOperation.DELETE, {"id": deck_id}
                )
            return deleted

        return await self._write(_delete)

    # ------------------------------------------------------------------
    # Cards
    # ------------------------------------------------------------------

    @staticmethod
    async def _upsert_card(db: aiosqlite.Connection, card: Card) -> bool:
        existed = await _fetchone(db, "SELECT 1 FROM cards WHERE id = ?", (card.id,)) is not None
        srs = card.srs
        await db.execute(
            "INSERT INTO cards (id, deck_id, front_content, back_content, tags, media_path, "
            "ease_factor, interval, repetitions, due_date, last_reviewed_at, created_at, "
            "updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?) "
            "ON CONFLICT(id) DO UPDATE SET deck_id = excluded.deck_id, "
            "front_content = excluded.front_content, back_content = excluded.back_content, "
            "tags = excluded.tags, media_path = excluded.media_path, "
            "ease_factor = excluded.ease_factor, interval = excluded.interval, "
            "repetitions = excluded.repetitions, due_date = excluded.due_date, "
            "last_reviewed_at = excluded.last_reviewed_at, "
            "created_at = excluded.created_at, updated_at = excluded.updated_at",
            (
                card.id,
                card.deck_id,
                card.front_content,
                card.back_content,
                _dump_tags(card.tags),
                card.media_path,
                srs.ease_factor,
                srs.interval,
                srs.repetitions,
                format_timestamp(srs.due_date),
                format_timestamp(srs.last_reviewed_at),
                format_timestamp(card.created_at),
                format_timestamp(card.updated_at),
            ),
        )
        return existed

    async def put_cards(self, cards: Iterable[Card], track: bool = False) -> None:
        batch = list(cards)
        for card in batch:
            validate_card(card)

        async def _put(db: aiosqlite.Connection) -> None:
            for card in batch:
                deck_row = await _fetchone(db, "SELECT 1 FROM decks WHERE id = ?", (card.deck_id,))
                if deck_row is None:
                    raise ValidationError(
                        f"Card {card.id} references unknown deck {card.deck_id}"
                    )
                existed = await self._upsert_card(db, card)
                if track:
                    op = SyncOperation.UPDATE if existed else SyncOperation.CREATE
                    await self._track(db, EntityTable.CARDS, card.id, op, card.to_payload())

        await self._write(_put)

    async def get_cards(self) -> list[Card]:
        async def _get(db: aiosqlite.Connection) -> list[Card]:
            rows = await _fetchall(db, "SELECT * FROM cards ORDER BY created_at ASC, rowid ASC")
            return [_row_to_card(r) for r in rows]

        return await self._read(_get)

    async def get_card(self, card_id: str) -> Card | None:
        async def _get(db: aiosqlite.Connection) -> Card | None:
            row = await _fetchone(db, "SELECT * FROM cards WHERE id = ?", (card_id,))
            return _row_to_card(row) if row else None

        return await self._read(_get)

    async def get_cards_by_deck(self, deck_id: str) -> list[Card]:
        async def _get(db: aiosqlite.Connection) -> list[Card]:
            rows = await _fetchall(
                db,
                "SELECT * FROM cards WHERE deck_id = ? ORDER BY created_at ASC, rowid ASC",
                (deck_id,),
            )
            return [_row_to_card(r) for r in rows]

        return await self._read(_get)

    async def update_card_srs(
        self,
        card_id: str,
        new_state: SRSState | Callable[[SRSState], SRSState],
        track: bool = True,
    ) -> SRSState:
        async def _update(db: aiosqlite.Connection) -> SRSState:
            row = await _fetchone(db, "SELECT * FROM cards WHERE id = ?", (card_id,))
            if row is None:
                raise NotFoundError(f"Card {card_id} not found")
            card = _row_to_card(row)
            state = new_state(card.srs) if callable(new_state) else new_state
            validate_srs(state)
            updated = card.with_srs(state, updated_at=utc_now())
            await db.execute(
                "UPDATE cards SET ease_factor = ?, interval = ?, repetitions = ?, "
                "due_date = ?, last_reviewed_at = ?, updated_at = ? WHERE id = ?",
                (
                    state.ease_factor,
                    state.interval,
                    state.repetitions,
                    format_timestamp(state.due_date),
                    format_timestamp(state.last_reviewed_at),
                    format_timestamp(updated.updated_at),
                    card_id,
                ),
            )
            if track:
                await self._track(
                    db, EntityTable.CARDS, card_id, SyncOperation.UPDATE, updated.to_payload()
                )
            return state

        return await self._write(_update)

    async def delete_card(self, card_id: str, track: bool = False) -> bool:
        async def _delete(db: aiosqlite.Connection) -> bool:
            deleted = await _changes(db, "DELETE FROM cards WHERE id = ?", (card_id,)) > 0
            # Stale dead letters go with the card; a pending entry is folded into the delete.
            await self._purge_entries(db, EntityTable.CARDS, [card_id], dead_letters_only=True)
            if track and deleted:
                await self._track(
                    db, EntityTable.CARDS, card_id, SyncOperation.DELETE, {"id": card_id}
                )
            elif not track:
                await self._purge_entries(db, EntityTable.CARDS, [card_id])
            return deleted

        return await self._write(_delete)

    # ------------------------------------------------------------------
    # Sync queue
    # ------------------------------------------------------------------

    async def enqueue_sync(self, entry: SyncQueueEntry) -> SyncQueueEntry:
        if not entry.entity_id:
            raise ValidationError("Sync entry needs an entity id")
        return await self._write(self._enqueue, entry)

    async def drain_pending_sync(self, table: EntityTable) -> list[SyncQueueEntry]:
        async def _drain(db: aiosqlite.Connection) -> list[SyncQueueEntry]:
            rows = await _fetchall(
                db,
                "SELECT * FROM sync_queue WHERE entity_table = ? AND status = 'pending' "
                "ORDER BY created_at ASC, rowid ASC",
                (table.value,),
            )
            return [_row_to_entry(r) for r in rows]

        return await self._read(_drain)

    async def pending_entity_ids(self, table: EntityTable) -> set[str]:
        async def _ids(db: aiosqlite.Connection) -> set[str]:
            rows = await _fetchall(
                db,
                "SELECT entity_id FROM sync_queue WHERE entity_table = ? AND status = 'pending'",
                (table.value,),
            )
            return {r["entity_id"] for r in rows}

        return await self._read(_ids)

    async def get_entry(self, entry_id: str) -> SyncQueueEntry | None:
        async def _get(db: aiosqlite.Connection) -> SyncQueueEntry | None:
            row = await _fetchone(db, "SELECT * FROM sync_queue WHERE id = ?", (entry_id,))
            return _row_to_entry(row) if row else None

        return await self._read(_get)

    async def mark_synced(self, entry: SyncQueueEntry) -> bool:
        async def _mark(db: aiosqlite.Connection) -> bool:
            row = await _fetchone(
                db, "SELECT * FROM sync_queue WHERE id = ? AND status = 'pending'", (entry.id,)
            )
            if row is None:
                logger.debug(f"[queue] double ack for {entry.id}; ignoring")
                return False
            current = _row_to_entry(row)
            if current.revision == entry.revision:
                await db.execute("DELETE FROM sync_queue WHERE id = ?", (entry.id,))
                return True

            # A newer mutation coalesced while this one was in flight; keep it,
            # adjusted for what the remote now holds.
            operation = current.operation
            if entry.operation == SyncOperation.CREATE and operation == SyncOperation.CREATE:
                operation = SyncOperation.UPDATE
            elif entry.operation == SyncOperation.DELETE and operation == SyncOperation.UPDATE:
                operation = SyncOperation.CREATE
            await db.execute(
                "UPDATE sync_queue SET operation = ? WHERE id = ?", (operation.value, entry.id)
            )
            logger.debug(
                f"[queue] {entry.id} acked at revision {entry.revision}, "
                f"kept revision {current.revision} as {operation.value}"
            )
            return True

        return await self._write(_mark)

    async def record_failure(
        self, entry: SyncQueueEntry, error: str, next_attempt_at: datetime | None
    ) -> SyncQueueEntry | None:
        async def _record(db: aiosqlite.Connection) -> SyncQueueEntry | None:
            charged = await _changes(
                db,
                "UPDATE sync_queue SET retry_count = retry_count + 1, last_error = ?, "
                "next_attempt_at = ? WHERE id = ? AND revision = ? AND status = 'pending'",
                (error, format_timestamp(next_attempt_at), entry.id, entry.revision),
            )
            if not charged:
                return None
            return _row_to_entry(
                await _fetchone(db, "SELECT * FROM sync_queue WHERE id = ?", (entry.id,))
            )

        updated = await self._write(_record)
        if updated is None:
            logger.info(
                f"[queue] {entry.id} changed while in flight; "
                f"revision {entry.revision} failure not charged"
            )
        return updated

    async def dead_letter(self, entry: SyncQueueEntry, error: str) -> bool:
        async def _dead(db: aiosqlite.Connection) -> bool:
            moved = await _changes(
                db,
                "UPDATE sync_queue SET status = 'dead_letter', last_error = ?, "
                "retry_count = retry_count + 1, next_attempt_at = NULL "
                "WHERE id = ? AND revision = ? AND status = 'pending'",
                (error, entry.id, entry.revision),
            )
            return moved > 0

        moved = await self._write(_dead)
        if not moved:
            logger.info(
                f"[queue] {entry.id} changed while in flight; leaving the newer revision pending"
            )
        return moved

    async def list_dead_letters(self) -> list[SyncQueueEntry]:
        async def _list(db: aiosqlite.Connection) -> list[SyncQueueEntry]:
            rows = await _fetchall(
                db,
                "SELECT * FROM sync_queue WHERE status = 'dead_letter' "
                "ORDER BY created_at ASC, rowid ASC",
            )
            return [_row_to_entry(r) for r in rows]

        return await self._read(_list)

    async def requeue(self, entry_id: str) -> SyncQueueEntry:
        async def _requeue(db: aiosqlite.Connection) -> SyncQueueEntry:
            row = await _fetchone(
                db, "SELECT * FROM sync_queue WHERE id = ? AND status = 'dead_letter'", (entry_id,)
            )
            if row is None:
                raise NotFoundError(f"Dead letter {entry_id} not found")
            dead = _row_to_entry(row)
            pending = await self._pending_row(db, dead.entity_table, dead.entity_id)
            if pending is not None:
                # A newer mutation supersedes the dead letter.
                await db.execute("DELETE FROM sync_queue WHERE id = ?", (entry_id,))
                return _row_to_entry(pending)
            await db.execute(
                "UPDATE sync_queue SET status = 'pending', retry_count = 0, "
                "next_attempt_at = NULL, revision = revision + 1 WHERE id = ?",
                (entry_id,),
            )
            return _row_to_entry(
                await _fetchone(db, "SELECT * FROM sync_queue WHERE id = ?", (entry_id,))
            )

        return await self._write(_requeue)

    async def discard(self, entry_id: str) -> bool:
        async def _discard(db: aiosqlite.Connection) -> bool:
            removed = await _changes(
                db, "DELETE FROM sync_queue WHERE id = ? AND status = 'dead_letter'", (entry_id,)
            )
            return removed > 0

        return await self._write(_discard)

    async def count_pending(self) -> int:
        async def _count(db: aiosqlite.Connection) -> int:
            row = await _fetchone(db, "SELECT COUNT(*) FROM sync_queue WHERE status = 'pending'")
            return row[0]

        return await self._read(_count)

    # ------------------------------------------------------------------
    # Pull merge
    # ------------------------------------------------------------------

    async def replace_from_remote(
        self,
        table: EntityTable,
        entities: list[Deck] | list[Card],
        protected_ids: set[str],
    ) -> tuple[int, int]:
        valid: list[Any] = []
        rejected: set[str] = set()
        for entity in entities:
            try:
                if table == EntityTable.DECKS:
                    validate_deck(entity)
                else:
                    validate_card(entity)
            except ValidationError as e:
                logger.warning(
                    f"[pull] keeping local copy of invalid remote {table.value} "
                    f"record {entity.id}: {e}"
                )
                if entity.id:
                    rejected.add(entity.id)
                continue
            valid.append(entity)

        async def _merge(db: aiosqlite.Connection) -> tuple[int, int]:
            upserted = deleted = 0
            remote_ids = {e.id for e in valid}
            # Records the remote still holds but we cannot store are neither
            # written nor treated as deleted.
            protected = set(protected_ids) | rejected
            protected |= {
                r["entity_id"]
                for r in await _fetchall(
                    db,
                    "SELECT entity_id FROM sync_queue WHERE entity_table = ? "
                    "AND status = 'pending'",
                    (table.value,),
                )
            }

            if table == EntityTable.DECKS:
                for deck in valid:
                    if deck.id in protected:
                        continue
                    await self._upsert_deck(db, deck)
                    upserted += 1
                busy_decks = {
                    r["deck_id"]
                    for r in await _fetchall(
                        db,
                        "SELECT DISTINCT c.deck_id FROM cards c JOIN sync_queue q "
                        "ON q.entity_id = c.id AND q.entity_table = 'cards' "
                        "AND q.status = 'pending'",
                    )
                }
                local_ids = [r["id"] for r in await _fetchall(db, "SELECT id FROM decks")]
                for deck_id in local_ids:
                    if deck_id in remote_ids or deck_id in protected or deck_id in busy_decks:
                        continue
                    if await self._delete_deck_rows(db, deck_id):
                        deleted += 1
                return upserted, deleted

            known_decks = {r["id"] for r in await _fetchall(db, "SELECT id FROM decks")}
            for card in valid:
                if card.id in protected:
                    continue
                if card.deck_id not in known_decks:
                    logger.warning(
                        f"[pull] card {card.id} references unknown deck {card.deck_id}; skipped"
                    )
                    continue
                await self._upsert_card(db, card)
                upserted += 1
            local_ids = [r["id"] for r in await _fetchall(db, "SELECT id FROM cards")]
            for card_id in local_ids:
                if card_id in remote_ids or card_id in protected:
                    continue
                await db.execute("DELETE FROM cards WHERE id = ?", (card_id,))
                await self._purge_entries(db, EntityTable.CARDS, [card_id])
                deleted += 1
            return upserted, deleted

        return await self._write(_merge)

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    async def get_setting(self, key: str) -> str | None:
        async def _get(db: aiosqlite.Connection) -> str | None:
            row = await _fetchone(db, "SELECT value FROM settings WHERE key = ?", (key,))
            return row["value"] if row else None

        return await self._read(_get)

    async def set_setting(self, key: str, value: str) -> None:
        async def _set(db: aiosqlite.Connection) -> None:
            await db.execute(
                "INSERT INTO settings (key, value) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (key, value),
            )

        await self._write(_set)

    async def delete_setting(self, key: str) -> None:
        async def _delete(db: aiosqlite.Connection) -> None:
            await db.execute("DELETE FROM settings WHERE key = ?", (key,))

        await self._write(_delete)
