"""
Domain models for decks, cards and the sync queue.

These are pure data structures with no I/O. Remote payloads use the
camelCase shape of the remote API; local rows are handled by the store.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from cardify.domain.constants import (
    DEFAULT_EASE_FACTOR,
    TABLE_CARDS,
    TABLE_DECKS,
)
from cardify.domain.errors import ValidationError


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO-8601 string (or pass through a datetime) into an aware datetime.

    Naive values are assumed to be UTC. A trailing 'Z' is accepted.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError as e:
            raise ValidationError(f"Invalid timestamp: {value!r}") from e
    else:
        raise ValidationError(f"Invalid timestamp: {value!r}")
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def format_timestamp(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


class EntityTable(str, Enum):
    DECKS = TABLE_DECKS
    CARDS = TABLE_CARDS


class SyncOperation(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class EntryStatus(str, Enum):
    PENDING = "pending"
    DEAD_LETTER = "dead_letter"


class CardStatus(str, Enum):
    NEW = "new"
    LEARNING = "learning"
    REVIEW = "review"
    RELEARNING = "relearning"


@dataclass(frozen=True)
class SRSState:
    """
    SM-2 memory state embedded in every card.

    Attributes:
        ease_factor: Interval growth multiplier, never below 1.3.
        interval: Current interval in days (0 means relearn in minutes).
        repetitions: Consecutive successful recalls since the last failure.
        due_date: When the card is next due.
        last_reviewed_at: Time of the most recent review, if any.
    """

    ease_factor: float
    interval: int
    repetitions: int
    due_date: datetime
    last_reviewed_at: datetime | None = None

    @classmethod
    def initial(cls, now: datetime) -> "SRSState":
        return cls(
            ease_factor=DEFAULT_EASE_FACTOR,
            interval=0,
            repetitions=0,
            due_date=now,
            last_reviewed_at=None,
        )

    def to_payload(self) -> dict[str, Any]:
        return {
            "easeFactor": self.ease_factor,
            "interval": self.interval,
            "repetitions": self.repetitions,
            "dueDate": format_timestamp(self.due_date),
            "lastReviewedAt": format_timestamp(self.last_reviewed_at),
        }

    @classmethod
    def from_payload(cls, data: dict[str, Any] | None, default_due: datetime) -> "SRSState":
        data = data or {}
        ease = data.get("easeFactor")
        return cls(
            ease_factor=float(ease) if ease else DEFAULT_EASE_FACTOR,
            interval=int(data.get("interval") or 0),
            repetitions=int(data.get("repetitions") or 0),
            due_date=parse_timestamp(data.get("dueDate")) or default_due,
            last_reviewed_at=parse_timestamp(data.get("lastReviewedAt")),
        )


@dataclass
class Deck:
    id: str
    title: str
    owner_id: str | None = None
    description: str | None = None
    is_public: bool = False
    tags: set[str] = field(default_factory=set)
    cover_image_path: str | None = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "isPublic": self.is_public,
            "userId": self.owner_id,
            "tags": sorted(self.tags),
            "coverImagePath": self.cover_image_path,
            "createdAt": format_timestamp(self.created_at),
            "updatedAt": format_timestamp(self.updated_at),
        }

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> "Deck":
        """Normalize a remote deck record (accepts `_id` and `user` aliases)."""
        now = utc_now()
        deck_id = data.get("id") or data.get("_id")
        if not deck_id:
            raise ValidationError("Deck payload is missing an id")
        return cls(
            id=str(deck_id),
            title=data.get("title") or "",
            owner_id=data.get("userId") or data.get("user"),
            description=data.get("description"),
            is_public=bool(data.get("isPublic", False)),
            tags=set(data.get("tags") or []),
            cover_image_path=data.get("coverImagePath"),
            created_at=parse_timestamp(data.get("createdAt")) or now,
            updated_at=parse_timestamp(data.get("updatedAt")) or now,
        )


@dataclass
class Card:
    id: str
    deck_id: str
    front_content: str
    back_content: str
    srs: SRSState
    media_path: str | None = None
    tags: set[str] = field(default_factory=set)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @property
    def status(self) -> CardStatus:
        if self.srs.last_reviewed_at is None:
            return CardStatus.NEW
        if self.srs.interval == 0:
            return CardStatus.RELEARNING
        if self.srs.repetitions >= 3:
            return CardStatus.REVIEW
        return CardStatus.LEARNING

    def with_srs(self, srs: SRSState, updated_at: datetime | None = None) -> "Card":
        return replace(self, srs=srs, updated_at=updated_at or self.updated_at)

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "deckId": self.deck_id,
            "frontContent": self.front_content,
            "backContent": self.back_content,
            "tags": sorted(self.tags),
            "mediaPath": self.media_path,
            "srsData": self.srs.to_payload(),
            "createdAt": format_timestamp(self.created_at),
            "updatedAt": format_timestamp(self.updated_at),
        }

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> "Card":
        """Normalize a remote card record, filling SRS defaults when absent."""
        now = utc_now()
        card_id = data.get("id") or data.get("_id")
        if not card_id:
            raise ValidationError("Card payload is missing an id")
        deck_id = data.get("deckId") or data.get("deck")
        if isinstance(deck_id, dict):
            deck_id = deck_id.get("id") or deck_id.get("_id")
        return cls(
            id=str(card_id),
            deck_id=str(deck_id) if deck_id else "",
            front_content=data.get("frontContent") or "",
            back_content=data.get("backContent") or "",
            srs=SRSState.from_payload(data.get("srsData"), default_due=now),
            media_path=data.get("mediaPath"),
            tags=set(data.get("tags") or []),
            created_at=parse_timestamp(data.get("createdAt")) or now,
            updated_at=parse_timestamp(data.get("updatedAt")) or now,
        )


@dataclass
class SyncQueueEntry:
    """
    One pending (or dead-lettered) remote mutation.

    `revision` is bumped whenever a newer mutation coalesces into the entry,
    so an ack for an older revision does not drop the newer payload.
    """

    id: str
    entity_table: EntityTable
    entity_id: str
    operation: SyncOperation
    payload: dict[str, Any]
    created_at: datetime = field(default_factory=utc_now)
    retry_count: int = 0
    status: EntryStatus = EntryStatus.PENDING
    revision: int = 1
    next_attempt_at: datetime | None = None
    last_error: str | None = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.entity_table.value, self.entity_id)


@dataclass(frozen=True)
class ReviewStats:
    """Reporting buckets; never used for scheduling decisions."""

    due_today: int = 0
    due_tomorrow: int = 0
    due_this_week: int = 0
    reviewed_today: int = 0
    total_cards: int = 0


@dataclass(frozen=True)
class DeckSummary:
    deck: Deck
    card_count: int
    due_count: int = 0
