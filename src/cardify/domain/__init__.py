# Domain Package
from .errors import (
    AuthError,
    CardifyError,
    NotFoundError,
    PermanentRemoteError,
    RemoteError,
    StorageError,
    TransientRemoteError,
    ValidationError,
)
from .models import (
    Card,
    CardStatus,
    Deck,
    DeckSummary,
    EntityTable,
    EntryStatus,
    ReviewStats,
    SRSState,
    SyncOperation,
    SyncQueueEntry,
)

__all__ = [
    "AuthError",
    "CardifyError",
    "NotFoundError",
    "PermanentRemoteError",
    "RemoteError",
    "StorageError",
    "TransientRemoteError",
    "ValidationError",
    "Card",
    "CardStatus",
    "Deck",
    "DeckSummary",
    "EntityTable",
    "EntryStatus",
    "ReviewStats",
    "SRSState",
    "SyncOperation",
    "SyncQueueEntry",
]
