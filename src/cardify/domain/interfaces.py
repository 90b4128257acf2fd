"""
Ports (interfaces) for persistence, the remote API and sync collaborators.

These define the contract that infrastructure adapters must implement.
Application services depend on these abstractions, not concrete implementations.
"""

from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable
from datetime import datetime
from typing import Any

from .constants import SETTING_AUTH_TOKEN, SETTING_LAST_SYNC_AT
from .models import (
    Card,
    Deck,
    DeckSummary,
    EntityTable,
    SRSState,
    SyncQueueEntry,
    format_timestamp,
    parse_timestamp,
)


class LocalStore(ABC):
    """
    Port for the device-local, single-writer store of decks, cards and the sync queue.

    Implementations:
        - SqliteLocalStore: SQLite file with one transaction per public mutation.

    Mutations taking `track=True` enqueue (coalesce) a sync entry in the same
    transaction as the entity write.
    """

    @abstractmethod
    async def init(self) -> None:
        pass

    @abstractmethod
    async def close(self) -> None:
        pass

    # ---------- Decks ----------

    @abstractmethod
    async def put_decks(self, decks: Iterable[Deck], track: bool = False) -> None:
        pass

    @abstractmethod
    async def get_decks(self) -> list[Deck]:
        pass

    @abstractmethod
    async def get_deck(self, deck_id: str) -> Deck | None:
        pass

    @abstractmethod
    async def get_deck_summaries(self, now: datetime | None = None) -> list[DeckSummary]:
        pass

    @abstractmethod
    async def delete_deck(self, deck_id: str, track: bool = False) -> bool:
        """
        Delete a deck and its cards.

        Untracked, the cards' queue entries go with them. Tracked, each card
        gets its own DELETE entry, since the remote does not cascade.
        """
        pass

    # ---------- Cards ----------

    @abstractmethod
    async def put_cards(self, cards: Iterable[Card], track: bool = False) -> None:
        pass

    @abstractmethod
    async def get_cards(self) -> list[Card]:
        pass

    @abstractmethod
    async def get_card(self, card_id: str) -> Card | None:
        pass

    @abstractmethod
    async def get_cards_by_deck(self, deck_id: str) -> list[Card]:
        pass

    @abstractmethod
    async def update_card_srs(
        self,
        card_id: str,
        new_state: SRSState | Callable[[SRSState], SRSState],
        track: bool = True,
    ) -> SRSState:
        """
        The only legal path to mutate SRS fields.

        Args:
            card_id: Card to update.
            new_state: A state, or a function of the current state evaluated
                under the writer lock.
            track: Enqueue an `update` sync entry in the same transaction.

        Returns:
            The state that was written.

        Raises:
            NotFoundError: The card does not exist.
        """
        pass

    @abstractmethod
    async def delete_card(self, card_id: str, track: bool = False) -> bool:
        pass

    # ---------- Sync queue ----------

    @abstractmethod
    async def enqueue_sync(self, entry: SyncQueueEntry) -> SyncQueueEntry:
        """Coalescing insert; returns the pending entry now stored for the entity."""
        pass

    @abstractmethod
    async def drain_pending_sync(self, table: EntityTable) -> list[SyncQueueEntry]:
        """Return every pending entry of a table in enqueue order, without removing it."""
        pass

    @abstractmethod
    async def pending_entity_ids(self, table: EntityTable) -> set[str]:
        pass

    @abstractmethod
    async def get_entry(self, entry_id: str) -> SyncQueueEntry | None:
        pass

    async def has_pending(self, table: EntityTable, entity_id: str) -> bool:
        return entity_id in await self.pending_entity_ids(table)

    @abstractmethod
    async def mark_synced(self, entry: SyncQueueEntry) -> bool:
        """Remove an acked entry. Returns False on a double-ack."""
        pass

    @abstractmethod
    async def record_failure(
        self, entry: SyncQueueEntry, error: str, next_attempt_at: datetime | None
    ) -> SyncQueueEntry | None:
        """Charge a failed attempt to the entry. None if it changed while in flight."""
        pass

    @abstractmethod
    async def dead_letter(self, entry: SyncQueueEntry, error: str) -> bool:
        """Move an entry out of automatic retry. False if it changed while in flight."""
        pass

    @abstractmethod
    async def list_dead_letters(self) -> list[SyncQueueEntry]:
        pass

    @abstractmethod
    async def requeue(self, entry_id: str) -> SyncQueueEntry:
        pass

    @abstractmethod
    async def discard(self, entry_id: str) -> bool:
        pass

    @abstractmethod
    async def count_pending(self) -> int:
        pass

    # ---------- Pull merge ----------

    @abstractmethod
    async def replace_from_remote(
        self,
        table: EntityTable,
        entities: list[Deck] | list[Card],
        protected_ids: set[str],
    ) -> tuple[int, int]:
        """
        Overwrite local copies with server-authoritative ones.

        Entities with a pending queue entry (read in the same transaction) or
        whose id is in `protected_ids` are neither overwritten nor deleted.
        Returns (upserted, deleted).
        """
        pass

    # ---------- Settings ----------

    @abstractmethod
    async def get_setting(self, key: str) -> str | None:
        pass

    @abstractmethod
    async def set_setting(self, key: str, value: str) -> None:
        pass

    @abstractmethod
    async def delete_setting(self, key: str) -> None:
        pass

    async def get_auth_token(self) -> str | None:
        return await self.get_setting(SETTING_AUTH_TOKEN)

    async def set_auth_token(self, token: str) -> None:
        await self.set_setting(SETTING_AUTH_TOKEN, token)

    async def clear_auth_token(self) -> None:
        await self.delete_setting(SETTING_AUTH_TOKEN)

    async def get_last_sync_at(self) -> datetime | None:
        return parse_timestamp(await self.get_setting(SETTING_LAST_SYNC_AT))

    async def set_last_sync_at(self, when: datetime) -> None:
        await self.set_setting(SETTING_LAST_SYNC_AT, format_timestamp(when))


class RemoteGateway(ABC):
    """
    Port for the remote source of truth.

    Every method raises a RemoteError subclass on failure:
    TransientRemoteError, PermanentRemoteError or AuthError.
    """

    @abstractmethod
    async def create_entity(self, table: EntityTable, payload: dict[str, Any]) -> Any:
        pass

    @abstractmethod
    async def update_entity(
        self, table: EntityTable, entity_id: str, payload: dict[str, Any]
    ) -> Any:
        pass

    @abstractmethod
    async def delete_entity(self, table: EntityTable, entity_id: str) -> Any:
        pass

    @abstractmethod
    async def list_entities(
        self, table: EntityTable, owner_scope: str | None = None
    ) -> list[dict[str, Any]]:
        pass

    async def close(self) -> None:
        return None


class CredentialProvider(ABC):
    """Supplies the opaque bearer token, or None when signed out."""

    @abstractmethod
    async def get_token(self) -> str | None:
        pass


class ConnectivitySignal(ABC):
    """Boolean online state, pushed to listeners on change."""

    @property
    @abstractmethod
    def online(self) -> bool:
        pass

    @abstractmethod
    def add_listener(self, callback: Callable[[bool], None]) -> None:
        pass

    @abstractmethod
    def remove_listener(self, callback: Callable[[bool], None]) -> None:
        pass
