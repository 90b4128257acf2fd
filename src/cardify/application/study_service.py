"""
Study Service — Application facade used by the CLI, the server and host UIs.

Every mutation goes to the Local Store first (with its sync entry in the
same transaction) and then kicks the background sync. No call here waits on
the network.
"""

import logging
import random
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any

from cardify.application.due import build_review_session, classify
from cardify.application.id_service import generate_card_id, generate_deck_id
from cardify.application.scheduler import compute_next_state, validate_quality
from cardify.application.sync.runner import SyncRunner
from cardify.domain.constants import DEFAULT_REVIEW_LIMIT, MAX_REVIEW_LIMIT, SYNC_INTERVAL_SECONDS
from cardify.domain.errors import NotFoundError, ValidationError
from cardify.domain.interfaces import LocalStore
from cardify.domain.models import (
    Card,
    Deck,
    DeckSummary,
    ReviewStats,
    SRSState,
    SyncQueueEntry,
    utc_now,
)

logger = logging.getLogger(__name__)

DECK_FIELDS = {"title", "description", "is_public", "tags", "cover_image_path", "owner_id"}
CARD_FIELDS = {"front_content", "back_content", "tags", "media_path"}


@dataclass(frozen=True)
class SyncStatus:
    last_sync_at: datetime | None
    pending: int
    dead_letters: list[SyncQueueEntry]
    stale: bool
    suspended: bool = False
    running: bool = False


class StudyService:
    def __init__(
        self,
        store: LocalStore,
        runner: SyncRunner | None = None,
        clock: Callable[[], datetime] = utc_now,
        review_limit: int = DEFAULT_REVIEW_LIMIT,
        stale_after: timedelta | None = None,
        rng: random.Random | None = None,
    ):
        self.store = store
        self.runner = runner
        self._clock = clock
        self.review_limit = review_limit
        interval = runner.interval_seconds if runner else SYNC_INTERVAL_SECONDS
        self.stale_after = stale_after or timedelta(seconds=2 * interval)
        self._rng = rng

    # ------------------------------------------------------------------
    # Reviews
    # ------------------------------------------------------------------

    async def review_card(
        self, card_id: str, quality: int, now: datetime | None = None
    ) -> SRSState:
        """
        Apply one review to a card.

        The new state is computed from the stored state under the store's
        writer lock, persisted, and enqueued for sync in one transaction.

        Raises:
            ValidationError: quality is not an int in 0..5.
            NotFoundError: the card does not exist.
        """
        quality = validate_quality(quality)
        now = now or self._clock()
        state = await self.store.update_card_srs(
            card_id, lambda previous: compute_next_state(quality, previous, now), track=True
        )
        logger.info(
            f"[review] {card_id} q={quality} -> interval={state.interval} "
            f"ease={state.ease_factor:.2f} due={state.due_date.isoformat()}"
        )
        self.trigger_sync()
        return state

    async def get_due_cards(
        self,
        deck_id: str | None = None,
        now: datetime | None = None,
        limit: int | None = None,
        shuffle: bool = False,
    ) -> list[Card]:
        now = now or self._clock()
        if deck_id is not None:
            if await self.store.get_deck(deck_id) is None:
                raise NotFoundError(f"Deck {deck_id} not found")
            cards = await self.store.get_cards_by_deck(deck_id)
        else:
            cards = await self.store.get_cards()
        limit = self.review_limit if limit is None else limit
        if not 1 <= limit <= MAX_REVIEW_LIMIT:
            raise ValidationError(f"limit must be between 1 and {MAX_REVIEW_LIMIT}")
        return build_review_session(cards, now, limit=limit, shuffle=shuffle, rng=self._rng)

    async def get_stats_snapshot(self, now: datetime | None = None) -> ReviewStats:
        return classify(await self.store.get_cards(), now or self._clock())

    # ------------------------------------------------------------------
    # Decks
    # ------------------------------------------------------------------

    async def list_decks(self, now: datetime | None = None) -> list[DeckSummary]:
        return await self.store.get_deck_summaries(now or self._clock())

    async def create_deck(
        self,
        title: str,
        description: str | None = None,
        is_public: bool = False,
        tags: set[str] | None = None,
        cover_image_path: str | None = None,
        owner_id: str | None = None,
    ) -> Deck:
        now = self._clock()
        deck = Deck(
            id=generate_deck_id(),
            title=title.strip(),
            owner_id=owner_id,
            description=description,
            is_public=is_public,
            tags=set(tags or ()),
            cover_image_path=cover_image_path,
            created_at=now,
            updated_at=now,
        )
        await self.store.put_decks([deck], track=True)
        self.trigger_sync()
        return deck

    async def update_deck(self, deck_id: str, **changes: Any) -> Deck:
        unknown = set(changes) - DECK_FIELDS
        if unknown:
            raise ValidationError(f"Unknown deck fields: {', '.join(sorted(unknown))}")
        deck = await self.store.get_deck(deck_id)
        if deck is None:
            raise NotFoundError(f"Deck {deck_id} not found")
        if "tags" in changes:
            changes["tags"] = set(changes["tags"] or ())
        updated = replace(deck, **changes, updated_at=self._clock())
        await self.store.put_decks([updated], track=True)
        self.trigger_sync()
        return updated

    async def delete_deck(self, deck_id: str) -> None:
        if not await self.store.delete_deck(deck_id, track=True):
            raise NotFoundError(f"Deck {deck_id} not found")
        self.trigger_sync()

    # ------------------------------------------------------------------
    # Cards
    # ------------------------------------------------------------------

    async def create_card(
        self,
        deck_id: str,
        front_content: str,
        back_content: str,
        tags: set[str] | None = None,
        media_path: str | None = None,
    ) -> Card:
        now = self._clock()
        card = Card(
            id=generate_card_id(),
            deck_id=deck_id,
            front_content=front_content,
            back_content=back_content,
            srs=SRSState.initial(now),
            media_path=media_path,
            tags=set(tags or ()),
            created_at=now,
            updated_at=now,
        )
        await self.store.put_cards([card], track=True)
        self.trigger_sync()
        return card

    async def update_card(self, card_id: str, **changes: Any) -> Card:
        """Edit card content. SRS fields only change through `review_card`."""
        unknown = set(changes) - CARD_FIELDS
        if unknown:
            raise ValidationError(f"Unknown card fields: {', '.join(sorted(unknown))}")
        card = await self.store.get_card(card_id)
        if card is None:
            raise NotFoundError(f"Card {card_id} not found")
        if "tags" in changes:
            changes["tags"] = set(changes["tags"] or ())
        updated = replace(card, **changes, updated_at=self._clock())
        await self.store.put_cards([updated], track=True)
        self.trigger_sync()
        return updated

    async def delete_card(self, card_id: str) -> None:
        if not await self.store.delete_card(card_id, track=True):
            raise NotFoundError(f"Card {card_id} not found")
        self.trigger_sync()

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    def trigger_sync(self) -> None:
        if self.runner is not None:
            self.runner.trigger()

    async def sync_status(self, now: datetime | None = None) -> SyncStatus:
        now = now or self._clock()
        last = await self.store.get_last_sync_at()
        pending = await self.store.count_pending()
        return SyncStatus(
            last_sync_at=last,
            pending=pending,
            dead_letters=await self.store.list_dead_letters(),
            stale=pending > 0 and (last is None or now - last > self.stale_after),
            suspended=bool(self.runner and self.runner.reconciler.is_suspended),
            running=bool(self.runner and self.runner.running),
        )
