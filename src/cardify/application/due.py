"""
Due-set selection and review reporting.

Pure functions over card collections; nothing here touches storage.
"""

import random
from collections.abc import Iterable
from datetime import datetime, timedelta, tzinfo

from cardify.domain.constants import WEEK_HORIZON_DAYS
from cardify.domain.models import Card, ReviewStats


def is_due(card: Card, now: datetime) -> bool:
    return card.srs.due_date <= now


def select_due(cards: Iterable[Card], now: datetime) -> list[Card]:
    """Return the cards with `due_date <= now`, preserving input order."""
    return [card for card in cards if is_due(card, now)]


def build_review_session(
    cards: Iterable[Card],
    now: datetime,
    limit: int | None = None,
    shuffle: bool = True,
    rng: random.Random | None = None,
) -> list[Card]:
    """
    Pick the cards for a review session.

    Due cards are shuffled for variety, then truncated to `limit`.
    """
    due = select_due(cards, now)
    if shuffle:
        (rng or random.Random()).shuffle(due)
    if limit is not None:
        due = due[: max(0, limit)]
    return due


def classify(cards: Iterable[Card], now: datetime, tz: tzinfo | None = None) -> ReviewStats:
    """
    Bucket cards by due-date horizon and by whether they were reviewed today.

    `reviewed_today` compares calendar dates in `tz` (the system local zone
    when omitted). The horizon buckets overlap: a card due tomorrow is also
    due this week.
    """
    tomorrow = now + timedelta(days=1)
    next_week = now + timedelta(days=WEEK_HORIZON_DAYS)
    today = now.astimezone(tz).date()

    due_today = due_tomorrow = due_this_week = reviewed_today = total = 0
    for card in cards:
        total += 1
        due = card.srs.due_date
        if due <= now:
            due_today += 1
        else:
            if due <= tomorrow:
                due_tomorrow += 1
            if due <= next_week:
                due_this_week += 1

        last = card.srs.last_reviewed_at
        if last is not None and last.astimezone(tz).date() == today:
            reviewed_today += 1

    return ReviewStats(
        due_today=due_today,
        due_tomorrow=due_tomorrow,
        due_this_week=due_this_week,
        reviewed_today=reviewed_today,
        total_cards=total,
    )
