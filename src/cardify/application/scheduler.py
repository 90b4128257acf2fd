"""
SM-2 review scheduler.

Quality scale:
    0 - complete blackout
    1 - wrong, but the answer was recognized once shown
    2 - wrong, but the answer felt familiar
    3 - correct, recalled with serious difficulty
    4 - correct after some hesitation
    5 - correct and effortless
"""

import math
from dataclasses import replace
from datetime import datetime, timedelta

from cardify.domain.constants import (
    FIRST_INTERVAL_DAYS,
    MAX_QUALITY,
    MIN_EASE_FACTOR,
    MIN_QUALITY,
    PASSING_QUALITY,
    RELEARN_DELAY_MINUTES,
    SECOND_INTERVAL_DAYS,
)
from cardify.domain.errors import ValidationError
from cardify.domain.models import SRSState


def validate_quality(quality: object) -> int:
    """Reject anything that is not an int in [0, 5]. Never clamps."""
    if isinstance(quality, bool) or not isinstance(quality, int):
        raise ValidationError(f"quality must be an integer, got {quality!r}")
    if not MIN_QUALITY <= quality <= MAX_QUALITY:
        raise ValidationError(
            f"quality must be between {MIN_QUALITY} and {MAX_QUALITY}, got {quality}"
        )
    return quality


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def next_ease_factor(ease_factor: float, quality: int) -> float:
    miss = MAX_QUALITY - quality
    return max(MIN_EASE_FACTOR, ease_factor + (0.1 - miss * (0.08 + miss * 0.02)))


def compute_next_state(quality: int, previous: SRSState, now: datetime) -> SRSState:
    """
    Compute the SRS state that follows a review.

    Args:
        quality: Recall quality in [0, 5].
        previous: State before the review. Not mutated.
        now: Review time (timezone-aware).

    Returns:
        A new SRSState.

    Raises:
        ValidationError: quality is out of range or `now` is naive.
    """
    quality = validate_quality(quality)
    if now.tzinfo is None:
        raise ValidationError("now must be timezone-aware")

    if quality < PASSING_QUALITY:
        repetitions = 0
        interval = 0
    else:
        repetitions = previous.repetitions + 1
        if repetitions == 1:
            interval = FIRST_INTERVAL_DAYS
        elif repetitions == 2:
            interval = SECOND_INTERVAL_DAYS
        else:
            interval = round_half_up(previous.interval * previous.ease_factor)

    if interval == 0:
        due_date = now + timedelta(minutes=RELEARN_DELAY_MINUTES)
    else:
        due_date = now + timedelta(days=interval)

    return replace(
        previous,
        ease_factor=next_ease_factor(previous.ease_factor, quality),
        interval=interval,
        repetitions=repetitions,
        due_date=due_date,
        last_reviewed_at=now,
    )
