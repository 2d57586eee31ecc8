"""SM-2 Spaced Repetition Algorithm Implementation.

This module provides an interface for review schedulers.
The SM-2 algorithm is the default implementation.
"""
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Protocol

from readingroom.exceptions import LibraryValidationError
from readingroom.schemas.library import Flashcard, FlashcardReview, as_utc, new_id, utc_now

MIN_EASE = 1.3
MAX_EASE = 2.5
DEFAULT_EASE = 2.5
MIN_QUALITY = 0
MAX_QUALITY = 5
PASSING_QUALITY = 3


class Scheduler(Protocol):
    """Protocol for review schedulers."""

    def validate_quality(self, quality: int) -> None:
        """Raise LibraryValidationError for a grade outside 0-5."""
        ...

    def review(self, card: Flashcard, quality: int, now: Optional[datetime] = None) -> "ReviewResult":
        """Calculate the card's next schedule based on quality score."""
        ...


@dataclass
class ReviewResult:
    """Rescheduled card plus the audit record of the review."""
    card: Flashcard
    review: FlashcardReview


class SM2Scheduler:
    """SM-2 (SuperMemo 2) spaced repetition algorithm.

    Ease is kept in [1.3, 2.5]; intervals are whole days and are always
    floor-truncated, never rounded, so the same inputs give the same
    schedule everywhere.
    """

    @staticmethod
    def validate_quality(quality: int) -> None:
        if isinstance(quality, bool) or not isinstance(quality, int):
            raise LibraryValidationError(f"quality must be an integer, got {quality!r}")
        if not MIN_QUALITY <= quality <= MAX_QUALITY:
            raise LibraryValidationError(
                f"quality must be between {MIN_QUALITY} and {MAX_QUALITY}, got {quality}"
            )

    @staticmethod
    def next_ease(ease: float, quality: int) -> float:
        miss = MAX_QUALITY - quality
        new_ease = ease + 0.1 - miss * (0.08 + miss * 0.02)
        return min(MAX_EASE, max(MIN_EASE, new_ease))

    @staticmethod
    def next_interval(interval: int, new_ease: float, quality: int) -> int:
        if quality < PASSING_QUALITY:
            # Failed recall - start over
            return 1
        if interval == 0:
            return 1
        if interval == 1:
            return 6
        return math.floor(interval * new_ease)

    def review(self, card: Flashcard, quality: int, now: Optional[datetime] = None) -> ReviewResult:
        """Apply one review to card.

        Args:
            card: The card being reviewed; it is not modified.
            quality: Quality of recall (0-5)
                0 - Complete blackout
                1 - Incorrect response, but upon seeing correct answer, remembered
                2 - Incorrect response, but correct answer seemed easy to recall
                3 - Correct response with serious difficulty
                4 - Correct response after hesitation
                5 - Perfect response
            now: Review time, defaults to the current UTC time.

        Returns:
            ReviewResult with a rescheduled copy of the card and the review record
            holding the pre-review interval and ease.
        """
        self.validate_quality(quality)
        now = as_utc(now) if now else utc_now()

        ease = self.next_ease(card.ease, quality)
        interval = self.next_interval(card.interval, ease, quality)

        updated = card.model_copy(
            update={
                "interval": interval,
                "ease": ease,
                "due_at": now + timedelta(days=interval),
                "last_review": now,
                "updated_at": now,
            }
        )
        review = FlashcardReview(
            id=new_id(),
            flashcard_id=card.id,
            quality=quality,
            reviewed_at=now,
            prev_interval=card.interval,
            prev_ease=card.ease,
        )
        return ReviewResult(card=updated, review=review)


# Default scheduler instance
default_scheduler = SM2Scheduler()
