"""Facet scheduler: lifetime-based review dates for single facets."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from gemcutter.core.models import FacetStage, FacetState, utcnow
from gemcutter.core.storage import FacetDatabase

# Below this lifetime a correct answer restarts from three times the gap
# instead of extending the current lifetime.
_SHORT_LIFETIME_HOURS = (0.05 * 27.0) - 1.0

_CORRECT_GROWTH = 3.0
_WRONG_SHRINK = 3.0


def _as_utc(value: datetime | None) -> datetime:
    if value is None:
        return utcnow()
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


@dataclass
class ReviewResult:
    """Result of reviewing a facet."""

    facet: str
    score: float
    reviewed_at: datetime
    review_date: datetime
    lifetime_in_hours: float
    stage: FacetStage


class FacetScheduler:
    """Updates facet lifetimes and review dates after each answer.

    A binary answer stretches or shrinks the facet's lifetime based on how
    long it has been since the facet was last seen. A fuzzy answer with a
    score in [0, 1] is the score-weighted average of the right and wrong
    outcomes.
    """

    def __init__(self, db: FacetDatabase, initial_lifetime_hours: float = 1.0):
        """Initialize scheduler.

        Args:
            db: FacetDatabase instance for state persistence
            initial_lifetime_hours: Lifetime given to a facet on first review
        """
        if initial_lifetime_hours <= 0:
            raise ValueError("initial_lifetime_hours must be positive")
        self.db = db
        self.initial_lifetime_hours = initial_lifetime_hours

    def start(self, state: FacetState, now: datetime | None = None) -> FacetState:
        """Give a new facet its first lifetime, due now."""
        now = _as_utc(now)
        return state.model_copy(
            update={
                "review_date": now,
                "last_seen_date": now,
                "lifetime_in_hours": self.initial_lifetime_hours,
                "stage": FacetStage.LEARNING,
            }
        )

    def update_binary(
        self,
        state: FacetState,
        correct: bool,
        now: datetime | None = None,
    ) -> FacetState:
        """Apply a right/wrong answer and return the updated state."""
        if not state.is_scheduled():
            raise ValueError(f"Facet {state.name!r} has not been started")
        now = _as_utc(now)

        hours_since_seen = (now - state.last_seen_date).total_seconds() / 3600
        if hours_since_seen < 0:
            raise ValueError(f"Facet {state.name!r} was last seen in the future")

        lifetime = state.lifetime_in_hours
        if correct:
            if hours_since_seen > lifetime:
                lifetime = _CORRECT_GROWTH * hours_since_seen
            elif lifetime > _SHORT_LIFETIME_HOURS:
                lifetime = lifetime + hours_since_seen
            else:
                lifetime = _CORRECT_GROWTH * hours_since_seen
        else:
            lifetime = lifetime / _WRONG_SHRINK

        return state.model_copy(
            update={
                "lifetime_in_hours": lifetime,
                "review_date": now + timedelta(hours=lifetime),
                "last_seen_date": now,
            }
        )

    def update_fuzzy(
        self,
        state: FacetState,
        score: float,
        now: datetime | None = None,
    ) -> FacetState:
        """Blend the right and wrong outcomes, weighted by ``score``."""
        if not 0.0 <= score <= 1.0:
            raise ValueError(f"Score must be between 0 and 1, got {score}")
        now = _as_utc(now)

        right = self.update_binary(state, True, now)
        wrong = self.update_binary(state, False, now)

        review_ts = right.review_date.timestamp() * score + wrong.review_date.timestamp() * (
            1.0 - score
        )
        lifetime = right.lifetime_in_hours * score + wrong.lifetime_in_hours * (1.0 - score)

        return state.model_copy(
            update={
                "review_date": datetime.fromtimestamp(review_ts, UTC),
                "lifetime_in_hours": lifetime,
                "last_seen_date": now,
            }
        )

    def review_facet(
        self,
        name: str,
        score: float,
        now: datetime | None = None,
    ) -> ReviewResult:
        """Review a facet, persist its new state, and log the review.

        Args:
            name: The facet's name
            score: Fraction of the facet answered correctly, from 0 to 1
            now: Review time (defaults to the current UTC time)

        Returns:
            ReviewResult with the updated schedule
        """
        now = _as_utc(now)

        state = self.db.get_facet_state(name) or FacetState(name=name)
        lifetime_before = state.lifetime_in_hours
        if not state.is_scheduled():
            state = self.start(state, now)

        updated = self.update_fuzzy(state, score, now)

        self.db.upsert_facet_state(updated)
        self.db.log_review(
            facet=name,
            score=score,
            reviewed_at=now,
            lifetime_before=lifetime_before,
            lifetime_after=updated.lifetime_in_hours,
            review_date_after=updated.review_date,
        )

        return ReviewResult(
            facet=name,
            score=score,
            reviewed_at=now,
            review_date=updated.review_date,
            lifetime_in_hours=updated.lifetime_in_hours,
            stage=updated.stage,
        )

    def get_due_facets(self, limit: int = 20, now: datetime | None = None) -> list[str]:
        """Get facet names due for review, most overdue first."""
        return self.db.get_due_facets(limit, now)

    def get_facet_state(self, name: str) -> FacetState | None:
        """Get the current scheduling state for a facet."""
        return self.db.get_facet_state(name)
