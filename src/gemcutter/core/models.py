"""Pydantic models for gems and facet scheduling state."""

from datetime import UTC, datetime
from enum import StrEnum

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(UTC)


class FacetStage(StrEnum):
    """Scheduling stages of a facet."""

    NEW = "new"
    LEARNING = "learning"


class Gem(BaseModel):
    """A flashcard bundling display sides and a set of not-yet-known facets.

    ``id`` is assigned by the loader in file order. ``sides`` is never
    touched by the ordering engine; ``unknown_facets`` only ever shrinks.
    """

    id: int = Field(ge=0)
    sides: dict[int, str] = Field(default_factory=dict)
    unknown_facets: set[str] = Field(default_factory=set)

    @property
    def facet_count(self) -> int:
        return len(self.unknown_facets)

    def front(self) -> str:
        """Text of the lowest-numbered side, or an empty string."""
        if not self.sides:
            return ""
        return self.sides[min(self.sides)]


class FacetState(BaseModel):
    """Spaced-repetition state of a single facet."""

    name: str
    review_date: datetime | None = None
    last_seen_date: datetime | None = None
    lifetime_in_hours: float | None = Field(default=None, ge=0.0)
    stage: FacetStage = FacetStage.NEW

    def is_scheduled(self) -> bool:
        """True once all timing fields have been initialized."""
        return (
            self.review_date is not None
            and self.last_seen_date is not None
            and self.lifetime_in_hours is not None
        )


def gem_from_dict(gem_id: int, data: dict) -> Gem:
    """Create a gem from one record of a gem file.

    Records look like ``{"sides": {"0": "text"}, "unknown_facets": ["a"]}``.
    """
    return Gem.model_validate(
        {
            "id": gem_id,
            "sides": data.get("sides") or {},
            "unknown_facets": data.get("unknown_facets") or [],
        }
    )
