"""Core library for gemcutter."""

from gemcutter.core.collection import (
    DEFAULT_ROUNDS,
    GemCollection,
    IndexConsistencyError,
    MissingGemError,
    RoundOutcome,
    RoundResult,
)
from gemcutter.core.models import FacetStage, FacetState, Gem, gem_from_dict
from gemcutter.core.scheduler import FacetScheduler, ReviewResult
from gemcutter.core.storage import FacetDatabase, GemcutterStorage, GemStore, GemStoreError

__all__ = [
    # Models
    "FacetStage",
    "FacetState",
    "Gem",
    "gem_from_dict",
    # Ordering engine
    "DEFAULT_ROUNDS",
    "GemCollection",
    "IndexConsistencyError",
    "MissingGemError",
    "RoundOutcome",
    "RoundResult",
    # Storage
    "FacetDatabase",
    "GemStore",
    "GemStoreError",
    "GemcutterStorage",
    # Scheduler
    "FacetScheduler",
    "ReviewResult",
]
