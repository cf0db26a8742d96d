"""Difficulty ordering engine.

Groups gems by how many facets they still lack, nominates one facet set per
round with a frequency-weighted heuristic, and strips the nominated facets
from every gem holding them while keeping the size and facet indices in step
with gem state.
"""

import logging
import time
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from enum import StrEnum

from gemcutter.core.models import Gem

logger = logging.getLogger(__name__)

DEFAULT_ROUNDS = 200


class MissingGemError(LookupError):
    """Raised when an index references a gem id absent from the collection."""

    def __init__(self, gem_id: int):
        super().__init__(f"Index references missing gem {gem_id}")
        self.gem_id = gem_id


class IndexConsistencyError(RuntimeError):
    """Raised when a size or facet index disagrees with gem state."""


class RoundOutcome(StrEnum):
    """How a round ended."""

    TAUGHT = "taught"
    EMPTY_CANDIDATE_GROUP = "empty-candidate-group"
    NO_VIABLE_FACET_SELECTION = "no-viable-facet-selection"

    @property
    def is_terminal(self) -> bool:
        return self is not RoundOutcome.TAUGHT


@dataclass
class RoundResult:
    """What a single ordering round did."""

    round_number: int
    outcome: RoundOutcome
    target_size: int | None = None
    support_size: int | None = None
    facets: set[str] = field(default_factory=set)
    impacted_ids: list[int] = field(default_factory=list)
    completed_ids: list[int] = field(default_factory=list)
    elapsed_seconds: float = 0.0


class GemCollection:
    """Owns the gems of one ordering run and every index derived from them.

    Indices are private and only change inside ``run_round()``, so callers
    never observe a half-updated state. Accessors hand out copies.
    """

    def __init__(self, gems: Iterable[Gem]):
        self._gems: dict[int, Gem] = {}
        for gem in gems:
            if gem.id in self._gems:
                raise ValueError(f"Duplicate gem id: {gem.id}")
            self._gems[gem.id] = gem.model_copy(deep=True)

        self._known_facets: set[str] = set()
        self._size_index: dict[int, set[int]] = {}
        self._facet_index: dict[str, set[int]] = {}
        self._frequency_baseline: dict[str, int] = {}

        self._indexed = False
        self._rounds_run = 0
        self._initially_known: list[int] = []
        self._completed_by_round: list[list[int]] = []

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._gems)

    @property
    def gem_ids(self) -> list[int]:
        return sorted(self._gems)

    @property
    def known_facets(self) -> frozenset[str]:
        return frozenset(self._known_facets)

    @property
    def frequency_baseline(self) -> dict[str, int]:
        return dict(self._frequency_baseline)

    @property
    def rounds_run(self) -> int:
        return self._rounds_run

    @property
    def is_indexed(self) -> bool:
        return self._indexed

    def gem(self, gem_id: int) -> Gem:
        """Get a copy of a gem by id."""
        return self._gem(gem_id).model_copy(deep=True)

    def size_buckets(self) -> dict[int, frozenset[int]]:
        """Snapshot of the size index (facet count -> gem ids)."""
        return {size: frozenset(ids) for size, ids in self._size_index.items()}

    def gems_with_facet(self, facet: str) -> frozenset[int]:
        """Ids of gems that still list ``facet`` as unknown."""
        return frozenset(self._facet_index.get(facet, ()))

    def _gem(self, gem_id: int) -> Gem:
        try:
            return self._gems[gem_id]
        except KeyError:
            raise MissingGemError(gem_id) from None

    # ------------------------------------------------------------------
    # Index construction
    # ------------------------------------------------------------------

    def build_index(self) -> None:
        """Populate the size index, facet index, and frequency baseline.

        Gems with no unknown facets are left out of the size index. Only
        allowed once per collection, since rounds mutate the buckets.
        """
        if self._indexed:
            raise RuntimeError("Collection is already indexed")

        for gem_id in sorted(self._gems):
            gem = self._gems[gem_id]
            if gem.facet_count > 0:
                self._size_index.setdefault(gem.facet_count, set()).add(gem_id)
            else:
                self._initially_known.append(gem_id)
            for facet in gem.unknown_facets:
                self._facet_index.setdefault(facet, set()).add(gem_id)

        self._frequency_baseline = self.frequency_table(self._gems.keys())
        self._indexed = True
        logger.debug(
            "Indexed %d gems into %d size buckets and %d facets",
            len(self._gems),
            len(self._size_index),
            len(self._facet_index),
        )

    def _ensure_indexed(self) -> None:
        if not self._indexed:
            self.build_index()

    # ------------------------------------------------------------------
    # Frequency counting and facet selection
    # ------------------------------------------------------------------

    def frequency_table(self, gem_ids: Iterable[int]) -> dict[str, int]:
        """Count, per facet, how many of the given gems list it as unknown."""
        frequencies: dict[str, int] = {}
        for gem_id in set(gem_ids):
            for facet in self._gem(gem_id).unknown_facets:
                frequencies[facet] = frequencies.get(facet, 0) + 1
        return frequencies

    def choose_facets(
        self,
        candidate_ids: Iterable[int],
        frequency_table: dict[str, int],
        minimum_viable: int = 0,
    ) -> set[str]:
        """Nominate the unknown-facet set of the best-scoring candidate gem.

        A gem's weight is the mean frequency-table score of its unknown
        facets. The strictly highest weight wins; ties keep the lowest id.
        If no candidate scores above zero, the search is repeated once
        against the collection-wide baseline. An empty set means neither
        table produced a candidate.

        ``minimum_viable`` is reserved for thresholding and has no effect.
        """
        candidates = sorted(set(candidate_ids))
        chosen = self._best_facet_set(candidates, frequency_table)
        if not chosen:
            logger.debug("No candidate scored against the local table; using baseline")
            chosen = self._best_facet_set(candidates, self._frequency_baseline)
        return chosen

    def _best_facet_set(self, candidates: list[int], frequency_table: dict[str, int]) -> set[str]:
        best: set[str] = set()
        max_weight = 0.0
        for gem_id in candidates:
            facets = self._gem(gem_id).unknown_facets
            if not facets:
                continue
            weight = sum(frequency_table.get(f, 0) for f in facets) / len(facets)
            if weight > max_weight:
                best = set(facets)
                max_weight = weight
        return best

    # ------------------------------------------------------------------
    # Ordering loop
    # ------------------------------------------------------------------

    def run_round(self) -> RoundResult:
        """Run one round: pick size classes, nominate facets, strip them.

        Terminal outcomes leave every gem and index untouched.
        """
        self._ensure_indexed()
        started = time.perf_counter()
        self._rounds_run += 1
        result = RoundResult(round_number=self._rounds_run, outcome=RoundOutcome.TAUGHT)

        # Smallest two size classes that still hold gems with unknown facets
        sizes = sorted(size for size, ids in self._size_index.items() if size > 0 and ids)
        if len(sizes) < 2:
            result.outcome = RoundOutcome.EMPTY_CANDIDATE_GROUP
            result.elapsed_seconds = time.perf_counter() - started
            logger.info("Round %d: fewer than two size classes remain", result.round_number)
            return result
        target_size, support_size = sizes[0], sizes[1]
        result.target_size = target_size
        result.support_size = support_size

        support_table = self.frequency_table(self._size_index[support_size])
        facets = self.choose_facets(self._size_index[target_size], support_table)
        if not facets:
            result.outcome = RoundOutcome.NO_VIABLE_FACET_SELECTION
            result.elapsed_seconds = time.perf_counter() - started
            logger.info("Round %d: no viable facet selection", result.round_number)
            return result

        impacted: set[int] = set()
        for facet in facets:
            impacted |= self._facet_index.get(facet, set())

        completed: list[int] = []
        for gem_id in sorted(impacted):
            gem = self._gem(gem_id)
            bucket = self._size_index.get(gem.facet_count)
            if bucket is None or gem_id not in bucket:
                raise IndexConsistencyError(
                    f"Gem {gem_id} is not filed under size {gem.facet_count}"
                )
            bucket.discard(gem_id)
            gem.unknown_facets = gem.unknown_facets - facets
            self._size_index.setdefault(gem.facet_count, set()).add(gem_id)
            if gem.facet_count == 0:
                completed.append(gem_id)

        for facet in facets:
            holders = self._facet_index.get(facet)
            if holders is None:
                continue
            holders -= impacted
            if not holders:
                del self._facet_index[facet]

        self._known_facets |= facets
        self._completed_by_round.append(completed)

        result.facets = set(facets)
        result.impacted_ids = sorted(impacted)
        result.completed_ids = completed
        result.elapsed_seconds = time.perf_counter() - started
        logger.debug(
            "Round %d: sizes %d/%d taught %s, impacted %d gems",
            result.round_number,
            target_size,
            support_size,
            sorted(facets),
            len(impacted),
        )
        return result

    def order_by_difficulty(self, rounds: int = DEFAULT_ROUNDS) -> Iterator[RoundResult]:
        """Yield one result per round until the budget or a terminal outcome.

        The terminal result, if reached, is yielded before stopping.
        """
        if rounds < 0:
            raise ValueError(f"Round budget must be non-negative, got {rounds}")
        self._ensure_indexed()
        for _ in range(rounds):
            result = self.run_round()
            yield result
            if result.outcome.is_terminal:
                return

    def finalized_order(self) -> list[int]:
        """Gem ids in study order.

        Gems known from the start come first, then gems in the round they
        were completed, then the rest by remaining facet count.
        """
        self._ensure_indexed()
        order = list(self._initially_known)
        for completed in self._completed_by_round:
            order.extend(completed)
        placed = set(order)
        remaining = sorted(
            (gem for gem in self._gems.values() if gem.id not in placed),
            key=lambda gem: (gem.facet_count, gem.id),
        )
        order.extend(gem.id for gem in remaining)
        return order

    # ------------------------------------------------------------------
    # Consistency checks
    # ------------------------------------------------------------------

    def check_invariants(self) -> None:
        """Verify both indices against gem state.

        Raises MissingGemError for ids absent from the collection and
        IndexConsistencyError for any other mismatch.
        """
        if not self._indexed:
            return

        filed: dict[int, list[int]] = {}
        for size, ids in self._size_index.items():
            for gem_id in ids:
                gem = self._gem(gem_id)
                if gem.facet_count != size:
                    raise IndexConsistencyError(
                        f"Gem {gem_id} filed under size {size} but has {gem.facet_count} facets"
                    )
                filed.setdefault(gem_id, []).append(size)

        for gem_id, gem in self._gems.items():
            sizes = filed.get(gem_id, [])
            if gem.facet_count > 0 and sizes != [gem.facet_count]:
                raise IndexConsistencyError(f"Gem {gem_id} is filed under sizes {sizes}")
            if gem.facet_count == 0 and sizes not in ([], [0]):
                raise IndexConsistencyError(f"Known gem {gem_id} is filed under sizes {sizes}")

        for facet, ids in self._facet_index.items():
            for gem_id in ids:
                if facet not in self._gem(gem_id).unknown_facets:
                    raise IndexConsistencyError(
                        f"Facet index lists gem {gem_id} under {facet!r} it no longer lacks"
                    )

        for gem_id, gem in self._gems.items():
            for facet in gem.unknown_facets:
                if gem_id not in self._facet_index.get(facet, ()):
                    raise IndexConsistencyError(
                        f"Facet index is missing gem {gem_id} under {facet!r}"
                    )
