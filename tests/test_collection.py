"""Tests for the difficulty ordering engine."""

import random

import pytest

from gemcutter.core.collection import (
    GemCollection,
    IndexConsistencyError,
    MissingGemError,
    RoundOutcome,
)
from gemcutter.core.models import Gem


def _gems(*facet_sets):
    return [
        Gem(id=i, sides={0: f"gem {i}"}, unknown_facets=set(facets))
        for i, facets in enumerate(facet_sets)
    ]


def _collection(*facet_sets, indexed=True):
    collection = GemCollection(_gems(*facet_sets))
    if indexed:
        collection.build_index()
    return collection


def _random_gems(seed, count=80, vocabulary=30, max_facets=5):
    rng = random.Random(seed)
    words = [f"w{n}" for n in range(vocabulary)]
    return [
        Gem(id=i, unknown_facets=set(rng.sample(words, rng.randint(0, max_facets))))
        for i in range(count)
    ]


class TestConstruction:
    """Tests for GemCollection construction."""

    def test_duplicate_ids_rejected(self):
        """Test two gems with one id are rejected."""
        gems = [Gem(id=1, unknown_facets={"a"}), Gem(id=1, unknown_facets={"b"})]
        with pytest.raises(ValueError):
            GemCollection(gems)

    def test_input_gems_not_mutated(self):
        """Test ordering works on copies of the input gems."""
        gems = _gems({"x", "y"}, {"x"}, {"y", "z"})
        collection = GemCollection(gems)
        list(collection.order_by_difficulty())
        assert gems[0].unknown_facets == {"x", "y"}
        assert gems[1].unknown_facets == {"x"}

    def test_gem_returns_copy(self):
        """Test gem() hands out a copy."""
        collection = _collection({"a"})
        copy = collection.gem(0)
        copy.unknown_facets.clear()
        assert collection.gem(0).unknown_facets == {"a"}

    def test_unknown_gem_raises(self):
        """Test an unknown id raises MissingGemError."""
        collection = _collection({"a"})
        with pytest.raises(MissingGemError) as exc_info:
            collection.gem(42)
        assert exc_info.value.gem_id == 42


class TestBuildIndex:
    """Tests for index construction."""

    def test_size_buckets(self):
        """Test gems are filed by unknown facet count."""
        collection = _collection({"a", "b"}, {"a"}, {"b", "c"}, {"a", "b", "c"})
        assert collection.size_buckets() == {
            1: frozenset({1}),
            2: frozenset({0, 2}),
            3: frozenset({3}),
        }

    def test_known_gems_not_filed(self):
        """Test gems with no unknown facets are left out of the size index."""
        collection = _collection(set(), {"a"})
        buckets = collection.size_buckets()
        assert 0 not in buckets
        assert buckets[1] == frozenset({1})

    def test_facet_index(self):
        """Test each facet maps to the gems holding it."""
        collection = _collection({"a", "b"}, {"a"}, {"c"})
        assert collection.gems_with_facet("a") == frozenset({0, 1})
        assert collection.gems_with_facet("b") == frozenset({0})
        assert collection.gems_with_facet("c") == frozenset({2})
        assert collection.gems_with_facet("missing") == frozenset()

    def test_frequency_baseline(self):
        """Test the baseline counts gems per facet across the collection."""
        collection = _collection({"a", "b"}, {"a"}, {"c"})
        assert collection.frequency_baseline == {"a": 2, "b": 1, "c": 1}

    def test_rebuild_refused(self):
        """Test a second build_index call raises."""
        collection = _collection({"a"})
        with pytest.raises(RuntimeError):
            collection.build_index()

    def test_empty_collection(self):
        """Test an empty collection builds empty indices."""
        collection = _collection()
        assert collection.size_buckets() == {}
        assert collection.frequency_baseline == {}


class TestFrequencyTable:
    """Tests for frequency_table."""

    def test_counts_gems_per_facet(self):
        """Test each facet is counted once per gem."""
        collection = _collection({"x", "y"}, {"x"}, {"y", "z"})
        assert collection.frequency_table({0, 2}) == {"x": 1, "y": 2, "z": 1}

    def test_duplicate_ids_counted_once(self):
        """Test repeated ids are counted once."""
        collection = _collection({"x"}, {"x"})
        assert collection.frequency_table([0, 0, 1]) == {"x": 2}

    def test_empty_ids(self):
        """Test no ids give an empty table."""
        collection = _collection({"x"})
        assert collection.frequency_table([]) == {}

    def test_missing_gem_raises(self):
        """Test an unknown id raises MissingGemError."""
        collection = _collection({"x"})
        with pytest.raises(MissingGemError):
            collection.frequency_table([0, 7])

    def test_does_not_mutate(self):
        """Test counting leaves gems and indices alone."""
        collection = _collection({"x", "y"}, {"y"})
        before = collection.size_buckets()
        collection.frequency_table([0, 1])
        assert collection.size_buckets() == before
        assert collection.gem(0).unknown_facets == {"x", "y"}


class TestChooseFacets:
    """Tests for the facet selector."""

    def test_highest_average_weight_wins(self):
        """Test the gem with the highest mean weight wins."""
        collection = _collection({"a", "b"}, {"a"})
        # weight(g0) = (5 + 1) / 2 = 3.0, weight(g1) = 5.0
        chosen = collection.choose_facets({0, 1}, {"a": 5, "b": 1})
        assert chosen == {"a"}

    def test_returns_whole_facet_set(self):
        """Test the winner's whole facet set is returned."""
        collection = _collection({"a", "b", "c"}, {"d"})
        chosen = collection.choose_facets({0, 1}, {"a": 4, "b": 4, "c": 4, "d": 1})
        assert chosen == {"a", "b", "c"}

    def test_tie_keeps_lowest_id(self):
        """Test ties go to the lowest gem id."""
        collection = _collection({"p"}, {"q"}, {"r"})
        chosen = collection.choose_facets({2, 1, 0}, {"p": 2, "q": 2, "r": 2})
        assert chosen == {"p"}

    def test_gems_without_facets_skipped(self):
        """Test gems with no unknown facets are never chosen."""
        collection = _collection(set(), {"q"})
        assert collection.choose_facets({0, 1}, {"q": 1}) == {"q"}

    def test_fallback_to_baseline(self):
        """Test the baseline is used when nothing scores locally."""
        collection = _collection({"a"}, {"b", "c"}, {"a", "c"})
        chosen = collection.choose_facets({0}, {"unrelated": 9})
        assert chosen == {"a"}

    def test_fallback_with_empty_table(self):
        """Test an empty local table falls back to the baseline."""
        collection = _collection({"a"}, {"a", "b"})
        assert collection.choose_facets({1}, {}) == {"a", "b"}

    def test_empty_candidates_yield_empty_set(self):
        """Test no candidates give an empty selection."""
        collection = _collection({"a"})
        assert collection.choose_facets(set(), {"a": 3}) == set()

    def test_no_viable_candidate_yields_empty_set(self):
        """Test candidates without facets give an empty selection."""
        collection = _collection(set(), set())
        assert collection.choose_facets({0, 1}, {}) == set()

    def test_minimum_viable_has_no_effect(self):
        """Test minimum_viable does not change the selection."""
        collection = _collection({"a", "b"}, {"a"})
        table = {"a": 5, "b": 1}
        assert collection.choose_facets({0, 1}, table, minimum_viable=100) == {"a"}

    def test_result_is_a_copy(self):
        """Test the returned set is not the gem's own set."""
        collection = _collection({"a"})
        chosen = collection.choose_facets({0}, {"a": 1})
        chosen.add("intruder")
        assert collection.gem(0).unknown_facets == {"a"}


class TestRunRound:
    """Tests for a single ordering round."""

    def test_three_gem_scenario(self):
        """Test one round over three gems end to end."""
        collection = _collection({"x", "y"}, {"x"}, {"y", "z"})

        result = collection.run_round()

        assert result.outcome == RoundOutcome.TAUGHT
        assert result.round_number == 1
        assert result.target_size == 1
        assert result.support_size == 2
        assert result.facets == {"x"}
        assert result.impacted_ids == [0, 1]
        assert result.completed_ids == [1]

        assert collection.gem(0).unknown_facets == {"y"}
        assert collection.gem(1).unknown_facets == set()
        assert collection.gem(2).unknown_facets == {"y", "z"}

        buckets = collection.size_buckets()
        assert buckets[0] == frozenset({1})
        assert buckets[1] == frozenset({0})
        assert buckets[2] == frozenset({2})
        assert collection.gems_with_facet("x") == frozenset()
        assert collection.gems_with_facet("y") == frozenset({0, 2})
        assert collection.known_facets == frozenset({"x"})
        collection.check_invariants()

    def test_impact_reaches_beyond_compared_classes(self):
        """Test gems outside the two compared classes lose taught facets."""
        collection = _collection({"a"}, {"a", "b"}, {"a", "c", "d", "e"})
        result = collection.run_round()
        assert result.facets == {"a"}
        assert result.impacted_ids == [0, 1, 2]
        assert collection.gem(2).unknown_facets == {"c", "d", "e"}
        assert collection.size_buckets()[3] == frozenset({2})
        collection.check_invariants()

    def test_refiles_by_actual_count(self):
        """Test mutated gems are filed under their new count."""
        collection = _collection({"a", "b"}, {"a", "b", "c"}, {"a", "b", "c", "d"})
        collection.run_round()
        buckets = collection.size_buckets()
        assert buckets[0] == frozenset({0})
        assert buckets[1] == frozenset({1})
        assert buckets[2] == frozenset({2})
        collection.check_invariants()

    def test_single_class_is_terminal(self):
        """Test one size class ends ordering without changes."""
        collection = _collection({"a"}, {"b"})
        result = collection.run_round()
        assert result.outcome == RoundOutcome.EMPTY_CANDIDATE_GROUP
        assert result.facets == set()
        assert collection.gem(0).unknown_facets == {"a"}
        assert collection.known_facets == frozenset()

    def test_no_classes_is_terminal(self):
        """Test a collection with nothing left to learn ends ordering."""
        collection = _collection(set(), set())
        assert collection.run_round().outcome == RoundOutcome.EMPTY_CANDIDATE_GROUP

    def test_no_viable_selection_is_terminal(self):
        """Test a round with no scoring candidate and an empty baseline ends ordering."""
        collection = _collection({"a"}, {"b", "c"})
        collection._frequency_baseline = {}
        result = collection.run_round()
        assert result.outcome == RoundOutcome.NO_VIABLE_FACET_SELECTION
        assert result.outcome.is_terminal
        assert result.facets == set()
        assert collection.gem(0).unknown_facets == {"a"}
        assert collection.gem(1).unknown_facets == {"b", "c"}
        assert collection.size_buckets()[1] == frozenset({0})
        assert collection.known_facets == frozenset()

    def test_builds_index_on_demand(self):
        """Test run_round indexes an unindexed collection."""
        collection = _collection({"x", "y"}, {"x"}, indexed=False)
        assert not collection.is_indexed
        result = collection.run_round()
        assert collection.is_indexed
        assert result.facets == {"x"}

    def test_missing_gem_in_bucket_is_fatal(self):
        """Test an unknown id in a size bucket raises."""
        collection = _collection({"a"}, {"a", "b"})
        collection._size_index[1].add(99)
        with pytest.raises(MissingGemError):
            collection.run_round()

    def test_missing_gem_in_facet_index_is_fatal(self):
        """Test an unknown id in the facet index raises."""
        collection = _collection({"a"}, {"a", "b"})
        collection._facet_index["a"].add(99)
        with pytest.raises(MissingGemError):
            collection.run_round()


class TestOrderByDifficulty:
    """Tests for the ordering loop."""

    def test_runs_until_terminal(self):
        """Test the loop stops after the terminal round."""
        collection = _collection({"x", "y"}, {"x"}, {"y", "z"})
        results = list(collection.order_by_difficulty())

        assert [r.outcome for r in results] == [
            RoundOutcome.TAUGHT,
            RoundOutcome.TAUGHT,
            RoundOutcome.EMPTY_CANDIDATE_GROUP,
        ]
        assert results[0].facets == {"x"}
        assert results[1].facets == {"y"}
        assert collection.gem(2).unknown_facets == {"z"}

    def test_round_budget(self):
        """Test the loop stops at the round budget."""
        collection = GemCollection(_random_gems(seed=3))
        results = list(collection.order_by_difficulty(rounds=2))
        assert len(results) == 2
        assert collection.rounds_run == 2

    def test_zero_rounds(self):
        """Test a zero budget runs nothing."""
        collection = _collection({"x"}, {"x", "y"})
        assert list(collection.order_by_difficulty(rounds=0)) == []
        assert collection.gem(0).unknown_facets == {"x"}

    def test_negative_rounds_rejected(self):
        """Test a negative budget raises ValueError."""
        collection = _collection({"x"})
        with pytest.raises(ValueError):
            list(collection.order_by_difficulty(rounds=-1))

    @pytest.mark.parametrize("seed", [1, 2, 3])
    def test_invariants_hold_every_round(self, seed):
        """Test both indices stay consistent after every round."""
        collection = GemCollection(_random_gems(seed))
        collection.build_index()
        collection.check_invariants()
        for _ in collection.order_by_difficulty():
            collection.check_invariants()

    @pytest.mark.parametrize("seed", [4, 5])
    def test_facet_sets_only_shrink(self, seed):
        """Test unknown facet sets never grow."""
        collection = GemCollection(_random_gems(seed))
        previous = {gid: collection.gem(gid).unknown_facets for gid in collection.gem_ids}
        for _ in collection.order_by_difficulty():
            for gid in collection.gem_ids:
                current = collection.gem(gid).unknown_facets
                assert current <= previous[gid]
                previous[gid] = current

    def test_deterministic(self):
        """Test the same gems give the same batches and order."""
        first = GemCollection(_random_gems(seed=11))
        second = GemCollection(_random_gems(seed=11))
        first_batches = [sorted(r.facets) for r in first.order_by_difficulty()]
        second_batches = [sorted(r.facets) for r in second.order_by_difficulty()]
        assert first_batches == second_batches
        assert first.finalized_order() == second.finalized_order()

    def test_known_facets_accumulate(self):
        """Test taught facets become known and leave the facet index."""
        collection = GemCollection(_random_gems(seed=8))
        taught: set[str] = set()
        for result in collection.order_by_difficulty():
            taught |= result.facets
        assert collection.known_facets == frozenset(taught)
        for facet in taught:
            assert collection.gems_with_facet(facet) == frozenset()


class TestFinalizedOrder:
    """Tests for finalized_order."""

    def test_order_follows_completion(self):
        """Test known gems come first, then gems in completion order."""
        collection = _collection({"x", "y"}, {"x"}, {"y", "z"}, set())
        list(collection.order_by_difficulty())
        assert collection.finalized_order() == [3, 1, 0, 2]

    def test_every_gem_once(self):
        """Test every gem appears exactly once."""
        collection = GemCollection(_random_gems(seed=9))
        list(collection.order_by_difficulty(rounds=10))
        order = collection.finalized_order()
        assert sorted(order) == collection.gem_ids

    def test_before_any_round(self):
        """Test the order before any round falls back to facet count."""
        collection = _collection({"a", "b"}, {"a"}, set())
        assert collection.finalized_order() == [2, 1, 0]


class TestCheckInvariants:
    """Tests for check_invariants."""

    def test_clean_collection_passes(self):
        """Test a freshly indexed collection passes."""
        collection = _collection({"a", "b"}, {"a"})
        collection.check_invariants()

    def test_unindexed_collection_passes(self):
        """Test an unindexed collection passes."""
        collection = _collection({"a"}, indexed=False)
        collection.check_invariants()

    def test_wrong_bucket_detected(self):
        """Test a gem filed under the wrong size is detected."""
        collection = _collection({"a", "b"}, {"a"})
        collection._size_index[1].add(0)
        with pytest.raises(IndexConsistencyError):
            collection.check_invariants()

    def test_unfiled_gem_detected(self):
        """Test a gem missing from the size index is detected."""
        collection = _collection({"a", "b"}, {"a"})
        collection._size_index[2].discard(0)
        with pytest.raises(IndexConsistencyError):
            collection.check_invariants()

    def test_stale_facet_entry_detected(self):
        """Test a facet entry for a gem without that facet is detected."""
        collection = _collection({"a"})
        collection._facet_index.setdefault("b", set()).add(0)
        with pytest.raises(IndexConsistencyError):
            collection.check_invariants()

    def test_omitted_facet_entry_detected(self):
        """Test a gem missing from its facet's entry is detected."""
        collection = _collection({"a", "b"})
        collection._facet_index["b"].discard(0)
        with pytest.raises(IndexConsistencyError):
            collection.check_invariants()

    def test_missing_gem_detected(self):
        """Test an unknown id in the size index raises MissingGemError."""
        collection = _collection({"a"})
        collection._size_index[1].add(5)
        with pytest.raises(MissingGemError):
            collection.check_invariants()
