"""Tests for the reconciliation engine."""

import pytest

from stakerecon.engine import (
    CompareMode,
    ComparisonPolicy,
    check_aggregate,
    check_count,
    check_snapshot,
    classify,
    common_blocks,
    reconcile,
)
from stakerecon.models import Classification, ComparisonResult, EntityKey, EntityStatus, Observation

NODE = EntityKey(1)


def obs(*pairs):
    return [Observation(b, v) for b, v in pairs]


class TestClassify:
    def test_zero_difference_is_match(self):
        assert classify(0, 0) is Classification.MATCH
        assert classify(0, 10) is Classification.MATCH

    def test_boundary_is_within_tolerance(self):
        assert classify(10, 10) is Classification.WITHIN_TOLERANCE
        assert classify(-10, 10) is Classification.WITHIN_TOLERANCE

    def test_past_boundary_is_mismatch(self):
        assert classify(11, 10) is Classification.MISMATCH
        assert classify(-11, 10) is Classification.MISMATCH

    def test_zero_tolerance(self):
        assert classify(1, 0) is Classification.MISMATCH

    def test_half_trac_default(self):
        half = 500_000_000_000_000_000
        assert classify(half, half) is Classification.WITHIN_TOLERANCE
        assert classify(half + 1, half) is Classification.MISMATCH


class TestReconcile:
    def test_end_to_end_scenario(self):
        ledger = obs((100, 500), (90, 500), (80, 300))
        chain = obs((100, 500), (80, 305))

        result = reconcile(NODE, ledger, chain, tolerance=10)

        assert [c.block_number for c in result.comparisons] == [100, 80]
        assert result.comparisons[0].classification is Classification.MATCH
        assert result.comparisons[1].classification is Classification.WITHIN_TOLERANCE
        assert result.comparisons[1].difference == -5
        assert result.status is EntityStatus.WITHIN_TOLERANCE

    def test_disjoint_series_are_skipped(self):
        result = reconcile(NODE, obs((1, 5)), obs((2, 5)), tolerance=0)
        assert result.status is EntityStatus.SKIPPED
        assert result.comparisons == []

    def test_empty_ledger_is_skipped(self):
        assert reconcile(NODE, [], obs((2, 5)), tolerance=0).status is EntityStatus.SKIPPED

    def test_duplicates_use_highest_value(self):
        ledger = obs((10, 100), (10, 90))
        chain = obs((10, 80), (10, 100))
        result = reconcile(NODE, ledger, chain, tolerance=0)
        assert result.status is EntityStatus.MATCH
        assert len(result.comparisons) == 1

    def test_any_mismatch_fails_entity(self):
        result = reconcile(NODE, obs((2, 10), (1, 10)), obs((2, 10), (1, 99)), tolerance=0)
        assert result.status is EntityStatus.MISMATCH

    def test_result_carries_context(self):
        result = reconcile(NODE, obs((1, 1)), obs((1, 1)), 0, check="nodes", network="Base", partial_coverage=True)
        assert (result.check, result.network, result.partial_coverage) == ("nodes", "Base", True)


class TestComparisonPolicy:
    ledger = obs((30, 10), (20, 99), (10, 10))
    chain = obs((30, 10), (20, 10), (10, 10))

    def test_max_blocks_one_compares_latest_only(self):
        result = reconcile(NODE, self.ledger, self.chain, 0, policy=ComparisonPolicy(max_blocks=1))
        assert [c.block_number for c in result.comparisons] == [30]
        assert result.status is EntityStatus.MATCH

    def test_max_blocks_two_includes_previous(self):
        result = reconcile(NODE, self.ledger, self.chain, 0, policy=ComparisonPolicy(max_blocks=2))
        assert [c.block_number for c in result.comparisons] == [30, 20]
        assert result.status is EntityStatus.MISMATCH

    def test_first_match_stops_at_acceptable_block(self):
        ledger = obs((30, 1), (20, 10), (10, 99))
        chain = obs((30, 50), (20, 10), (10, 10))
        result = reconcile(NODE, ledger, chain, 0, policy=ComparisonPolicy(mode=CompareMode.FIRST_MATCH))
        assert [c.block_number for c in result.comparisons] == [30, 20]
        assert result.status is EntityStatus.MATCH

    def test_first_match_without_any_match_is_mismatch(self):
        result = reconcile(
            NODE, obs((2, 1), (1, 1)), obs((2, 5), (1, 5)), 0, policy=ComparisonPolicy(mode=CompareMode.FIRST_MATCH)
        )
        assert result.status is EntityStatus.MISMATCH
        assert len(result.comparisons) == 2

    def test_from_config(self):
        policy = ComparisonPolicy.from_config("first-match", 2)
        assert policy == ComparisonPolicy(CompareMode.FIRST_MATCH, 2)

    def test_from_config_rejects_bad_values(self):
        with pytest.raises(ValueError):
            ComparisonPolicy.from_config("sometimes")
        with pytest.raises(ValueError):
            ComparisonPolicy.from_config("all", 0)


class FakeHistory:
    def __init__(self, accepted_blocks):
        self.accepted_blocks = set(accepted_blocks)

    def contains(self, network, key, comparison):
        return comparison.block_number in self.accepted_blocks


def test_history_marks_reused_comparisons():
    result = reconcile(NODE, obs((2, 1), (1, 1)), obs((2, 1), (1, 1)), 0, history=FakeHistory([1]))
    assert [c.reused for c in result.comparisons] == [False, True]
    assert result.comparisons[1] == ComparisonResult(1, 1, 1, Classification.MATCH, reused=True)
    assert result.status is EntityStatus.MATCH


def test_common_blocks_descending():
    assert common_blocks(obs((1, 0), (5, 0), (3, 0)), obs((3, 0), (5, 0), (7, 0))) == [5, 3]


class TestAggregate:
    children = [obs((10, 20)), obs((12, 30), (5, 1000)), obs((11, 49))]

    def test_sum_mismatch(self):
        result = check_aggregate(NODE, self.children, obs((15, 100)), tolerance=0)
        assert result.status is EntityStatus.MISMATCH
        comparison = result.comparisons[0]
        assert (comparison.ledger_value, comparison.chain_value) == (99, 100)
        assert comparison.block_number == 15

    def test_sum_within_tolerance(self):
        result = check_aggregate(NODE, self.children, obs((15, 100)), tolerance=1)
        assert result.status is EntityStatus.WITHIN_TOLERANCE

    def test_empty_parent_is_skipped(self):
        assert check_aggregate(NODE, self.children, [], tolerance=0).status is EntityStatus.SKIPPED

    def test_no_children_sum_to_zero(self):
        result = check_aggregate(NODE, [], obs((1, 0)), tolerance=0)
        assert result.status is EntityStatus.MATCH
        result = check_aggregate(NODE, [[]], obs((1, 5)), tolerance=0)
        assert result.status is EntityStatus.MISMATCH


class TestCount:
    def test_count_within_tolerance(self):
        result = check_count("knowledge-collections", 1000, 1150, tolerance=200, network="Gnosis")
        assert result.status is EntityStatus.WITHIN_TOLERANCE
        assert result.key is None
        assert result.check == "knowledge-collections"

    def test_count_mismatch(self):
        assert check_count("kc", 1000, 1201, tolerance=200).status is EntityStatus.MISMATCH

    def test_count_match(self):
        result = check_count("kc", 7, 7, tolerance=0)
        assert result.comparisons == [ComparisonResult(0, 7, 7, Classification.MATCH)]


class TestSnapshot:
    def test_latest_ledger_value_against_contract_read(self):
        result = check_snapshot(NODE, obs((90, 400), (120, 500)), 505, tolerance=10, network="Gnosis")
        comparison = result.comparisons[0]
        assert result.status is EntityStatus.WITHIN_TOLERANCE
        assert (comparison.block_number, comparison.ledger_value, comparison.chain_value) == (120, 500, 505)
        assert result.check == "contract-state"

    def test_pinned_block_is_reported(self):
        result = check_snapshot(NODE, obs((120, 500)), 499, tolerance=0, block_number=120)
        assert result.status is EntityStatus.MISMATCH
        assert result.comparisons[0].block_number == 120
        assert result.detail == ""

    def test_empty_ledger_is_skipped(self):
        assert check_snapshot(NODE, [], 5, tolerance=0).status is EntityStatus.SKIPPED
