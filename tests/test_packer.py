"""
tests/test_packer.py
────────────────────
Test suite for packing_core (pack, Bin, PackingResult).

What we are testing
────────────────────
pack() is positional: matrices in, indices out. It must
  • open the cheapest set of new bins, measured as price per packed unit
  • prefer fewer, larger bins when that cost is an exact tie
  • fill existing capacity before opening anything
  • respect compatibility masks and budget groups
  • report what fits nowhere instead of raising

Test groups
────────────
Group 1: bin type choice  — cost per packed unit, tie-breaks
Group 2: existing capacity — residual bins, compat mask
Group 3: constraints      — compat, budgets, unplaced items
Group 4: input validation and Bin
"""

from __future__ import annotations

import numpy as np
import pytest

from packing_core import Bin, PackingInputError, pack


def _items(n: int, cpu: float = 2.0, mem: float = 4.0) -> np.ndarray:
    return np.array([[cpu, mem]] * n, dtype=np.float64)


SMALL_LARGE = np.array([[4.0, 8.0], [8.0, 16.0]])
PRICES = np.array([1.0, 2.0])


# ─────────────────────────────────────────────────────────────────────────────
# Group 1: bin type choice
# ─────────────────────────────────────────────────────────────────────────────

class TestBinTypeChoice:

    def test_three_items_open_two_small_bins(self):
        """4 cores of work per $1 beats 6 cores of work per $2."""
        result = pack(_items(3), SMALL_LARGE, PRICES)
        assert [b.type_index for b in result.new_bins] == [0, 0]
        assert result.unplaced == []
        assert result.total_price(PRICES) == pytest.approx(2.0)

    def test_four_items_prefer_one_large_bin_on_tie(self):
        result = pack(_items(4), SMALL_LARGE, PRICES)
        assert [b.type_index for b in result.new_bins] == [1]
        assert sorted(result.bins[0].items) == [0, 1, 2, 3]

    def test_every_item_assigned_exactly_once(self):
        result = pack(_items(7), SMALL_LARGE, PRICES)
        assert sorted(result.assignments) == list(range(7))
        placed = [i for b in result.bins for i in b.items]
        assert sorted(placed) == list(range(7))

    def test_cheaper_type_wins_outright(self):
        prices = np.array([1.0, 1.4])
        result = pack(_items(3), SMALL_LARGE, prices)
        assert [b.type_index for b in result.new_bins] == [1]

    def test_type_rank_breaks_exact_ties(self):
        caps = np.array([[4.0, 8.0], [4.0, 8.0]])
        result = pack(_items(2), caps, np.array([1.0, 1.0]), type_rank=np.array([1, 0]))
        assert [b.type_index for b in result.new_bins] == [1]

    def test_bin_capacity_is_never_exceeded(self):
        demands = np.array([[3.0, 1.0], [3.0, 1.0], [1.0, 7.0], [2.0, 2.0]])
        result = pack(demands, SMALL_LARGE, PRICES)
        for b in result.bins:
            assert np.all(b.used <= b.capacity + 1e-9)


# ─────────────────────────────────────────────────────────────────────────────
# Group 2: existing capacity
# ─────────────────────────────────────────────────────────────────────────────

class TestExistingCapacity:

    def test_existing_capacity_used_before_new_bins(self):
        result = pack(_items(2), SMALL_LARGE, PRICES, existing=np.array([[4.0, 8.0]]))
        assert result.new_bins == []
        assert result.bins[0].existing_index == 0

    def test_overflow_opens_new_bin(self):
        result = pack(_items(3), SMALL_LARGE, PRICES, existing=np.array([[4.0, 8.0]]))
        assert len(result.new_bins) == 1
        assert result.new_bins[0].type_index == 0

    def test_existing_only_reports_unplaced(self):
        result = pack(_items(3), existing=np.array([[4.0, 8.0]]))
        assert result.unplaced == [2]

    def test_existing_compat_mask_is_respected(self):
        existing = np.array([[4.0, 8.0], [4.0, 8.0]])
        compat = np.array([[False, True]])
        result = pack(_items(1), existing=existing, existing_compat=compat)
        assert result.bins[0].existing_index == 1

    def test_empty_existing_bins_are_dropped(self):
        existing = np.array([[1.0, 1.0], [4.0, 8.0]])
        result = pack(_items(1), existing=existing)
        assert len(result.bins) == 1
        assert result.assignments == {0: 0}


# ─────────────────────────────────────────────────────────────────────────────
# Group 3: constraints
# ─────────────────────────────────────────────────────────────────────────────

class TestConstraints:

    def test_compat_mask_excludes_type(self):
        compat = np.array([[False, True]] * 3)
        result = pack(_items(3), SMALL_LARGE, PRICES, compat=compat)
        assert {b.type_index for b in result.new_bins} == {1}

    def test_oversized_item_is_unplaced(self):
        demands = np.array([[2.0, 4.0], [32.0, 4.0]])
        result = pack(demands, SMALL_LARGE, PRICES)
        assert result.unplaced == [1]
        assert 0 in result.assignments

    def test_budget_group_limits_new_bins(self):
        result = pack(
            _items(3), SMALL_LARGE, PRICES,
            type_groups=np.array([0, 0]),
            group_budgets=np.array([[4.0, 8.0]]),
        )
        assert [b.type_index for b in result.new_bins] == [0]
        assert result.unplaced == [2]

    def test_budget_array_is_not_mutated(self):
        budgets = np.array([[8.0, 16.0]])
        pack(_items(2), SMALL_LARGE, PRICES,
             type_groups=np.array([0, 0]), group_budgets=budgets)
        assert budgets.tolist() == [[8.0, 16.0]]

    def test_ungrouped_types_ignore_budgets(self):
        result = pack(
            _items(3), SMALL_LARGE, PRICES,
            type_groups=np.array([-1, -1]),
            group_budgets=np.zeros((1, 2)),
        )
        assert result.unplaced == []


# ─────────────────────────────────────────────────────────────────────────────
# Group 4: input validation and Bin
# ─────────────────────────────────────────────────────────────────────────────

class TestInputsAndBin:

    def test_mismatched_prices_raise(self):
        with pytest.raises(PackingInputError):
            pack(_items(1), SMALL_LARGE, np.array([1.0]))

    def test_mismatched_type_groups_raise(self):
        with pytest.raises(PackingInputError):
            pack(_items(1), SMALL_LARGE, PRICES,
                 type_groups=np.array([0]), group_budgets=np.array([[1.0, 1.0]]))

    def test_bin_fits_with_float_tolerance(self):
        b = Bin(np.array([0.3, 1.0]), type_index=0)
        b.place(0, np.array([0.1, 0.0]))
        assert b.fits(np.array([0.2, 1.0]))

    def test_bin_tracks_used_and_origin(self):
        b = Bin(np.array([4.0, 8.0]), existing_index=2)
        b.place(5, np.array([1.0, 2.0]))
        assert not b.is_new
        assert b.used.tolist() == [1.0, 2.0]
        assert b.items == [5]
