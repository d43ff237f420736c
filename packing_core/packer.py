"""
packing_core/packer.py
──────────────────────
Cost-aware bin-packing with constraints.

What this is
─────────────
The packer answers: "Given these demands and these node types, which
nodes should exist and which item rides on which node?" It is the engine
behind both the Provisioning Planner (open the cheapest set of new nodes)
and the Consolidation Engine (can these items fit into spare capacity that
already exists?).

Everything is positional. Callers build matrices, the packer returns
indices:

  demands      (n_items × n_dims)   what each item needs
  capacities   (n_types × n_dims)   what one bin of each type offers
  prices       (n_types,)           hourly price of one bin of each type
  compat       (n_items × n_types)  hard-constraint mask (True = allowed)
  type_rank    (n_types,)           caller's tie-break order (lower first)
  existing     (n_existing × n_dims) residual capacity of running nodes
  existing_compat (n_items × n_existing)

The algorithm
──────────────
First-fit decreasing, with a cost-aware rule for opening bins.

  1. Sort items by normalised size, largest first. The normaliser is the
     per-dimension maximum across all bin types, so a 2-core item and a
     4 GiB item are comparable.
  2. For each item, first-fit into already-open bins (existing bins first,
     then new bins in the order they were opened).
  3. If nothing fits, open a new bin. For each compatible type, simulate
     greedily filling a fresh bin of that type with this item and the items
     still waiting behind it. Score the type by
         price / packed_value
     — the price per unit of work it would actually carry. Lowest wins.
     Ties go to the bin that packs more (fewer, larger nodes), then to the
     caller's type_rank.

Why price per packed unit rather than price per capacity?
    Three 2-core items and types {4 cores @ $1, 8 cores @ $2}: per capacity
    the types are identical. Per packed unit, the 4-core bin carries 4 cores
    of work for $1 while the 8-core bin carries only 6 for $2, so two small
    nodes are chosen. With four items the 8-core bin carries all 8 cores for
    $2 — an exact tie — and the larger node wins.

Budgets
────────
Types may belong to budget groups (a NodePool with limits). Opening a bin
subtracts its capacity from the group budget; a type whose capacity no
longer fits its group's remaining budget cannot be opened.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import numpy as np
from numpy.typing import NDArray

from packing_core.bins import FIT_EPSILON, Bin

logger = logging.getLogger(__name__)

SCORE_DECIMALS: int = 9
"""Rounding applied to efficiency scores before comparing them.

Float noise must not break an exact cost tie (0.1 / 0.5 vs 0.2 / 1.0).
"""


class PackingInputError(ValueError):
    """Matrices passed to pack() have inconsistent shapes."""


@dataclass
class PackingResult:
    """
    Output of one pack() call.

    Attributes:
        bins:        Every bin that received at least one item. Existing
                     bins first (by existing index), then new bins in the
                     order they were opened.
        assignments: item index → position in `bins`.
        unplaced:    Item indices that fit nowhere.
    """
    bins: List[Bin] = field(default_factory=list)
    assignments: Dict[int, int] = field(default_factory=dict)
    unplaced: List[int] = field(default_factory=list)

    @property
    def new_bins(self) -> List[Bin]:
        return [b for b in self.bins if b.is_new]

    def total_price(self, prices: NDArray[np.float64]) -> float:
        return float(sum(prices[b.type_index] for b in self.new_bins))


def pack(
    demands: NDArray[np.float64],
    capacities: Optional[NDArray[np.float64]] = None,
    prices: Optional[NDArray[np.float64]] = None,
    compat: Optional[NDArray[np.bool_]] = None,
    type_rank: Optional[NDArray[np.int64]] = None,
    existing: Optional[NDArray[np.float64]] = None,
    existing_compat: Optional[NDArray[np.bool_]] = None,
    type_groups: Optional[NDArray[np.int64]] = None,
    group_budgets: Optional[NDArray[np.float64]] = None,
) -> PackingResult:
    """
    Pack items into existing capacity and, where needed, newly opened bins.

    Args:
        demands:         (n_items × n_dims) item demand vectors.
        capacities:      (n_types × n_dims) capacity of one bin per type.
                         None or zero rows = no new bins may be opened.
        prices:          (n_types,) hourly price per type.
        compat:          (n_items × n_types) mask. None = all compatible.
        type_rank:       (n_types,) tie-break order. None = index order.
        existing:        (n_existing × n_dims) residual capacity already
                         running. None = no existing capacity.
        existing_compat: (n_items × n_existing) mask. None = all compatible.
        type_groups:     (n_types,) budget group id per type, -1 = none.
        group_budgets:   (n_groups × n_dims) remaining budget per group.
                         Mutated copy; the caller's array is untouched.

    Returns:
        PackingResult. Items that fit nowhere are listed in `unplaced`;
        that is a normal outcome, not an error.

    Raises:
        PackingInputError: on inconsistent matrix shapes.
    """
    demands = np.atleast_2d(np.asarray(demands, dtype=np.float64))
    n_items, n_dims = demands.shape

    if capacities is None:
        capacities = np.zeros((0, n_dims), dtype=np.float64)
    capacities = np.asarray(capacities, dtype=np.float64).reshape(-1, n_dims)
    n_types = capacities.shape[0]

    prices = (
        np.zeros(n_types, dtype=np.float64) if prices is None
        else np.asarray(prices, dtype=np.float64)
    )
    compat = (
        np.ones((n_items, n_types), dtype=bool) if compat is None
        else np.asarray(compat, dtype=bool).reshape(n_items, n_types)
    )
    type_rank = (
        np.arange(n_types, dtype=np.int64) if type_rank is None
        else np.asarray(type_rank, dtype=np.int64)
    )

    if existing is None:
        existing = np.zeros((0, n_dims), dtype=np.float64)
    existing = np.asarray(existing, dtype=np.float64).reshape(-1, n_dims)
    n_existing = existing.shape[0]
    existing_compat = (
        np.ones((n_items, n_existing), dtype=bool) if existing_compat is None
        else np.asarray(existing_compat, dtype=bool).reshape(n_items, n_existing)
    )

    if prices.shape != (n_types,) or type_rank.shape != (n_types,):
        raise PackingInputError(
            f"prices/type_rank must have shape ({n_types},), got "
            f"{prices.shape} and {type_rank.shape}"
        )

    budgets = None
    if type_groups is not None and group_budgets is not None:
        type_groups = np.asarray(type_groups, dtype=np.int64)
        budgets = np.array(group_budgets, dtype=np.float64, copy=True).reshape(-1, n_dims)
        if type_groups.shape != (n_types,):
            raise PackingInputError(
                f"type_groups must have shape ({n_types},), got {type_groups.shape}"
            )

    # ── Step 1: order items, largest first ───────────────────────────────────
    order = _decreasing_order(demands, capacities, existing)

    # ── Step 2/3: place ──────────────────────────────────────────────────────
    bins: List[Bin] = [Bin(existing[k], existing_index=k) for k in range(n_existing)]
    placed_in: Dict[int, int] = {}
    unplaced: List[int] = []
    ref = _normaliser(capacities, existing)

    for pos, item in enumerate(order):
        demand = demands[item]

        target = _first_fit(bins, item, demand, compat, existing_compat)
        if target is not None:
            bins[target].place(item, demand)
            placed_in[item] = target
            continue

        waiting = [i for i in order[pos + 1:] if i not in placed_in]
        t = _choose_new_type(
            item, waiting, demands, capacities, prices, compat, type_rank,
            ref, type_groups, budgets,
        )
        if t is None:
            unplaced.append(item)
            logger.debug("pack: item %d fits no open bin and no bin type", item)
            continue

        if budgets is not None and type_groups[t] >= 0:
            budgets[type_groups[t]] -= capacities[t]

        new_bin = Bin(capacities[t], type_index=t)
        new_bin.place(item, demand)
        bins.append(new_bin)
        placed_in[item] = len(bins) - 1

    # ── Drop empty existing bins, re-index assignments ───────────────────────
    result = PackingResult(unplaced=sorted(unplaced))
    remap: Dict[int, int] = {}
    for idx, b in enumerate(bins):
        if b.items:
            remap[idx] = len(result.bins)
            result.bins.append(b)
    result.assignments = {item: remap[b_idx] for item, b_idx in placed_in.items()}
    return result


# ── Internals ─────────────────────────────────────────────────────────────────

def _normaliser(
    capacities: NDArray[np.float64],
    existing: NDArray[np.float64],
) -> NDArray[np.float64]:
    """Per-dimension max capacity; dimensions nobody offers get 1.0 to avoid /0."""
    stacked = np.vstack([capacities, existing]) if existing.size else capacities
    if stacked.size == 0:
        return np.ones(capacities.shape[1], dtype=np.float64)
    ref = stacked.max(axis=0)
    ref[ref <= 0.0] = 1.0
    return ref


def _item_value(demand: NDArray[np.float64], ref: NDArray[np.float64]) -> float:
    """Normalised size of one item: its dominant share of the reference node."""
    return float(np.max(demand / ref)) if demand.size else 0.0


def _decreasing_order(
    demands: NDArray[np.float64],
    capacities: NDArray[np.float64],
    existing: NDArray[np.float64],
) -> List[int]:
    ref = _normaliser(capacities, existing)
    sizes = np.max(demands / ref, axis=1) if demands.size else np.zeros(0)
    # stable sort: equal-size items keep caller order
    return [int(i) for i in np.argsort(-sizes, kind="stable")]


def _first_fit(
    bins: List[Bin],
    item: int,
    demand: NDArray[np.float64],
    compat: NDArray[np.bool_],
    existing_compat: NDArray[np.bool_],
) -> Optional[int]:
    for idx, b in enumerate(bins):
        if b.is_new:
            if not compat[item, b.type_index]:
                continue
        elif not existing_compat[item, b.existing_index]:
            continue
        if b.fits(demand):
            return idx
    return None


def _choose_new_type(
    item: int,
    waiting: List[int],
    demands: NDArray[np.float64],
    capacities: NDArray[np.float64],
    prices: NDArray[np.float64],
    compat: NDArray[np.bool_],
    type_rank: NDArray[np.int64],
    ref: NDArray[np.float64],
    type_groups: Optional[NDArray[np.int64]],
    budgets: Optional[NDArray[np.float64]],
) -> Optional[int]:
    """
    Pick the bin type to open for `item`, or None if no type can host it.

    Key (lower is better):
        (price / packed_value, -packed_value, type_rank)
    """
    best_t: Optional[int] = None
    best_key = None

    for t in range(capacities.shape[0]):
        if not compat[item, t]:
            continue
        if np.any(demands[item] > capacities[t] + FIT_EPSILON):
            continue
        if budgets is not None and type_groups[t] >= 0:
            if np.any(capacities[t] > budgets[type_groups[t]] + FIT_EPSILON):
                continue

        # simulate greedily filling a fresh bin of type t
        residual = capacities[t] - demands[item]
        packed_value = _item_value(demands[item], ref)
        for other in waiting:
            if not compat[other, t]:
                continue
            if np.all(demands[other] <= residual + FIT_EPSILON):
                residual = residual - demands[other]
                packed_value += _item_value(demands[other], ref)

        efficiency = prices[t] / packed_value if packed_value > 0 else float("inf")
        key = (
            round(efficiency, SCORE_DECIMALS),
            -round(packed_value, SCORE_DECIMALS),
            int(type_rank[t]),
        )
        if best_key is None or key < best_key:
            best_key = key
            best_t = t

    return best_t
