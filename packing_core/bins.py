"""
packing_core/bins.py
────────────────────
A Bin: one node's worth of capacity during a packing pass.

A bin is either
  • a NEW bin — a node that would be launched, opened from a bin type
    (row of the capacity matrix), or
  • an EXISTING bin — spare capacity on a node that already runs, used by
    consolidation to ask "could these workloads move somewhere else?"

The bin knows nothing about workloads or shapes by name. It tracks a
residual capacity vector and the integer indices of the items placed on it.
Translation back to ids is the caller's job, the same way the packer only
speaks in matrix rows.
"""

from __future__ import annotations

from typing import List, Optional

import numpy as np
from numpy.typing import NDArray

FIT_EPSILON: float = 1e-9
"""Tolerance for float comparisons: 0.1 + 0.2 cores must fit a 0.3 core hole."""


class Bin:
    """
    Residual-capacity tracker for one node.

    Attributes:
        type_index:     Row of the bin-type matrix this bin was opened from,
                        or None for an existing bin.
        existing_index: Row of the existing-capacity matrix, or None for a
                        new bin.
        capacity:       Full capacity vector (float64).
        residual:       What is still free.
        items:          Item indices placed here, in placement order.
    """

    __slots__ = ("type_index", "existing_index", "capacity", "residual", "items")

    def __init__(
        self,
        capacity: NDArray[np.float64],
        type_index: Optional[int] = None,
        existing_index: Optional[int] = None,
    ) -> None:
        self.type_index = type_index
        self.existing_index = existing_index
        self.capacity = np.asarray(capacity, dtype=np.float64)
        self.residual = self.capacity.copy()
        self.items: List[int] = []

    @property
    def is_new(self) -> bool:
        return self.type_index is not None

    def fits(self, demand: NDArray[np.float64]) -> bool:
        return bool(np.all(demand <= self.residual + FIT_EPSILON))

    def place(self, item_index: int, demand: NDArray[np.float64]) -> None:
        self.residual -= demand
        np.clip(self.residual, 0.0, None, out=self.residual)
        self.items.append(item_index)

    @property
    def used(self) -> NDArray[np.float64]:
        return self.capacity - self.residual

    def __repr__(self) -> str:
        origin = f"type={self.type_index}" if self.is_new else f"existing={self.existing_index}"
        return f"Bin({origin}, items={self.items})"
