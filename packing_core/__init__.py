"""
packing_core — cost-aware bin-packing with constraints.

Public API:
    pack              — place item demand vectors into existing capacity
                        and newly opened bins, cheapest first
    PackingResult     — bins, item → bin assignments, unplaced items
    Bin               — residual-capacity tracker for one node
    PackingInputError — raised on inconsistent matrix shapes

Usage:
    from packing_core import pack

    result = pack(demands, capacities, prices, compat=mask)
    for b in result.new_bins:
        launch(types[b.type_index], items=b.items)
"""

from packing_core.bins import Bin
from packing_core.packer import PackingInputError, PackingResult, pack

__all__ = ["Bin", "PackingInputError", "PackingResult", "pack"]
