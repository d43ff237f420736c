"""
autoscaler/control_plane/policies.py
────────────────────────────────────
PolicyStore: the operator-declared NodeClasses and NodePools.

Invariants enforced here
─────────────────────────
  1. A NodePool may only reference a NodeClass that exists.
  2. A NodeClass referenced by any NodePool is immutable: re-declaring it
     with different contents raises PolicyViolationError.
  3. A NodeClass can only be deleted when no NodePool references it.

Deleting a NodePool is always allowed; its nodes keep their pool label and
are drained by the operator, not by this store.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

from autoscaler.shared.errors import PolicyViolationError
from autoscaler.shared.models import NodeClass, NodePool

logger = logging.getLogger(__name__)


class PolicyStore:

    def __init__(
        self,
        node_classes: Optional[List[NodeClass]] = None,
        node_pools: Optional[List[NodePool]] = None,
    ) -> None:
        self._classes: Dict[str, NodeClass] = {}
        self._pools: Dict[str, NodePool] = {}
        for node_class in node_classes or []:
            self.apply_node_class(node_class)
        for pool in node_pools or []:
            self.apply_node_pool(pool)

    # ── NodeClass ─────────────────────────────────────────────────────────────

    def apply_node_class(self, node_class: NodeClass) -> None:
        """Create or update a NodeClass. Updates of a referenced class are refused."""
        current = self._classes.get(node_class.name)
        if current is not None and current != node_class and self.referencing_pools(node_class.name):
            raise PolicyViolationError(
                f"NodeClass {node_class.name!r} is referenced by "
                f"{self.referencing_pools(node_class.name)} and cannot change"
            )
        self._classes[node_class.name] = node_class
        logger.info("NodeClass %s applied", node_class.name)

    def delete_node_class(self, name: str) -> None:
        users = self.referencing_pools(name)
        if users:
            raise PolicyViolationError(
                f"NodeClass {name!r} is still referenced by NodePool(s) {users}"
            )
        self._classes.pop(name, None)
        logger.info("NodeClass %s deleted", name)

    def referencing_pools(self, class_name: str) -> List[str]:
        return sorted(p.name for p in self._pools.values() if p.node_class == class_name)

    # ── NodePool ──────────────────────────────────────────────────────────────

    def apply_node_pool(self, pool: NodePool) -> None:
        if pool.node_class not in self._classes:
            raise PolicyViolationError(
                f"NodePool {pool.name!r} references unknown NodeClass {pool.node_class!r}"
            )
        self._pools[pool.name] = pool
        logger.info("NodePool %s applied (class=%s, weight=%d)",
                    pool.name, pool.node_class, pool.weight)

    def delete_node_pool(self, name: str) -> None:
        self._pools.pop(name, None)

    # ── Queries ───────────────────────────────────────────────────────────────

    def node_class(self, name: str) -> Optional[NodeClass]:
        return self._classes.get(name)

    def node_pool(self, name: str) -> Optional[NodePool]:
        return self._pools.get(name)

    @property
    def node_pools(self) -> List[NodePool]:
        """Pools ordered by weight, heaviest first, then by name."""
        return sorted(self._pools.values(), key=lambda p: (-p.weight, p.name))

    @property
    def node_classes(self) -> List[NodeClass]:
        return list(self._classes.values())
