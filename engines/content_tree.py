"""Immutable content tree of a formation.

The tree mirrors the authoring hierarchy Formation → Module → Chapter →
Course → (Exercise | QCM). Only active nodes are kept. Construction either
produces a consistent tree or raises :class:`StructureError`; malformed
structures are reported to content authors and never repaired here.
"""

from __future__ import annotations

import logging
from types import MappingProxyType
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

from errors import StructureError
from models import ContentNode, NodeKind

_LOGGER = logging.getLogger(__name__)

# Allowed parent kind for each child kind.
_PARENT_KIND: Dict[NodeKind, NodeKind] = {
    NodeKind.MODULE: NodeKind.FORMATION,
    NodeKind.CHAPTER: NodeKind.MODULE,
    NodeKind.COURSE: NodeKind.CHAPTER,
    NodeKind.EXERCISE: NodeKind.COURSE,
    NodeKind.QCM: NodeKind.COURSE,
}


class ContentTree:
    """Read-only view over one version of a formation's structure.

    Use :meth:`build` rather than the constructor. Durations and leaf weights
    are computed once at build time; a new structure means a new tree.
    """

    def __init__(
        self,
        formation_id: str,
        nodes: Mapping[str, ContentNode],
        children: Mapping[str, Tuple[str, ...]],
        version: int,
    ) -> None:
        self.formation_id = formation_id
        self.version = version
        self._nodes = MappingProxyType(dict(nodes))
        self._children = MappingProxyType(dict(children))
        self._durations: Mapping[str, int] = MappingProxyType(self._compute_durations())
        self._leaf_ids: Tuple[str, ...] = tuple(
            node_id for node_id in self._walk(formation_id) if self._nodes[node_id].kind.is_leaf
        )
        self._weights: Mapping[str, float] = MappingProxyType(self._compute_weights())

    # ----- construction --------------------------------------------------
    @classmethod
    def build(
        cls,
        formation_id: str,
        nodes: Iterable[ContentNode],
        version: int = 0,
    ) -> "ContentTree":
        """Validate ``nodes`` and build the tree of ``formation_id``."""

        by_id: Dict[str, ContentNode] = {}
        for node in nodes:
            if node.id in by_id:
                raise StructureError(
                    f"Duplicate content node id: {node.id}",
                    formation_id=formation_id,
                    node_id=node.id,
                )
            by_id[node.id] = node

        root = by_id.get(formation_id)
        if root is None or root.kind is not NodeKind.FORMATION:
            raise StructureError(
                f"Formation root {formation_id} is missing", formation_id=formation_id
            )
        if root.parent_id is not None:
            raise StructureError(
                f"Formation root {formation_id} may not have a parent",
                formation_id=formation_id,
            )
        for node in by_id.values():
            if node.kind is NodeKind.FORMATION and node.id != formation_id:
                raise StructureError(
                    f"Unexpected second formation root: {node.id}",
                    formation_id=formation_id,
                    node_id=node.id,
                )
            if node.kind is not NodeKind.FORMATION and node.parent_id not in by_id:
                raise StructureError(
                    f"Node {node.id} references missing parent {node.parent_id}",
                    formation_id=formation_id,
                    node_id=node.id,
                    parent_id=node.parent_id,
                )

        cls._check_acyclic(formation_id, by_id)

        # Keep active nodes whose whole ancestor chain is active.
        active: Dict[str, ContentNode] = {}
        for node_id, node in by_id.items():
            if cls._chain_active(node, by_id):
                active[node_id] = node
        if formation_id not in active:
            raise StructureError(
                f"Formation {formation_id} is not active", formation_id=formation_id
            )

        grouped: Dict[str, List[ContentNode]] = {}
        for node in active.values():
            if node.parent_id is None:
                continue
            parent = active[node.parent_id]
            expected = _PARENT_KIND.get(node.kind)
            if expected is not parent.kind:
                raise StructureError(
                    f"{node.kind.value} {node.id} cannot be placed under "
                    f"{parent.kind.value} {parent.id}",
                    formation_id=formation_id,
                    node_id=node.id,
                )
            grouped.setdefault(node.parent_id, []).append(node)

        children: Dict[str, Tuple[str, ...]] = {}
        for parent_id, siblings in grouped.items():
            seen: Dict[int, str] = {}
            for sibling in siblings:
                if sibling.order_index in seen:
                    raise StructureError(
                        f"Siblings {seen[sibling.order_index]} and {sibling.id} share "
                        f"order index {sibling.order_index}",
                        formation_id=formation_id,
                        parent_id=parent_id,
                    )
                seen[sibling.order_index] = sibling.id
            ordered = sorted(siblings, key=lambda item: item.order_index)
            children[parent_id] = tuple(item.id for item in ordered)

        tree = cls(formation_id, active, children, version)
        _LOGGER.debug(
            "Built content tree %s v%s: %s nodes, %s leaves, %s minutes",
            formation_id,
            version,
            len(active),
            len(tree.leaf_ids),
            tree.duration_of(formation_id),
        )
        return tree

    @staticmethod
    def _check_acyclic(formation_id: str, by_id: Mapping[str, ContentNode]) -> None:
        resolved: set[str] = set()
        for start in by_id:
            path: List[str] = []
            on_path: set[str] = set()
            current: Optional[str] = start
            while current is not None and current not in resolved:
                if current in on_path:
                    cycle = path[path.index(current):] + [current]
                    raise StructureError(
                        "Cycle detected in content structure: " + " -> ".join(cycle),
                        formation_id=formation_id,
                        cycle=cycle,
                    )
                on_path.add(current)
                path.append(current)
                current = by_id[current].parent_id
            resolved.update(path)

    @staticmethod
    def _chain_active(node: ContentNode, by_id: Mapping[str, ContentNode]) -> bool:
        current: Optional[ContentNode] = node
        while current is not None:
            if not current.is_active:
                return False
            current = by_id.get(current.parent_id) if current.parent_id else None
        return True

    # ----- derived data --------------------------------------------------
    def _walk(self, node_id: str) -> Iterator[str]:
        stack = [node_id]
        while stack:
            current = stack.pop()
            yield current
            stack.extend(reversed(self._children.get(current, ())))

    def _compute_durations(self) -> Dict[str, int]:
        durations: Dict[str, int] = {}
        # Reverse pre-order visits every child before its parent.
        for node_id in reversed(list(self._walk(self.formation_id))):
            node = self._nodes[node_id]
            if node.kind.is_leaf:
                durations[node_id] = max(0, int(node.duration_minutes))
            else:
                durations[node_id] = sum(durations[c] for c in self._children.get(node_id, ()))
        return durations

    def _compute_weights(self) -> Dict[str, float]:
        if not self._leaf_ids:
            return {}
        total = sum(self._durations[leaf] for leaf in self._leaf_ids)
        if total <= 0:
            share = 1.0 / len(self._leaf_ids)
            return {leaf: share for leaf in self._leaf_ids}
        return {leaf: self._durations[leaf] / total for leaf in self._leaf_ids}

    # ----- public API ----------------------------------------------------
    def duration_of(self, node_id: str) -> int:
        """Return the summed leaf duration (minutes) below ``node_id``."""

        try:
            return self._durations[node_id]
        except KeyError:
            raise KeyError(f"Unknown content node: {node_id}") from None

    def leaf_weights(self) -> Mapping[str, float]:
        """Duration-proportional leaf weights summing to 1.0 across the formation."""

        return self._weights

    def node(self, node_id: str) -> ContentNode:
        return self._nodes[node_id]

    def get(self, node_id: str) -> Optional[ContentNode]:
        return self._nodes.get(node_id)

    def children(self, node_id: str) -> Tuple[str, ...]:
        return self._children.get(node_id, ())

    def ancestors(self, node_id: str) -> List[str]:
        """Return the parent chain of ``node_id``, nearest first, root last."""

        chain: List[str] = []
        parent = self._nodes[node_id].parent_id
        while parent is not None:
            chain.append(parent)
            parent = self._nodes[parent].parent_id
        return chain

    def leaves_under(self, node_id: str) -> Tuple[str, ...]:
        if node_id == self.formation_id:
            return self._leaf_ids
        return tuple(n for n in self._walk(node_id) if self._nodes[n].kind.is_leaf)

    @property
    def leaf_ids(self) -> Tuple[str, ...]:
        return self._leaf_ids

    def nodes_of_kind(self, kind: NodeKind) -> Sequence[str]:
        return [n for n in self._walk(self.formation_id) if self._nodes[n].kind is kind]

    def modules(self) -> Sequence[str]:
        return self.nodes_of_kind(NodeKind.MODULE)

    def chapters(self) -> Sequence[str]:
        return self.nodes_of_kind(NodeKind.CHAPTER)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)
