"""Copy-on-write registry of content trees shared by all ingestion lanes."""

import logging
from threading import Lock
from typing import Dict, Iterable, List, Optional

from engines.content_tree import ContentTree
from models import ContentNode

logger = logging.getLogger(__name__)


class ContentTreeRegistry:
    """Thread-safe map of formation id to its current immutable tree.

    Readers get whatever tree is current; a structure change builds a new
    tree off to the side and swaps the reference. Trees are never mutated.
    """

    def __init__(self):
        self._trees: Dict[str, ContentTree] = {}
        self._lock = Lock()

    def get(self, formation_id: str) -> Optional[ContentTree]:
        """Return the current tree for a formation, if any."""
        return self._trees.get(formation_id)

    def swap(self, tree: ContentTree) -> Optional[ContentTree]:
        """Install ``tree`` and return the tree it replaces."""
        with self._lock:
            previous = self._trees.get(tree.formation_id)
            trees = dict(self._trees)
            trees[tree.formation_id] = tree
            self._trees = trees
        logger.info(
            "Content tree for formation %s swapped to version %s",
            tree.formation_id,
            tree.version,
        )
        return previous

    def on_content_changed(self, formation_id: str, nodes: Iterable[ContentNode]) -> ContentTree:
        """Rebuild a formation after an authoring change.

        A :class:`StructureError` leaves the previous tree in place and
        propagates to the caller.
        """
        current = self._trees.get(formation_id)
        version = current.version + 1 if current is not None else 1
        tree = ContentTree.build(formation_id, nodes, version=version)
        self.swap(tree)
        return tree

    def find_formation_for(self, node_id: str) -> Optional[str]:
        """Locate the formation whose current tree contains ``node_id``."""
        for formation_id, tree in self._trees.items():
            if node_id in tree:
                return formation_id
        return None

    def formation_ids(self) -> List[str]:
        return sorted(self._trees)
