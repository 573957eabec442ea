"""
Element container index

Caches the existing nodes of one hierarchy level by name, so non-leaf
nodes are created at most once however many callers ask for them.
"""

import asyncio
import logging
from typing import Optional, Tuple

from ..graph.base import AssetGraphStore
from ..graph.models import Node, non_leaf_name


class ElementContainerIndex:
    def __init__(self, graph: AssetGraphStore, template: str, container: Node, is_leaf: bool = False):
        self._graph = graph
        self._elements = {}
        self._lock = asyncio.Lock()

        self.template = template
        self.container = container
        self.is_leaf = is_leaf

    @classmethod
    async def load(
        cls,
        graph       : AssetGraphStore,
        template    : str,
        container   : Node,
        is_leaf     : bool = False
    ) -> "ElementContainerIndex":
        """Build the index from the container's existing children

        The leaf level is never cached, leaves are paged from the store.
        """
        index = cls(graph, template, container, is_leaf)
        if not is_leaf:
            for node in await graph.container_children(container):
                index._elements[node.name] = node

            logging.info(f"[ElementContainerIndex] Loaded {len(index._elements)} nodes from {container.name}")
        return index

    def __len__(self) -> int:
        return len(self._elements)

    def __contains__(self, name: str) -> bool:
        return name in self._elements

    def name_for(self, key) -> str:
        return non_leaf_name(self.template, key)

    def get(self, key) -> Optional[Node]:
        return self._elements.get(self.name_for(key))

    async def get_or_create(self, key) -> Tuple[Node, bool]:
        """
        Node identified by a key, created under the container if missing

        Returns:
            The node and whether it was created by this call
        """
        if self.is_leaf:
            raise RuntimeError("get_or_create is not available on the leaf level.")

        name = self.name_for(key)
        async with self._lock:
            node = self._elements.get(name)
            if node is not None:
                return node, False

            node = await self._graph.create_node(self.container, name, self.template)
            self._elements[name] = node

        logging.debug(f"[ElementContainerIndex] Created {node.path}")
        return node, True
