"""
Protocol for asset graph stores

The hierarchy synchronizer and the analytics engine only talk to the graph
through this interface, so the in-memory and PostgreSQL backends can be
swapped by configuration.
"""

from typing import Any, List, Optional, Protocol, Sequence, Tuple

from .models import ChangeInfo, IntervalRecord, Node, NodeTemplate, RelationKind, Attribute


class AssetGraphStore(Protocol):
    """
    Protocol for asset graph backends

    Structural mutations become visible to other readers only after
    commit(); the caller that made them sees them at once.
    """

    async def get_template(self, name: str) -> Optional[NodeTemplate]:
        ...

    async def base_template_name(self, template_name: str) -> str:
        """Name of the root of a template's base chain"""
        ...

    async def find_container(self, name: str) -> Optional[Node]:
        ...

    async def create_container(self, name: str) -> Node:
        ...

    async def container_children(self, container: Node) -> List[Node]:
        """Nodes owned by a container"""
        ...

    async def create_node(self, container: Node, name: str, template: str) -> Node:
        """
        Create a node from a template under a container

        Series attributes of the new node start bound to their template's
        point pattern.
        """
        ...

    async def get_nodes(self, ids: Sequence[str]) -> List[Node]:
        ...

    async def find_nodes_by_template(
        self,
        template: str,
        start: int,
        count: int,
        include_derived: bool = True
    ) -> Tuple[List[Node], int]:
        """
        Page through the nodes of a template, sorted by name

        Returns:
            The nodes in [start, start+count) and the total number of nodes
        """
        ...

    async def load_attributes(self, nodes: Sequence[Node], names: Sequence[str]) -> None:
        """Populate node.attributes for the given attribute names"""
        ...

    async def get_attribute_value(self, node: Node, name: str) -> Any:
        """Current scalar value, read from the store"""
        ...

    async def set_attribute_value(self, node: Node, name: str, value: Any) -> None:
        ...

    async def add_child(self, parent: Node, child: Node, kind: RelationKind = RelationKind.WEAK) -> None:
        ...

    async def remove_child(self, parent: Node, child: Node) -> None:
        ...

    async def get_parents(self, child: Node, kind: RelationKind = RelationKind.WEAK) -> List[Node]:
        ...

    async def get_children(self, parent: Node, kind: RelationKind = RelationKind.WEAK) -> List[Node]:
        ...

    async def set_point_bindings(self, attributes: Sequence[Attribute]) -> None:
        """Persist the config strings of resolved series attributes"""
        ...

    async def find_changes(self, cursor: Any) -> Tuple[List[ChangeInfo], Any]:
        """
        Changes recorded after a cursor

        A None cursor starts monitoring and returns no changes.
        """
        ...

    async def refresh(self, changes: Optional[Sequence[ChangeInfo]] = None) -> None:
        ...

    async def wait_for_change(self, timeout: float) -> bool:
        """Wait until the change log grows, False on timeout"""
        ...

    async def create_interval(self, record: IntervalRecord) -> None:
        """Persist an interval record immediately"""
        ...

    async def commit(self) -> None:
        ...

    async def close(self) -> None:
        ...
