"""
In-memory asset graph

Single process backend used by tests and demos. It can be seeded from a
YAML file:

    templates:
      - name: Leaf
        attributes:
          - {name: Value, kind: series, point: "\\\\%Server%\\%Element%.%Attribute%"}
          - {name: Branch}
      - {name: Leaf_Sin, base: Leaf}
    containers: [LeafElements]
    nodes:
      - {name: Leaf001, template: Leaf_Sin, container: LeafElements,
         attributes: {Branch: 1, Value: {point: Leaf001.Value}}}
"""

import asyncio
import logging
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

from ruamel.yaml import YAML

from ..errors import GraphLocationError
from .models import (
    CONTAINER_TEMPLATE,
    Attribute,
    AttributeKind,
    AttributeTemplate,
    ChangeInfo,
    IntervalRecord,
    Node,
    NodeTemplate,
    RelationKind,
    base_template_name,
    effective_attribute_templates,
)


class MemoryAssetGraph:
    """Dict backed AssetGraphStore"""

    def __init__(self, name: str = "memory"):
        self.name = name

        self._templates: Dict[str, NodeTemplate] = {}
        self._nodes: Dict[str, Node] = {}
        self._containers: Dict[str, Node] = {}
        self._owned: Dict[str, List[str]] = defaultdict(list)

        self._weak_children: Dict[str, Set[str]] = defaultdict(set)
        self._weak_parents: Dict[str, Set[str]] = defaultdict(set)

        self._changes: List[ChangeInfo] = []
        self._change_event = asyncio.Event()

        self.intervals: List[IntervalRecord] = []
        self.commit_count = 0
        self.closed = False

    #-----------------------------------------------------
    # Seeding

    def add_template(self, template: NodeTemplate) -> NodeTemplate:
        self._templates[template.name] = template
        return template

    def add_container(self, name: str) -> Node:
        if name in self._containers:
            return self._containers[name]

        container = Node(name=name, template=CONTAINER_TEMPLATE)
        self._containers[name] = container
        self._nodes[container.id] = container
        return container

    def add_node(
        self,
        container: str,
        name: str,
        template: str,
        values: Optional[Dict[str, Any]] = None
    ) -> Node:
        """Create a node without recording a change, for seeding"""
        node = self._instantiate(self.add_container(container), name, template)

        for key, value in (values or {}).items():
            attribute = node.attributes.get(key)
            if attribute is None:
                attribute = Attribute(node=node, name=key)
                node.attributes[key] = attribute

            if attribute.is_series and isinstance(value, dict):
                attribute.config_string = str(value.get("point", "") or "")
            else:
                attribute.value = value

        return node

    @classmethod
    def from_yaml(cls, filename: str) -> "MemoryAssetGraph":
        try:
            with open(filename, "r", encoding="utf-8") as f:
                data = YAML(typ="safe").load(f)
        except OSError as e:
            raise GraphLocationError(f"Failed to open graph seed '{filename}': {e}") from e

        if not isinstance(data, dict):
            raise GraphLocationError(f"Graph seed '{filename}' is not a mapping.")

        graph = cls(name=filename)

        for item in data.get("templates") or []:
            attributes = {}
            for a in item.get("attributes") or []:
                attributes[a["name"]] = AttributeTemplate(
                    name=a["name"],
                    kind=AttributeKind(a.get("kind", AttributeKind.SCALAR.value)),
                    default=a.get("default"),
                    point_pattern=a.get("point", "") or "",
                )
            graph.add_template(NodeTemplate(name=item["name"], base=item.get("base"), attributes=attributes))

        for name in data.get("containers") or []:
            graph.add_container(name)

        for item in data.get("nodes") or []:
            graph.add_node(item["container"], item["name"], item["template"], item.get("attributes"))

        logging.info(
            f"[MemoryAssetGraph] Loaded {len(graph._templates)} templates and {len(graph._nodes)} nodes from {filename}"
        )
        return graph

    #-----------------------------------------------------

    def _instantiate(self, container: Node, name: str, template: str) -> Node:
        node = Node(name=name, template=template, container=container.name)
        for at in effective_attribute_templates(self._templates, template).values():
            node.attributes[at.name] = Attribute(
                node=node,
                name=at.name,
                template=at,
                value=None if at.is_series else at.default,
            )

        self._nodes[node.id] = node
        self._owned[container.id].append(node.id)
        return node

    def _record_change(self, node: Node, action: str):
        self._changes.append(ChangeInfo(
            sequence=len(self._changes) + 1,
            node_id=node.id,
            node_name=node.name,
            template=node.template,
            action=action,
            changed_at=datetime.now(timezone.utc),
        ))
        self._change_event.set()

    def _sorted(self, ids) -> List[Node]:
        return sorted((self._nodes[i] for i in ids if i in self._nodes), key=lambda n: n.name)

    #-----------------------------------------------------
    # Templates and containers

    async def get_template(self, name: str) -> Optional[NodeTemplate]:
        return self._templates.get(name)

    async def base_template_name(self, template_name: str) -> str:
        return base_template_name(self._templates, template_name)

    async def find_container(self, name: str) -> Optional[Node]:
        return self._containers.get(name)

    async def create_container(self, name: str) -> Node:
        return self.add_container(name)

    async def container_children(self, container: Node) -> List[Node]:
        return self._sorted(self._owned.get(container.id, []))

    #-----------------------------------------------------
    # Nodes and attributes

    async def create_node(self, container: Node, name: str, template: str) -> Node:
        node = self._instantiate(container, name, template)
        self._record_change(node, "added")
        return node

    async def get_nodes(self, ids: Sequence[str]) -> List[Node]:
        return [self._nodes[i] for i in ids if i in self._nodes]

    async def find_nodes_by_template(
        self,
        template: str,
        start: int,
        count: int,
        include_derived: bool = True
    ) -> Tuple[List[Node], int]:
        if include_derived:
            names = {t for t in self._templates if self._derives_from(t, template)}
        else:
            names = {template}

        nodes = sorted(
            (n for n in self._nodes.values() if n.template in names),
            key=lambda n: n.name,
        )
        return nodes[start:start + count], len(nodes)

    def _derives_from(self, template: str, base: str) -> bool:
        seen = set()
        current = self._templates.get(template)
        while current is not None and current.name not in seen:
            if current.name == base:
                return True
            seen.add(current.name)
            current = self._templates.get(current.base) if current.base else None
        return False

    async def load_attributes(self, nodes: Sequence[Node], names: Sequence[str]) -> None:
        # Nodes are shared objects, only attributes added to templates later are missing.
        for node in nodes:
            templates = effective_attribute_templates(self._templates, node.template)
            for name in names:
                if name not in node.attributes and name in templates:
                    at = templates[name]
                    node.attributes[name] = Attribute(
                        node=node, name=name, template=at, value=None if at.is_series else at.default
                    )

    async def get_attribute_value(self, node: Node, name: str) -> Any:
        stored = self._nodes.get(node.id, node)
        attribute = stored.attributes.get(name)
        return attribute.value if attribute else None

    async def set_attribute_value(self, node: Node, name: str, value: Any) -> None:
        stored = self._nodes.get(node.id, node)
        attribute = stored.attributes.get(name)
        if attribute is None:
            attribute = Attribute(node=stored, name=name)
            stored.attributes[name] = attribute

        attribute.value = value
        self._record_change(stored, "updated")

    #-----------------------------------------------------
    # Relationships

    async def add_child(self, parent: Node, child: Node, kind: RelationKind = RelationKind.WEAK) -> None:
        if kind == RelationKind.OWNED:
            if child.id not in self._owned[parent.id]:
                self._owned[parent.id].append(child.id)
            return

        self._weak_children[parent.id].add(child.id)
        self._weak_parents[child.id].add(parent.id)

    async def remove_child(self, parent: Node, child: Node) -> None:
        self._weak_children[parent.id].discard(child.id)
        self._weak_parents[child.id].discard(parent.id)

    async def get_parents(self, child: Node, kind: RelationKind = RelationKind.WEAK) -> List[Node]:
        if kind == RelationKind.OWNED:
            return [c for c in self._containers.values() if child.id in self._owned.get(c.id, [])]
        return self._sorted(self._weak_parents.get(child.id, set()))

    async def get_children(self, parent: Node, kind: RelationKind = RelationKind.WEAK) -> List[Node]:
        if kind == RelationKind.OWNED:
            return self._sorted(self._owned.get(parent.id, []))
        return self._sorted(self._weak_children.get(parent.id, set()))

    async def set_point_bindings(self, attributes: Sequence[Attribute]) -> None:
        for attribute in attributes:
            stored = self._nodes.get(attribute.node.id)
            if stored is not None and stored is not attribute.node and attribute.name in stored.attributes:
                stored.attributes[attribute.name].config_string = attribute.config_string

    #-----------------------------------------------------
    # Change log

    async def find_changes(self, cursor: Any) -> Tuple[List[ChangeInfo], Any]:
        if cursor is None:
            return [], len(self._changes)

        return list(self._changes[cursor:]), len(self._changes)

    async def refresh(self, changes: Optional[Sequence[ChangeInfo]] = None) -> None:
        return None

    async def wait_for_change(self, timeout: float) -> bool:
        try:
            await asyncio.wait_for(self._change_event.wait(), timeout)
        except asyncio.TimeoutError:
            return False

        self._change_event.clear()
        return True

    #-----------------------------------------------------

    async def create_interval(self, record: IntervalRecord) -> None:
        self.intervals.append(record)

    async def commit(self) -> None:
        self.commit_count += 1

    async def close(self) -> None:
        self.closed = True
