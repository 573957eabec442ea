"""
Data models of the asset graph

Nodes are organised under named container nodes, are instances of keyed
node templates and are linked to their hierarchy parents by weak (derived)
relationships.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


LEAF_VALUE_ATTRIBUTE = "Value"
LEAF_MODE_ATTRIBUTE = "Mode"
ROLLUP_SUM_ATTRIBUTE = "Rollup_Sum"
THRESHOLD_ATTRIBUTE = "Threshold"

CONTAINER_NAME_FORMAT = "{}Elements"
HIERARCHY_ROOT = "HierarchyRoot"

CONTAINER_TEMPLATE = ""


def container_name(template: str, is_top: bool = False) -> str:
    """Name of the container holding the nodes of one hierarchy level"""
    return HIERARCHY_ROOT if is_top else CONTAINER_NAME_FORMAT.format(template)


def non_leaf_name(template: str, key: Any) -> str:
    """Name of the non-leaf node identified by a leaf key attribute value

    Integer keys are zero padded to eight digits, e.g. Branch00000012.
    Integral floats such as 12.0 or "12.0" name the same node as 12.
    """
    s = str(key).strip()
    try:
        return f"{template}{int(s):08d}"
    except ValueError:
        pass

    try:
        number = float(s)
    except ValueError:
        return f"{template}{s}"

    if number.is_integer():
        return f"{template}{int(number):08d}"
    return f"{template}{s}"


class RelationKind(Enum):
    """Kind of a parent to child link"""
    WEAK = "weak"  # Derived relationship, does not own the child
    OWNED = "owned"


class AttributeKind(Enum):
    SCALAR = "scalar"
    SERIES = "series"


@dataclass
class AttributeTemplate:
    """Attribute definition of a node template

    Series attributes carry a point pattern such as
    `\\\\%Server%\\%Element%.%Attribute%;pointtype=float32`.
    """
    name: str
    kind: AttributeKind = AttributeKind.SCALAR
    default: Any = None
    point_pattern: str = ""

    @property
    def is_series(self) -> bool:
        return self.kind == AttributeKind.SERIES


@dataclass
class NodeTemplate:
    name: str
    base: Optional[str] = None
    attributes: Dict[str, AttributeTemplate] = field(default_factory=dict)


@dataclass(eq=False)
class Attribute:
    """An attribute of one node

    A series attribute with an empty config string is still bound to its
    template's point pattern and has no storage point yet.
    """
    node: "Node"
    name: str
    template: Optional[AttributeTemplate] = None
    value: Any = None
    config_string: str = ""
    point: Optional[str] = None  # Resolved storage point

    @property
    def is_series(self) -> bool:
        return self.template is not None and self.template.is_series

    @property
    def is_template_bound(self) -> bool:
        return self.is_series and not self.config_string

    @property
    def path(self) -> str:
        return f"{self.node.path}|{self.name}"

    def __repr__(self) -> str:
        return f"Attribute({self.path})"


@dataclass(eq=False)
class Node:
    name: str
    template: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    container: Optional[str] = None
    attributes: Dict[str, Attribute] = field(default_factory=dict)

    def __eq__(self, other) -> bool:
        return isinstance(other, Node) and other.id == self.id

    def __hash__(self) -> int:
        return hash(self.id)

    def __repr__(self) -> str:
        return f"Node({self.path})"

    @property
    def path(self) -> str:
        return f"\\{self.container}\\{self.name}" if self.container else f"\\{self.name}"

    @property
    def is_container(self) -> bool:
        return self.template == CONTAINER_TEMPLATE

    def attribute(self, name: str) -> Optional[Attribute]:
        return self.attributes.get(name)

    def has_template_bound_attributes(self) -> bool:
        return any(a.is_template_bound for a in self.attributes.values())


@dataclass
class ChangeInfo:
    """One entry of the graph change log"""
    sequence: int
    node_id: str
    node_name: str
    template: str
    action: str = "updated"  # added | updated | deleted
    changed_at: Optional[datetime] = None


@dataclass
class IntervalRecord:
    """Time interval referencing a node, e.g. a mode transition"""
    name: str
    node: Node
    start: datetime
    end: datetime
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "node": self.node.name,
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
        }


def effective_attribute_templates(
    templates: Dict[str, NodeTemplate],
    template_name: str
) -> Dict[str, AttributeTemplate]:
    """Attribute templates of a template, overrides resolved along the base chain"""
    chain: List[NodeTemplate] = []
    seen = set()
    current = templates.get(template_name)
    while current is not None and current.name not in seen:
        chain.append(current)
        seen.add(current.name)
        current = templates.get(current.base) if current.base else None

    result: Dict[str, AttributeTemplate] = {}
    for template in reversed(chain):
        result.update(template.attributes)
    return result


def base_template_name(templates: Dict[str, NodeTemplate], template_name: str) -> str:
    current = templates.get(template_name)
    if current is None:
        return ""

    seen = {current.name}
    while current.base and current.base in templates and current.base not in seen:
        current = templates[current.base]
        seen.add(current.name)
    return current.name
