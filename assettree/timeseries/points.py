"""
Storage point naming

A series attribute template carries a config string such as

    \\\\%Server%\\%Element%.%Attribute%;pointtype=float32;compressing=0

The part after the archive is a point name pattern. `%Element%` becomes the
node name, `%Attribute%` the attribute name and `%@Sibling%` the value of
the sibling attribute `Sibling`. The `key=value` pairs after the first `;`
are point attributes used when the point is created.
"""

import re
from dataclasses import dataclass, field
from typing import Dict, Optional

from ..graph.models import Attribute, Node

DEFAULT_ARCHIVE = "%Server%"

_SUBSTITUTION = re.compile(r"%[^%]+%")


@dataclass
class PointInfo:
    archive: str
    name: str
    point_attributes: Dict[str, str] = field(default_factory=dict)

    @property
    def is_pattern(self) -> bool:
        return bool(_SUBSTITUTION.search(self.name))


def parse_config_string(config_string: str) -> Optional[PointInfo]:
    if not config_string or not config_string.strip():
        return None

    head, _, tail = config_string.partition(";")
    parts = [p for p in head.split("\\") if p]
    if not parts:
        return None

    if len(parts) == 1:
        archive, name = DEFAULT_ARCHIVE, parts[0]
    else:
        archive, name = parts[0].split("?")[0], parts[1]

    point_attributes = {}
    for item in tail.split(";"):
        key, sep, value = item.partition("=")
        if sep and key.strip():
            point_attributes[key.strip()] = value.strip()

    return PointInfo(archive=archive, name=name, point_attributes=point_attributes)


def format_config_string(archive: str, name: str) -> str:
    return f"\\\\{archive}\\{name}"


def substitute_point_name(pattern: str, node: Node, attribute_name: str) -> str:
    name = pattern
    for sub in set(_SUBSTITUTION.findall(pattern)):
        if sub == "%Element%":
            name = name.replace(sub, node.name)
        elif sub == "%Attribute%":
            name = name.replace(sub, attribute_name)
        elif sub.startswith("%@"):
            sibling = node.attributes.get(sub[2:-1])
            name = name.replace(sub, "" if sibling is None or sibling.value is None else str(sibling.value))
    return name


def point_for(attribute: Attribute, server: str) -> Optional[PointInfo]:
    """
    Concrete point of an attribute

    Template-bound attributes get their point from the template pattern.
    """
    if attribute.config_string:
        info = parse_config_string(attribute.config_string)
    elif attribute.template is not None and attribute.template.point_pattern:
        info = parse_config_string(attribute.template.point_pattern)
        if info is not None:
            info.name = substitute_point_name(info.name, attribute.node, attribute.name)
    else:
        info = None

    if info is not None and info.archive == DEFAULT_ARCHIVE:
        info.archive = server
    return info
