from .base import AssetGraphStore

from .models import (
    HIERARCHY_ROOT,
    LEAF_MODE_ATTRIBUTE,
    LEAF_VALUE_ATTRIBUTE,
    ROLLUP_SUM_ATTRIBUTE,
    THRESHOLD_ATTRIBUTE,

    Attribute,
    AttributeKind,
    AttributeTemplate,
    ChangeInfo,
    IntervalRecord,
    Node,
    NodeTemplate,
    RelationKind,

    container_name,
    non_leaf_name
)

from .memory import MemoryAssetGraph
from .pgsql import PgAssetGraph
