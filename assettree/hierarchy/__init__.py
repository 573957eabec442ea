from .container import ElementContainerIndex

from .synchronizer import (
    BuildStats,
    HierarchySynchronizer,
    ReconcileStats,
    SyncState
)
