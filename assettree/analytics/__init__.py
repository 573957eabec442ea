from .engine import RollupEngine, RollupStats
from .observer import ObservationMonitor
from .outlier import OutlierDetector
from .reports import ReportWriter
from .transitions import ModeTransitionRecorder

from .rollup import (
    chunkify,
    fluctuation_index,
    rollup_window,
    sum_child_series
)
