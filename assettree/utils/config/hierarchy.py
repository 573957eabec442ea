#-----------------------------------------------------------------------------

class HierarchyConfig:
    def __init__(
        self,
        graph_location  : str = "",
        levels          : list[str] | None = None,
        chunk_size      : int = 0,
        refresh_interval: float = 0
    ):
        self.graph_location     = graph_location.strip() if graph_location else ""
        self.levels             = [s.strip() for s in (levels or []) if s and s.strip()]
        self.chunk_size         = chunk_size if chunk_size > 0 else 10000
        self.refresh_interval   = refresh_interval if refresh_interval > 0 else 10.0


    @property
    def leaf_template(self) -> str:
        return self.levels[0] if self.levels else ""


    def print(self):
        print(f"graph           : {self.graph_location}")
        print(f"levels          : {'|'.join(self.levels)}")
        print(f"refresh         : {self.refresh_interval}s, chunk {self.chunk_size}")

#-----------------------------------------------------------------------------

class AnalyticsConfig:
    def __init__(
        self,
        levels                  : list[str] | None = None,
        target_mode             : str = "",
        rollup_window_hours     : int = 0,
        fluctuation_window_days : int = 0,
        chunk_size              : int = 0,
        page_size               : int = 0,
        max_parallel            : int = 0,
        page_max_wait           : float = 0,
        observer_backoff        : float = 0,
        observer_batch_size     : int = 0,
        report_dir              : str = ""
    ):
        self.levels                 = [s.strip() for s in (levels or []) if s and s.strip()]
        self.target_mode            = target_mode.strip() if target_mode else "Prog-Auto"
        self.rollup_window_hours    = rollup_window_hours if rollup_window_hours > 0 else 336
        self.fluctuation_window_days= fluctuation_window_days if fluctuation_window_days > 0 else 7
        self.chunk_size             = chunk_size if chunk_size > 0 else 10000
        self.page_size              = page_size if page_size > 0 else 1000
        self.max_parallel           = max_parallel if max_parallel > 0 else 4
        self.page_max_wait          = page_max_wait if page_max_wait > 0 else 3600.0
        self.observer_backoff       = observer_backoff if observer_backoff > 0 else 5.0
        self.observer_batch_size    = observer_batch_size if observer_batch_size > 0 else 1000
        self.report_dir             = report_dir.strip() if report_dir else "."


    def print(self):
        print(f"rollup          : {'|'.join(self.levels)} over {self.rollup_window_hours}h")
        print(f"fluctuation     : {self.fluctuation_window_days}d")
        print(f"target mode     : {self.target_mode}")
        print(f"bulk            : chunk {self.chunk_size}, page {self.page_size}, parallel {self.max_parallel}")
        print(f"reports         : {self.report_dir}")

#-----------------------------------------------------------------------------
