from .config import (
    Config,

    global_config
)

from .encrypt import AbstractEncrypter, FernetEncrypter
from .hierarchy import AnalyticsConfig, HierarchyConfig
from .log import LogConfig
from .postgresql import PostgreSQLConfig
from .redis import RedisConfig
