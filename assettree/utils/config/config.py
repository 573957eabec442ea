import base64, dotenv, io, json, logging, os, re

from ruamel.yaml import YAML
from typing import Any

from ...errors import ConfigurationError
from .encrypt import AbstractEncrypter, FernetEncrypter
from .hierarchy import AnalyticsConfig, HierarchyConfig
from .log import LogConfig
from .postgresql import PostgreSQLConfig
from .redis import RedisConfig

#-----------------------------------------------------------------------------

_global_config = None

STORE_BACKENDS = ("memory", "pgsql")

#-----------------------------------------------------------------------------

class Config:

    yaml = YAML()

    #-------------------------------------------------

    def __init__(
        self,
        yaml_filenames: str | io.StringIO | list[str | io.StringIO] | None = None,
        encrypter: AbstractEncrypter | None = None
    ):
        if isinstance(yaml_filenames, str | io.StringIO):
            self._yaml_filenames = [yaml_filenames]
        elif isinstance(yaml_filenames, list):
            self._yaml_filenames = yaml_filenames
        else:
            self._yaml_filenames = []

        #-------------------------------------------------

        self._raw = {}

        self._postgresqls = {}
        self._redises = {}

        #-------------------------------------------------

        self._encrypter = encrypter
        if not self._encrypter:
            self._encrypter = FernetEncrypter(self.get_fernet_key("CONFIG_ENCRYPTION_KEY"))

        #-------------------------------------------------

        for yaml_filename in self._yaml_filenames:
            self.load_yaml(yaml_filename)

        self.refresh()

        global _global_config
        _global_config = self

    #-----------------------------------------------------

    def refresh(self, data: dict | None = None):
        if data:
            self._raw.update({str(k).upper(): v for k, v in data.items()})

        # Cached objects must follow the updated raw values.
        self._postgresqls = {}
        self._redises = {}

        self.log = LogConfig(
            name        = self.get_str("LOG_NAME"),
            dir         = self.get_str("LOG_DIR"),
            level       = logging.getLevelNamesMapping().get(self.get_str("LOG_LEVEL").strip().upper(), logging.INFO),
            secret_key  = self.get_fernet_key("LOG_ENCRYPTION_KEY")
        )

        self.store_backend = self.get_str("STORE_BACKEND", "memory").strip().lower()

        levels = self.get_levels("HIERARCHY_LEVELS")

        self.hierarchy = HierarchyConfig(
            graph_location  = self.get_str("GRAPH_LOCATION"),
            levels          = levels,
            chunk_size      = self.get_int("HIERARCHY_CHUNK_SIZE"),
            refresh_interval= self.get_float("REFRESH_INTERVAL")
        )

        self.analytics = AnalyticsConfig(
            levels                  = self.get_levels("ROLLUP_LEVELS") or levels,
            target_mode             = self.get_str("TARGET_MODE"),
            rollup_window_hours     = self.get_int("ROLLUP_WINDOW_HOURS"),
            fluctuation_window_days = self.get_int("FLUCTUATION_WINDOW_DAYS"),
            chunk_size              = self.get_int("CHUNK_SIZE"),
            page_size               = self.get_int("PAGE_SIZE"),
            max_parallel            = self.get_int("MAX_PARALLEL"),
            page_max_wait           = self.get_float("PAGE_MAX_WAIT"),
            observer_backoff        = self.get_float("OBSERVER_BACKOFF"),
            observer_batch_size     = self.get_int("OBSERVER_BATCH_SIZE"),
            report_dir              = self.get_str("REPORT_DIR")
        )


    def load_yaml(self, file: str | io.StringIO):
        if not file:
            return

        stream = None

        if isinstance(file, str):
            try:
                with open(file, "r", encoding="utf-8") as f:
                    stream = io.StringIO(f.read())

            except OSError as e:
                logging.warning(f"Failed to load YAML file '{file}': {str(e)}")
                return

        elif isinstance(file, io.StringIO):
            stream = file

        if stream is None:
            return

        #-------------------------------------------------

        Config.yaml = YAML()

        modified = False

        data = Config.yaml.load(stream)
        if not isinstance(data, dict):
            return

        for key, value in data.items():
            if not isinstance(key, str):
                continue

            upper_key = key.upper()

            if self._encrypter and isinstance(value, str) and len(value) > 0:
                if self._encrypter.is_encrypted(value):
                    self._raw[upper_key] = self._encrypter.decrypt(value)
                    continue

                if re.search(r"_KEY|_PASSWORD|_PASS|_PWD|_SECRET|_TOKEN", upper_key) and \
                    getattr(self._encrypter, "enabled", False):

                    # Secrets are written back encrypted, the plain value stays in memory.
                    data[key] = self._encrypter.encrypt(value)
                    modified = modified or (data[key] != value)

            self._raw[upper_key] = value

        #-------------------------------------------------

        if isinstance(file, str) and modified:
            try:
                with open(file, "w+t", encoding="utf-8") as f:
                    Config.yaml.dump(data, f)

            except OSError as e:
                logging.warning(f"Failed to update YAML file '{file}': {str(e)}")

    #-----------------------------------------------------

    def get(self, key: str, default: Any = None) -> Any:
        stripped_key = key.strip()
        if not stripped_key:
            return default

        # Environment variables win over YAML values.
        s = os.environ.get(stripped_key)
        if s is not None:
            return s

        upper_key = stripped_key.upper()
        s = os.environ.get(upper_key)
        if s is not None:
            return s

        return self._raw.get(upper_key, default)


    def get_str(self, key: str, default: str = "") -> str:
        s = self.get(key, default)
        if s is None:
            return default
        return s if isinstance(s, str) else str(s)


    def get_int(self, key: str, default: int = 0) -> int:
        obj = self.get(key)

        if isinstance(obj, bool):
            return default
        if isinstance(obj, int):
            return obj

        try:
            return int(obj)
        except (TypeError, ValueError):
            return default


    def get_float(self, key: str, default: float = 0.0) -> float:
        obj = self.get(key)

        if isinstance(obj, bool):
            return default
        if isinstance(obj, int | float):
            return float(obj)

        try:
            return float(obj)
        except (TypeError, ValueError):
            return default


    def get_bool(self, key: str, default: bool = False) -> bool:
        obj = self.get(key)

        if isinstance(obj, bool):
            return obj

        if isinstance(obj, str):
            return obj.strip().upper() in ("TRUE", "YES", "1")

        if isinstance(obj, int):
            return obj != 0

        return default


    def get_dict(self, key: str, default: dict | None = None) -> dict | None:
        obj = self.get(key)

        if isinstance(obj, dict):
            return obj

        if isinstance(obj, str | bytes | bytearray):
            try:
                d = json.loads(obj)
                if isinstance(d, dict):
                    return d
            except ValueError:
                return default

        return default


    def get_list(self, key: str, default: list | None = None) -> list | None:
        obj = self.get(key)

        if isinstance(obj, list):
            return obj

        if isinstance(obj, str | bytes | bytearray):
            try:
                l = json.loads(obj)
                if isinstance(l, list):
                    return l
            except ValueError:
                return default

        return default


    def get_levels(self, key: str) -> list[str]:
        """Hierarchy levels, leaf first, as a YAML list or `Leaf|Branch|SubTree`."""
        obj = self.get(key)

        if isinstance(obj, list):
            items = obj
        elif isinstance(obj, str):
            items = self.get_list(key) or obj.split("|")
        else:
            return []

        return [str(s).strip() for s in items if s is not None and str(s).strip()]


    def get_fernet_key(self, key: str) -> str:
        s = self.get_str(key).strip()
        if not s:
            return ""

        return base64.urlsafe_b64encode(s[:32].encode().ljust(32, b"0")).decode()

    #-----------------------------------------------------

    def get_postgresql(self, key: str = "") -> PostgreSQLConfig:
        upper_key = key.strip().upper()
        if upper_key in self._postgresqls:
            return self._postgresqls[upper_key]

        #-------------------------------------------------

        suffix = f"_{upper_key}" if upper_key else ""

        pg_config = PostgreSQLConfig(
            host        = self.get_str(f"PG_HOST{suffix}"),
            port        = self.get_int(f"PG_PORT{suffix}"),
            user        = self.get_str(f"PG_USER{suffix}"),
            password    = self.get_str(f"PG_PASSWORD{suffix}"),
            database    = self.get_str(f"PG_DBNAME{suffix}"),
            schema      = self.get_str(f"PG_SCHEMA{suffix}"),
            minconn     = self.get_int(f"PG_MIN_CONNECTION{suffix}"),
            maxconn     = self.get_int(f"PG_MAX_CONNECTION{suffix}"),
            timeout     = self.get_int(f"PG_TIMEOUT{suffix}")
        )

        self._postgresqls[upper_key] = pg_config
        return pg_config


    def get_redis(self, key: str = "") -> RedisConfig:
        upper_key = key.strip().upper()
        if upper_key in self._redises:
            return self._redises[upper_key]

        #-------------------------------------------------

        suffix = f"_{upper_key}" if upper_key else ""

        redis_config = RedisConfig(
            host        = self.get_str(f"REDIS_HOST{suffix}"),
            port        = self.get_int(f"REDIS_PORT{suffix}"),
            password    = self.get_str(f"REDIS_PASSWORD{suffix}"),
            database    = self.get_int(f"REDIS_DB{suffix}"),
            maxconn     = self.get_int(f"REDIS_MAX_CONNECTION{suffix}"),
            timeout     = self.get_int(f"REDIS_TIMEOUT{suffix}"),
            ssl         = self.get_bool(f"REDIS_SSL{suffix}"),
            stream      = self.get_str(f"REDIS_STREAM{suffix}"),
            stream_maxlen = self.get_int(f"REDIS_STREAM_MAXLEN{suffix}")
        )

        self._redises[upper_key] = redis_config
        return redis_config

    #-----------------------------------------------------

    def validate_runtime(self):
        """Reject settings the services cannot start with."""
        if self.store_backend not in STORE_BACKENDS:
            raise ConfigurationError(
                f"STORE_BACKEND, {self.store_backend}, is not one of {', '.join(STORE_BACKENDS)}."
            )

        if not self.hierarchy.graph_location:
            raise ConfigurationError("GRAPH_LOCATION is missing.")

        if not self.hierarchy.levels:
            raise ConfigurationError("HIERARCHY_LEVELS is missing.")

        if len(self.hierarchy.levels) <= 1:
            raise ConfigurationError(
                f"HIERARCHY_LEVELS, {'|'.join(self.hierarchy.levels)}, is not a valid hierarchy path."
            )

        if len(self.analytics.levels) <= 1:
            raise ConfigurationError(
                f"ROLLUP_LEVELS, {'|'.join(self.analytics.levels)}, is not valid."
            )

        if len(set(level.lower() for level in self.hierarchy.levels)) != len(self.hierarchy.levels):
            raise ConfigurationError("HIERARCHY_LEVELS contains duplicate level names.")

        if self.store_backend == "pgsql" and not self.get_postgresql().database:
            raise ConfigurationError("PG_DBNAME is required by the pgsql store backend.")

    #-----------------------------------------------------

    def print(self):
        print(f"Configuration loaded from {[str(f) for f in self._yaml_filenames]}:")
        print("----------------------------------------------------------")
        print(f"env             : {os.environ.get('ENV', '').strip().lower()}")
        print(f"backend         : {self.store_backend}")

        self.log.print()
        self.hierarchy.print()
        self.analytics.print()

        if self.store_backend == "pgsql":
            self.get_postgresql().print()
            self.get_redis().print()

        print("----------------------------------------------------------")

    #-------------------------------------------------------------------------

    @staticmethod
    def to_masked_str(s: str) -> str:
        n = len(s)
        if n <= 0:
            return ""
        if n < 6:
            return "************"

        return f"{s[:3]}******{s[n-3:]}"

    #-------------------------------------------------------------------------

    @staticmethod
    def load_dotenv(filenames: str | list[str] | None = None):
        if isinstance(filenames, str):
            l = [filenames]
        elif isinstance(filenames, list):
            l = filenames
        else:
            return

        for filename in l:
            filename = filename.strip()
            if not filename or not os.path.exists(filename):
                continue

            for key, value in dotenv.dotenv_values(filename).items():
                value = value.strip() if value else ""
                key = key.strip() if key else ""
                if not key or not value:
                    continue

                os.environ.setdefault(key.upper(), value)

    #-------------------------------------------------------------------------

    @staticmethod
    def expand_yaml_filenames(yaml_filenames: str | list[str] | None, env: str = "") -> list[str]:
        """Add `.key.yaml` companions and `.{env}` overlays after each file."""
        if isinstance(yaml_filenames, str):
            names = [yaml_filenames]
        elif isinstance(yaml_filenames, list):
            names = yaml_filenames
        else:
            names = []

        expanded = []

        def _add(name: str):
            if name not in expanded:
                expanded.append(name)

        for name in names:
            if not isinstance(name, str) or not name.strip():
                continue
            name = name.strip()
            _add(name)

            if not re.match(r".*\.yaml$", name, re.IGNORECASE) or \
                re.match(r".*\.key\.yaml$", name, re.IGNORECASE):
                continue

            stem = name[:-5]
            _add(f"{stem}.key.yaml")
            if env:
                _add(f"{stem}.{env}.yaml")
                _add(f"{stem}.{env}.key.yaml")

        if not expanded and env:
            expanded = [f"config.{env}.yaml", f"config.{env}.key.yaml"]

        return expanded

    #-------------------------------------------------------------------------

    @staticmethod
    def init(
        yaml_filenames  : str | list[str] | None = None,
        dotenv_filenames: str | list[str] | None = None,
        log_extra       : dict | None = None
    ) -> "Config":
        from ..log import init_log, init_log_console
        log_extra = dict(log_extra or {})
        init_log_console(extra=log_extra)

        Config.load_dotenv(dotenv_filenames if dotenv_filenames is not None else [".env"])

        env = os.environ.get("ENV", "").strip().lower()
        if env:
            log_extra["env"] = env

        #-----------------------------------------------------

        final_yaml_file_list = []

        default_yaml = "config.yaml"
        if os.path.exists(default_yaml) and default_yaml not in (yaml_filenames or []):
            final_yaml_file_list.append(default_yaml)
            logging.info("Default config has been loaded.")

        for yaml_filename in Config.expand_yaml_filenames(yaml_filenames, env):
            if os.path.exists(yaml_filename):
                final_yaml_file_list.append(yaml_filename)

        config = Config(yaml_filenames=final_yaml_file_list)

        init_log(
            name        = config.log.name,
            dir         = config.log.dir,
            level       = config.log.level,
            extra       = log_extra,
            secret_key  = config.log.secret_key
        )

        return config

#-----------------------------------------------------------------------------

def global_config() -> Config | None:
    return _global_config

#-----------------------------------------------------------------------------
