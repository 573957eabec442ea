import io

import pytest

from assettree.errors import ConfigurationError
from assettree.utils.config import Config

KEYS = [
    "ENV", "STORE_BACKEND", "GRAPH_LOCATION", "HIERARCHY_LEVELS", "ROLLUP_LEVELS", "TARGET_MODE",
    "CHUNK_SIZE", "PAGE_SIZE", "MAX_PARALLEL", "ROLLUP_WINDOW_HOURS", "FLUCTUATION_WINDOW_DAYS",
    "REFRESH_INTERVAL", "PG_DBNAME", "PG_PASSWORD", "CONFIG_ENCRYPTION_KEY",
]

#-----------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in KEYS:
        monkeypatch.delenv(key, raising=False)


def load(text: str) -> Config:
    return Config(io.StringIO(text))

#-----------------------------------------------------------------------------

def test_defaults():
    config = load("GRAPH_LOCATION: graph.yaml\nHIERARCHY_LEVELS: Leaf|Branch|SubTree\n")

    assert config.store_backend == "memory"
    assert config.hierarchy.levels == ["Leaf", "Branch", "SubTree"]
    assert config.hierarchy.leaf_template == "Leaf"
    assert config.hierarchy.refresh_interval == 10.0
    assert config.hierarchy.chunk_size == 10000

    analytics = config.analytics
    assert analytics.levels == ["Leaf", "Branch", "SubTree"]
    assert analytics.target_mode == "Prog-Auto"
    assert analytics.rollup_window_hours == 336
    assert analytics.fluctuation_window_days == 7
    assert analytics.chunk_size == 10000
    assert analytics.page_size == 1000
    assert analytics.max_parallel == 4

    config.validate_runtime()


def test_levels_as_yaml_list_and_rollup_override():
    config = load(
        "GRAPH_LOCATION: g\n"
        "HIERARCHY_LEVELS:\n  - Leaf\n  - Branch\n  - SubTree\n"
        "ROLLUP_LEVELS: Leaf|Branch\n"
    )

    assert config.hierarchy.levels == ["Leaf", "Branch", "SubTree"]
    assert config.analytics.levels == ["Leaf", "Branch"]


def test_environment_overrides_yaml(monkeypatch):
    monkeypatch.setenv("CHUNK_SIZE", "50")
    monkeypatch.setenv("TARGET_MODE", "Manual")

    config = load("GRAPH_LOCATION: g\nHIERARCHY_LEVELS: Leaf|Branch\nCHUNK_SIZE: 20\n")

    assert config.analytics.chunk_size == 50
    assert config.analytics.target_mode == "Manual"


@pytest.mark.parametrize("text", [
    "HIERARCHY_LEVELS: Leaf|Branch\n",
    "GRAPH_LOCATION: g\n",
    "GRAPH_LOCATION: g\nHIERARCHY_LEVELS: Leaf\n",
    "GRAPH_LOCATION: g\nHIERARCHY_LEVELS: Leaf|Branch|leaf\n",
    "GRAPH_LOCATION: g\nHIERARCHY_LEVELS: Leaf|Branch\nROLLUP_LEVELS: Leaf\n",
    "GRAPH_LOCATION: g\nHIERARCHY_LEVELS: Leaf|Branch\nSTORE_BACKEND: oracle\n",
    "GRAPH_LOCATION: g\nHIERARCHY_LEVELS: Leaf|Branch\nSTORE_BACKEND: pgsql\n",
])
def test_invalid_settings(text):
    with pytest.raises(ConfigurationError):
        load(text).validate_runtime()


def test_typed_getters():
    config = load(
        "GRAPH_LOCATION: g\nHIERARCHY_LEVELS: Leaf|Branch\n"
        "TEST_LABELS:\n  site: north\n"
        "TEST_LABELS_JSON: '{\"site\": \"south\"}'\n"
        "TEST_FLAG: 'yes'\n"
        "TEST_RATIO: '0.5'\n"
        "TEST_COUNT: many\n"
    )

    assert config.get_dict("TEST_LABELS") == {"site": "north"}
    assert config.get_dict("test_labels_json") == {"site": "south"}
    assert config.get_dict("TEST_FLAG", {}) == {}
    assert config.get_bool("TEST_FLAG") is True
    assert config.get_float("TEST_RATIO") == 0.5
    assert config.get_int("TEST_COUNT", 3) == 3
    assert config.get_str("MISSING_KEY", "none") == "none"


def test_pgsql_settings():
    config = load(
        "GRAPH_LOCATION: plant\nHIERARCHY_LEVELS: Leaf|Branch\nSTORE_BACKEND: pgsql\n"
        "PG_DBNAME: assets\nPG_SCHEMA: shared\nREDIS_STREAM: values\n"
    )
    config.validate_runtime()

    pg = config.get_postgresql()
    assert pg.database == "assets"
    assert pg.port == 5432
    assert pg.schema == "shared,public"
    assert pg.with_schema("plant").schema == "plant,shared,public"

    assert config.get_redis().stream == "values"
    assert config.get_redis() is config.get_redis()


def test_secrets_are_encrypted_at_rest(tmp_path, monkeypatch):
    monkeypatch.setenv("CONFIG_ENCRYPTION_KEY", "a-test-key")

    path = tmp_path / "config.yaml"
    path.write_text("PG_PASSWORD: secret\nPG_USER: assettree\n", encoding="utf-8")

    config = Config(str(path))
    assert config.get_str("PG_PASSWORD") == "secret"

    text = path.read_text(encoding="utf-8")
    assert "secret" not in text
    assert "PG_USER: assettree" in text

    assert Config(str(path)).get_str("PG_PASSWORD") == "secret"


def test_expand_yaml_filenames():
    assert Config.expand_yaml_filenames("config.yaml", "dev") == [
        "config.yaml", "config.key.yaml", "config.dev.yaml", "config.dev.key.yaml"
    ]
    assert Config.expand_yaml_filenames(["a.yaml", "a.key.yaml"]) == ["a.yaml", "a.key.yaml"]
    assert Config.expand_yaml_filenames(None, "prod") == ["config.prod.yaml", "config.prod.key.yaml"]


def test_masked_str():
    assert Config.to_masked_str("") == ""
    assert Config.to_masked_str("abc") == "************"
    assert Config.to_masked_str("abcdefgh") == "abc******fgh"


def test_redis_stream_maxlen():
    config = load("GRAPH_LOCATION: g\nHIERARCHY_LEVELS: Leaf|Branch\n")
    assert config.get_redis().stream_maxlen == 100000

    config = load("GRAPH_LOCATION: g\nHIERARCHY_LEVELS: Leaf|Branch\nREDIS_STREAM_MAXLEN: 2000\n")
    assert config.get_redis().stream_maxlen == 2000
