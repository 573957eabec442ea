import io

import pytest

from assettree.utils.config import Config
from assettree.utils.db import dispose_engines, get_engine, global_engines

#-----------------------------------------------------------------------------

@pytest.fixture
def pg_config(monkeypatch):
    for key in ("PG_DBNAME", "PG_HOST", "PG_SCHEMA"):
        monkeypatch.delenv(key, raising=False)

    return Config(io.StringIO(
        "GRAPH_LOCATION: plant\nHIERARCHY_LEVELS: Leaf|Branch\nSTORE_BACKEND: pgsql\n"
        "PG_DBNAME: assets\nPG_HOST: db.local\n"
    ))

#-----------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_engines_are_cached_per_schema_and_disposed(pg_config):
    await dispose_engines()

    engine = get_engine(schema="plant")
    assert get_engine(schema="plant") is engine
    assert get_engine(schema="other") is not engine
    assert engine.url.database == "assets"
    assert engine.url.host == "db.local"
    assert len(global_engines) == 2

    await dispose_engines()
    assert global_engines == {}
