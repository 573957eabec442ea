import logging, time, re

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from .config import global_config

#-----------------------------------------------------------------------------

global_engines: dict[str, AsyncEngine] = {}


def get_engine(db_config: str = "", schema: str = "") -> AsyncEngine:
    """One engine per database config and leading schema, disposed by dispose_engines()."""
    if not isinstance(db_config, str):
        db_config = ""

    key = f"{db_config}/{schema}" if schema else db_config
    if key in global_engines:
        return global_engines[key]

    config = global_config()
    if not config:
        raise ValueError("no configuration found")

    pg_config = config.get_postgresql(db_config)
    if schema:
        pg_config = pg_config.with_schema(schema)

    engine = pg_config.get_async_engine()
    global_engines[key] = engine

    return engine


async def dispose_engines():
    for key in list(global_engines.keys()):
        engine = global_engines.pop(key)
        await engine.dispose()

#-----------------------------------------------------------------------------

def _rows_to_dicts(cur) -> list[dict]:
    return [dict(row._mapping) for row in cur.fetchall()]


async def execute_on(
    conn        : AsyncConnection,
    query       : str,
    params      : dict | list[dict] | None = None
):
    """Run one statement on an open connection, without committing."""
    if not query:
        raise ValueError("SQL script cannot be empty")

    lower_query = query.strip().lower()

    start_time = time.time()
    try:
        cur = await conn.execute(text(query), params)

        if "returning" in lower_query or \
            not re.match("^(update|delete|insert|create|drop|alter|truncate).*", lower_query):
            ret = _rows_to_dicts(cur)
        elif isinstance(params, list):
            ret = {"record_count": len(params)}
        else:
            ret = {"record_count": cur.rowcount}

    except Exception as e:
        logging.error(str(e), extra={
            "sql"       : " ".join(query.split()),
            "time_cost" : round((time.time()-start_time)*1e3, 2)
        }, stacklevel=2)
        raise

    logging.debug(" ".join(query.split())[:512], extra={
        "records"   : len(ret) if isinstance(ret, list) else ret["record_count"],
        "time_cost" : round((time.time()-start_time)*1e3, 2)
    }, stacklevel=2)

    return ret


async def execute_query(
    query       : str,
    params      : dict | list[dict] | None = None,
    db_config   : str = "",
    engine      : AsyncEngine | None = None
):
    """Run one statement on its own connection and commit it.

    SELECT and RETURNING statements give a list of dicts, the other
    statements give {"record_count": n}.
    """
    if engine is None:
        engine = get_engine(db_config)

    async with engine.connect() as conn:
        try:
            ret = await execute_on(conn, query, params)
            await conn.commit()
            return ret

        except Exception:
            await conn.rollback()
            raise

#-----------------------------------------------------------------------------
