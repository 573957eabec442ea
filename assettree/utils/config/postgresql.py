import logging, time
import sqlalchemy, sqlalchemy.event, sqlalchemy.ext.asyncio

#-----------------------------------------------------------------------------

def before_cursor_execute(conn, cursor, statement, parameters, context, executemany):
    conn.info.setdefault("query_start_time", []).append(time.time())


def after_cursor_execute(conn, cursor, statement, parameters, context, executemany):
    start_times = conn.info.get("query_start_time")
    if not start_times:
        return
    time_cost = round((time.time()-start_times.pop(-1))*1e3, 2)

    logging.debug(
        " ".join(statement.split())[:512],
        extra = {
            "time_cost" : time_cost,
            "records"   : cursor.rowcount
        }
    )

#-----------------------------------------------------------------------------

class PostgreSQLConfig:
    def __init__(
        self,
        user    : str,
        password: str,
        database: str,
        host    : str,
        port    : int = 0,
        schema  : str = "",
        minconn : int = 0,
        maxconn : int = 0,
        timeout : int = 0
    ):
        self.host       = host if host else "127.0.0.1"
        self.port       = port if port > 0 else 5432
        self.user       = user
        self.password   = password
        self.database   = database
        self.minconn    = minconn if minconn > 0 else 1
        self.maxconn    = maxconn if maxconn > 0 else (10 if self.minconn < 5 else self.minconn*2)
        self.timeout    = timeout if timeout > 0 else 10

        schemas = [s.strip() for s in schema.split(",") if s.strip()] if schema else []
        if "public" not in schemas:
            schemas.append("public")
        self.schema = ",".join(schemas)


    def print(self):
        print(f"pg              : {self.host}:{self.port}/{self.database} ({self.schema})")

    #-----------------------------------------------------

    def with_schema(self, schema: str) -> "PostgreSQLConfig":
        """Same server, but with `schema` first on the search path."""
        return PostgreSQLConfig(
            user    = self.user,
            password= self.password,
            database= self.database,
            host    = self.host,
            port    = self.port,
            schema  = f"{schema},{self.schema}" if schema else self.schema,
            minconn = self.minconn,
            maxconn = self.maxconn,
            timeout = self.timeout
        )

    #-----------------------------------------------------

    def get_async_engine(self) -> sqlalchemy.ext.asyncio.AsyncEngine:
        async_engine = sqlalchemy.ext.asyncio.create_async_engine(
            f"postgresql+psycopg://{self.user}:{self.password}@{self.host}:{self.port}/{self.database}",
            connect_args= {
                "options"       : f"-c search_path={self.schema}",
                "connect_timeout": self.timeout,
            },
            poolclass   = sqlalchemy.AsyncAdaptedQueuePool,
            pool_size   = self.maxconn
        )

        sqlalchemy.event.listen(async_engine.sync_engine, "before_cursor_execute", before_cursor_execute)
        sqlalchemy.event.listen(async_engine.sync_engine, "after_cursor_execute", after_cursor_execute)

        return async_engine

#-----------------------------------------------------------------------------
