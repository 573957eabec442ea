import logging
import redis.asyncio

#-----------------------------------------------------------------------------

class RedisConfig:
    def __init__(
        self,
        host    : str = "",
        port    : int = 0,
        password: str = "",
        database: int = 0,
        maxconn : int = 0,
        timeout : int = 0,
        ssl     : bool = False,
        stream  : str = "",
        stream_maxlen: int = 0
    ):
        self.host       = host if host else "127.0.0.1"
        self.port       = port if port > 0 else 6379
        self.password   = password
        self.database   = database
        self.maxconn    = maxconn if maxconn > 0 else 10
        self.timeout    = timeout if timeout > 0 else 300
        self.ssl        = ssl

        # Stream carrying live value-change events of the time-series store.
        self.stream     = stream if stream else "assettree:value_changes"
        # Approximate cap on the stream length, older entries are trimmed on XADD.
        self.stream_maxlen = stream_maxlen if stream_maxlen > 0 else 100000


    def print(self):
        print(f"redis           : {self.host}:{self.port}/{self.database} ({self.stream}, maxlen {self.stream_maxlen})")

    #-----------------------------------------------------

    async def get_async_client(self) -> redis.asyncio.Redis | None:
        client = redis.asyncio.Redis(
            host                = self.host,
            port                = self.port,
            db                  = self.database,
            password            = self.password if self.password else None,
            ssl                 = self.ssl,
            decode_responses    = True,
            socket_timeout      = self.timeout,
            max_connections     = self.maxconn,
        )

        # Check it beforehand.
        try:
            if not await client.ping():
                await client.aclose()

                logging.error(f"Failed to ping Redis server '{self.host}:{self.port}'.")
                return None

        except redis.RedisError as e:
            logging.error(str(e), extra={"host": self.host, "port": self.port})
            await client.aclose()
            return None

        return client

#-----------------------------------------------------------------------------
