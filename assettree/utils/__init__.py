from .config import (
    Config,

    global_config
)

from .log import (
    init_log_console,
    init_log_file,

    init_log
)

from .db import (
    dispose_engines,
    execute_on,
    execute_query,
    get_engine
)

from .run_ctx import (
    get_run_ctx,
    run_ctx
)
