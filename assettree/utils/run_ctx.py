from contextlib import contextmanager
from contextvars import ContextVar

RUN_CTX = ContextVar("run_ctx", default=None)


def get_run_ctx(key, default=None):
    ctx = RUN_CTX.get()
    return ctx[key] if ctx and key in ctx else default


@contextmanager
def run_ctx(**data):
    """Scope log fields (phase, node, run_id) to the enclosed block.

    Nested scopes inherit the outer fields and may override them.
    """
    parent = RUN_CTX.get() or {}
    token = RUN_CTX.set({**parent, **data})
    try:
        yield
    finally:
        RUN_CTX.reset(token)
