from __future__ import annotations

from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from contextvars import ContextVar
from types import MappingProxyType

CONTEXT_FIELDS = ("run_id", "cycle_id", "caller", "resource_key", "symbol")

_CONTEXT: ContextVar[Mapping[str, str]] = ContextVar(
    "stagelock_logging_context", default=MappingProxyType({})
)


def get_logging_context() -> dict[str, str]:
    return dict(_CONTEXT.get())


@contextmanager
def with_logging_context(**fields: str | None) -> Iterator[None]:
    """Bind correlation fields for the enclosed block, layered over the outer ones.

    Unknown names and None values are ignored. The binding follows the
    current context, so tasks and ``asyncio.to_thread`` calls inherit it.
    """
    merged = dict(_CONTEXT.get())
    merged.update(
        {key: value for key, value in fields.items() if key in CONTEXT_FIELDS and value is not None}
    )
    token = _CONTEXT.set(MappingProxyType(merged))
    try:
        yield
    finally:
        _CONTEXT.reset(token)
