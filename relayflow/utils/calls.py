from __future__ import annotations

import inspect
from typing import Any, Callable


async def call_maybe_async(fn: Callable[..., Any], *args: Any) -> Any:
    """Call ``fn`` and await the result if it is awaitable."""
    result = fn(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


def describe_error(exc: BaseException) -> str:
    """Human readable message for an exception."""
    return str(exc) or type(exc).__name__
