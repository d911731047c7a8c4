from __future__ import annotations

import asyncio
import sys
import traceback
from concurrent.futures import Future
from typing import Any, Callable, Union


def print_threadpool_errors(future: Union[Future[Any], asyncio.Future[Any]]) -> None:
    """Print errors from a Future in a ThreadPool, should be used with
    `add_done_callback`. Also accepts asyncio tasks and futures."""
    if future.cancelled():
        return

    exc = future.exception()
    if exc is not None:
        print("(wsrelay) Task failed with exception:", file=sys.stderr)
        traceback.print_exception(type(exc), exc, exc.__traceback__)


def call_and_print_errors(fn: Callable[..., Any], *args: Any) -> None:
    """Run a user callback inline. Exceptions are printed instead of raised, so
    one misbehaving observer can't break the caller."""
    try:
        fn(*args)
    except Exception as e:
        print(f"(wsrelay) Callback {fn!r} raised:", file=sys.stderr)
        traceback.print_exception(type(e), e, e.__traceback__)
