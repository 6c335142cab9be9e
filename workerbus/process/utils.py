"""Shared helpers for the process management primitives."""

from __future__ import annotations

import inspect
import signal
from typing import Any, Callable, Optional, Tuple


async def run_handler(handler: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    """Execute ``handler`` and await the result when necessary."""

    result = handler(*args, **kwargs)
    if inspect.isawaitable(result):
        return await result  # type: ignore[return-value]
    return result


def split_exitcode(exitcode: Optional[int]) -> Tuple[Optional[int], Optional[str]]:
    """Turn a :attr:`multiprocessing.Process.exitcode` into ``(code, signal)``.

    A negative exit code means the process was killed by that signal.
    """

    if exitcode is None or exitcode >= 0:
        return exitcode, None
    try:
        name = signal.Signals(-exitcode).name
    except ValueError:
        name = f"SIG{-exitcode}"
    return None, name
