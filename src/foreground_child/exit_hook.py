from __future__ import annotations

import atexit
from typing import Callable

__all__ = ["on_exit"]


def on_exit(callback: Callable[[], None]) -> Callable[[], None]:
    """Run ``callback`` when the interpreter is about to exit.

    This covers regular interpreter shutdown, including `SystemExit` and uncaught exceptions. It
    does not cover `os._exit` or being killed by a signal.

    :return: A callable that unregisters the hook. Calling it more than once is harmless.
    """
    registered = True

    def hook() -> None:
        nonlocal registered
        if registered:
            registered = False
            callback()

    def remove() -> None:
        nonlocal registered
        if registered:
            registered = False
            atexit.unregister(hook)

    atexit.register(hook)
    return remove
