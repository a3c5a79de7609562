from __future__ import annotations

import asyncio
import os
import signal
import subprocess
import sys
import typing
from typing import Callable

from . import watchdog_helper
from .logging import log_debug, log_warning
from .process import ExitEvent

if typing.TYPE_CHECKING:
    from .process import ChildProcess

__all__ = ["DEFAULT_INTERVAL", "Watchdog", "watchdog"]

DEFAULT_INTERVAL = 0.1
"""Default seconds between two liveness checks of the parent."""


def _watchdog_command(child_pid: int, interval: float) -> list[str]:
    # The helper only uses the standard library
    return [
        sys.executable,
        "-S",
        watchdog_helper.__file__,
        str(os.getpid()),
        str(child_pid),
        str(interval),
    ]


class Watchdog:
    """Handle of the helper process that terminates the child if this process dies first.

    The helper is a best-effort safety net. If it could not be started, `pid` is `None` and all
    methods are no-ops.
    """

    __proc: asyncio.subprocess.Process | None
    __remove_exit_handler: Callable[[], None] | None

    def __init__(self, proc: asyncio.subprocess.Process | None = None):
        self.__proc = proc
        self.__remove_exit_handler = None

    @property
    def pid(self) -> int | None:
        return None if self.__proc is None else self.__proc.pid

    @property
    def running(self) -> bool:
        return self.__proc is not None and self.__proc.returncode is None

    def attach(self, child: ChildProcess) -> None:
        """Kill the helper as soon as ``child`` exits, as it has nothing left to guard."""
        if child.returncode is not None:
            self.kill()
            return
        self.__remove_exit_handler = child.handle_events(ExitEvent, lambda _: self.kill())

    def kill(self) -> None:
        if self.__remove_exit_handler is not None:
            self.__remove_exit_handler()
            self.__remove_exit_handler = None
        if self.__proc is not None and self.__proc.returncode is None:
            try:
                self.__proc.send_signal(signal.SIGKILL)
            except ProcessLookupError:
                pass

    async def stop(self) -> None:
        """Kill the helper and wait for it to exit."""
        self.kill()
        if self.__proc is not None:
            await self.__proc.wait()


async def watchdog(child: ChildProcess, interval: float | None = None) -> Watchdog:
    """Start a watchdog process for ``child``.

    The watchdog polls whether this process is still alive and sends ``SIGTERM`` to the child when
    it is not. That covers this process being killed by a signal that cannot be caught and
    forwarded, such as ``SIGKILL``.

    :param interval: Seconds between two liveness checks, defaults to `DEFAULT_INTERVAL`.
    :return: The watchdog handle. Failing to start the watchdog is not an error, the returned
        handle then has no ``pid``.
    """
    if interval is None:
        interval = DEFAULT_INTERVAL

    try:
        proc = await asyncio.create_subprocess_exec(
            *_watchdog_command(child.pid, interval),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
        )
    except OSError as exc:
        log_warning(f"could not start watchdog for process {child.pid}: {exc}")
        return Watchdog()

    log_debug(f"watchdog {proc.pid} guards process {child.pid}")

    dog = Watchdog(proc)
    dog.attach(child)
    return dog
