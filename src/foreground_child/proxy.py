from __future__ import annotations

import asyncio
import functools
import signal
import typing
from dataclasses import dataclass
from typing import Any, Callable

from .logging import log_debug
from .process import ExitEvent
from .signals import all_signals, signal_number

if typing.TYPE_CHECKING:
    from .process import ChildProcess

__all__ = ["Registration", "SignalProxy", "proxy_signals"]

# Intercepting these in a Python parent breaks child process monitoring, profilers or the handling
# of synchronous faults in the interpreter itself.
_NEVER_PROXIED = frozenset(
    ["SIGCHLD", "SIGCLD", "SIGPROF", "SIGSEGV", "SIGBUS", "SIGFPE", "SIGILL"]
)


@dataclass(frozen=True)
class Registration:
    """A parent-level signal subscription that forwards the signal to the child."""

    signum: int
    forward: Callable[[], None]
    previous: Any
    """The Python-level handler installed before subscribing, restored when unsubscribing."""


class SignalProxy:
    """Forwards every signal the parent receives to a child process.

    Subscriptions go through the running event loop's `asyncio.loop.add_signal_handler`.
    """

    child: ChildProcess

    __loop: asyncio.AbstractEventLoop | None
    __registrations: dict[str, Registration]
    __remove_exit_handler: Callable[[], None] | None

    def __init__(self, child: ChildProcess):
        self.child = child
        self.__loop = None
        self.__registrations = {}
        self.__remove_exit_handler = None

    @property
    def registrations(self) -> dict[str, Registration]:
        """The listener registration table, mapping signal names to their subscription.

        A name is present exactly while the parent forwards that signal to the child.
        """
        return dict(self.__registrations)

    def start(self) -> Callable[[], None]:
        """Subscribe to all signals of the catalog that can be handled on this platform.

        Unsubscribing happens automatically when the child exits.

        :return: `stop`, for unsubscribing early.
        """
        if self.child.returncode is not None:
            return self.stop

        self.__loop = loop = asyncio.get_running_loop()
        subscribed: set[int] = set()

        for name in all_signals():
            if name in _NEVER_PROXIED:
                continue
            try:
                signum = signal_number(name)
            except ValueError:
                continue
            # Aliases share a number, the first name in catalog order wins
            if signum in subscribed:
                continue

            previous = signal.getsignal(signum)
            forward = functools.partial(self.__forward, name)
            try:
                loop.add_signal_handler(signum, forward)
            except (ValueError, OSError, RuntimeError):
                continue

            subscribed.add(signum)
            self.__registrations[name] = Registration(signum, forward, previous)

        log_debug(f"forwarding {len(self.__registrations)} signals to process {self.child.pid}")

        self.__remove_exit_handler = self.child.handle_events(ExitEvent, lambda _: self.stop())
        return self.stop

    def __forward(self, name: str) -> None:
        try:
            self.child.kill(name)
        except (OSError, ValueError):
            # some signals can only be received, not sent
            pass

    def stop(self) -> None:
        """Undo all subscriptions and restore the handlers that were installed before.

        Safe to call any number of times.
        """
        if self.__remove_exit_handler is not None:
            self.__remove_exit_handler()
            self.__remove_exit_handler = None

        registrations, self.__registrations = self.__registrations, {}
        loop = self.__loop

        for registration in registrations.values():
            if loop is not None:
                loop.remove_signal_handler(registration.signum)
            if registration.previous is not None:
                try:
                    signal.signal(registration.signum, registration.previous)
                except (ValueError, OSError):
                    pass


def proxy_signals(child: ChildProcess) -> Callable[[], None]:
    """Start forwarding signals received by this process to ``child``.

    :return: A callable that stops forwarding, safe to call multiple times.
    """
    return SignalProxy(child).start()
