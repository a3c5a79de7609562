from __future__ import annotations

import asyncio
import inspect
import os
import signal
import sys
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Literal, NoReturn, Optional, Sequence, Union

from .config import Settings
from .exit_hook import on_exit
from .ipc import Channel, parent_channel as _parent_channel
from .logging import log_debug, log_exception, start_env_logging
from .process import ChildProcess, CloseEvent, MessageEvent, SpawnOptions, spawn
from .proxy import proxy_signals
from .signals import signal_number
from .watchdog import Watchdog, watchdog

__all__ = [
    "Cleanup",
    "CleanupResult",
    "Disposition",
    "ForegroundChild",
    "HostProcess",
    "ProcessInfo",
    "foreground_child",
    "resolve_disposition",
    "run_foreground_child",
]

State = Literal["spawning", "running", "child_closed", "reconciling", "terminal"]


@dataclass(frozen=True)
class Disposition:
    """How a process terminated, or how the parent is going to terminate.

    At most one of `code` and `signal` is set.
    """

    code: int | None = None
    signal: str | None = None

    def __post_init__(self) -> None:
        if self.code is not None and self.signal is not None:
            raise ValueError("a process exits with a code or by a signal, not both")


@dataclass(frozen=True)
class ProcessInfo:
    """Extra information passed to the cleanup callback."""

    watchdog_pid: int | None = None
    """Process id of the watchdog, `None` if it is not running."""


CleanupResult = Union[None, int, str, Literal[False]]

Cleanup = Callable[
    [Optional[int], Optional[str], ProcessInfo],
    Union[CleanupResult, Awaitable[CleanupResult]],
]
"""Signature of the cleanup callback.

Called once with the exit code and signal of the child after it closed. The return value (or the
value an awaitable return value resolves to) decides how the parent exits:

* `None`: the same way the child exited
* an `int`: with that exit code
* a signal name: killed by that signal
* `False`: not at all, the parent keeps running
"""


def resolve_disposition(child: Disposition, outcome: Any) -> Disposition | None:
    """Compute the parent's disposition from the child's and the cleanup callback's result.

    :return: The disposition to apply, `None` if the callback vetoed the exit.
    """
    if outcome is False:
        return None
    if isinstance(outcome, bool) or outcome is None:
        return child
    if isinstance(outcome, int):
        return Disposition(code=outcome)
    if isinstance(outcome, str):
        return Disposition(signal=outcome)
    return child


class HostProcess:
    """The services of the current process used to apply the final disposition."""

    @property
    def pid(self) -> int:
        return os.getpid()

    def exit(self, code: int) -> NoReturn:
        sys.exit(code)

    def kill(self, sig: str) -> None:
        """Send ``sig`` to this process, with its default action restored so it terminates."""
        signum = signal_number(sig)
        try:
            signal.signal(signum, signal.SIG_DFL)
        except (OSError, ValueError):
            # SIGKILL and SIGSTOP have no handler to reset
            pass
        os.kill(self.pid, signum)


class _Missing:
    pass


_MISSING = _Missing()


class ForegroundChild:
    """Runs a child process in the foreground of this process.

    The child inherits stdio and receives all signals sent to this process. Once it closed, the
    cleanup callback runs and this process exits the same way as the child did, unless the
    callback decides otherwise.
    """

    command: list[str]
    options: SpawnOptions
    settings: Settings

    __state: State
    __cleanup: Cleanup | None
    __host: HostProcess
    __parent_channel: Channel | None
    __child: ChildProcess | None
    __watchdog: Watchdog | None
    __teardown: list[Callable[[], None]]
    __unproxy: Callable[[], None]
    __closed: bool
    __started: asyncio.Future[None] | None
    __finished: asyncio.Future[Disposition | None] | None
    __reconcile_task: asyncio.Task[None] | None

    def __init__(
        self,
        command: Sequence[str],
        *,
        options: SpawnOptions | None = None,
        cleanup: Cleanup | None = None,
        settings: Settings | None = None,
        host: HostProcess | None = None,
        parent_channel: Channel | None | _Missing = _MISSING,
    ):
        """
        :param command: The program followed by its arguments.
        :param options: Working directory and environment of the child.
        :param cleanup: Called after the child closed, see `Cleanup`.
        :param settings: Defaults to `Settings.from_environ`.
        :param host: Applies the final disposition, defaults to the current process.
        :param parent_channel: The message channel to relay to the child, defaults to the channel
            this process was started with (see `foreground_child.ipc.parent_channel`).
        """
        if not command:
            raise ValueError("command must not be empty")
        self.command = list(command)
        self.options = SpawnOptions() if options is None else options
        self.settings = Settings.from_environ() if settings is None else settings

        self.__state = "spawning"
        self.__cleanup = cleanup
        self.__host = HostProcess() if host is None else host
        if isinstance(parent_channel, _Missing):
            parent_channel = _parent_channel()
        self.__parent_channel = parent_channel
        self.__child = None
        self.__watchdog = None
        self.__teardown = []
        self.__unproxy = lambda: None
        self.__closed = False
        self.__started = None
        self.__finished = None
        self.__reconcile_task = None

    @property
    def state(self) -> State:
        return self.__state

    @property
    def child(self) -> ChildProcess:
        if self.__child is None:
            raise RuntimeError("the child process has not been started")
        return self.__child

    @property
    def watchdog_pid(self) -> int | None:
        return None if self.__watchdog is None else self.__watchdog.pid

    @property
    async def finished(self) -> Disposition | None:
        """Awaitable that resolves once the parent's disposition was applied.

        Unless a custom host is used, this resolves when the cleanup callback vetoed the exit, in
        which case the result is `None`, or when this process survived its own signal (see
        `run_foreground_child`). Exceptions of the cleanup callback are raised here.
        """
        if self.__finished is None:
            raise RuntimeError("the child process has not been started")
        return await asyncio.shield(self.__finished)

    async def start(self) -> ChildProcess:
        """Spawn the child and start forwarding signals and messages to it."""
        assert self.__state == "spawning", "a foreground child can only be started once"

        if self.settings.log_level is not None:
            start_env_logging(self.settings.log_level)

        loop = asyncio.get_running_loop()
        self.__started = loop.create_future()
        self.__finished = loop.create_future()

        try:
            channel = self.__parent_channel
            child = await spawn(self.command, self.options, channel=channel is not None)
            self.__child = child

            # Nothing below may yield to the event loop before the close handler is installed
            self.__teardown.append(on_exit(self.__child_hangup))
            self.__unproxy = proxy_signals(child)
            self.__teardown.append(self.__unproxy)
            child.handle_events(CloseEvent, self.__on_close)

            if channel is not None:
                self.__install_relay(channel, child)

            self.__state = "running"

            if self.settings.watchdog:
                self.__watchdog = await watchdog(child, self.settings.watchdog_interval)
        finally:
            self.__started.set_result(None)

        return child

    def __install_relay(self, channel: Channel, child: ChildProcess) -> None:
        detached = channel.remove_all_listeners()

        def to_child(message: Any) -> None:
            try:
                child.send(message)
            except OSError as exc:
                log_debug(f"dropping message for process {child.pid}: {exc}")

        def to_parent(event: MessageEvent) -> None:
            try:
                channel.send(event.message)
            except OSError as exc:
                log_debug(f"dropping message from process {child.pid}: {exc}")

        remove_to_child = channel.add_listener(to_child)
        remove_to_parent = child.handle_events(MessageEvent, to_parent)

        def remove_relay() -> None:
            remove_to_parent()
            remove_to_child()
            for listener in detached:
                channel.add_listener(listener)

        self.__teardown.append(remove_relay)

    def __child_hangup(self) -> None:
        self.__unproxy()
        child = self.child
        try:
            child.kill("SIGHUP")
        except ProcessLookupError:
            pass
        except (OSError, ValueError):
            # SIGHUP does not exist everywhere
            child.kill("SIGTERM")

    def __on_close(self, event: CloseEvent) -> None:
        if self.__closed:
            return
        self.__closed = True
        self.__state = "child_closed"
        self.__reconcile_task = asyncio.create_task(
            self.__reconcile(Disposition(event.code, event.signal)),
            name=f"{self.command[0]} reconcile",
        )

    async def __reconcile(self, child_disposition: Disposition) -> None:
        assert self.__started is not None and self.__finished is not None
        # The child may close while the watchdog is still being spawned
        await self.__started
        try:
            disposition = await self.__run_cleanup(child_disposition)
        except Exception as exc:
            self.__state = "terminal"
            self.__finished.set_exception(exc)
            return

        self.__state = "terminal"

        if disposition is None:
            log_debug("cleanup vetoed the exit, keeping the parent process running")
            self.__finished.set_result(None)
            return

        if disposition.signal is not None:
            log_debug(f"terminating with signal {disposition.signal}")
            try:
                self.__host.kill(disposition.signal)
            except (OSError, ValueError):
                self.__host.kill("SIGTERM")
            # The loop must still be running when the signal arrives, otherwise the process would
            # exit normally instead
            await asyncio.sleep(self.settings.keep_alive)
        else:
            log_debug(f"exiting with code {disposition.code or 0}")
            self.__host.exit(disposition.code or 0)

        self.__finished.set_result(disposition)

    async def __run_cleanup(self, child_disposition: Disposition) -> Disposition | None:
        self.__state = "reconciling"
        log_debug(
            f"process {self.child.pid} closed "
            f"(code={child_disposition.code}, signal={child_disposition.signal})"
        )
        try:
            outcome: Any = None
            if self.__cleanup is not None:
                try:
                    outcome = self.__cleanup(
                        child_disposition.code,
                        child_disposition.signal,
                        ProcessInfo(watchdog_pid=self.watchdog_pid),
                    )
                    if inspect.isawaitable(outcome):
                        outcome = await outcome
                except Exception as exc:
                    log_exception(exc)
                    raise
        finally:
            await self.__tear_down()

        return resolve_disposition(child_disposition, outcome)

    async def __tear_down(self) -> None:
        teardown, self.__teardown = self.__teardown, []
        for callback in teardown:
            callback()
        if self.__watchdog is not None:
            await self.__watchdog.stop()


def _normalize_command(command: str | Sequence[str], args: Sequence[str]) -> list[str]:
    if isinstance(command, str):
        return [command, *args]
    if args:
        raise ValueError("pass arguments either as part of the command sequence or as args")
    return list(command)


async def foreground_child(
    command: str | Sequence[str],
    args: Sequence[str] = (),
    *,
    options: SpawnOptions | None = None,
    cleanup: Cleanup | None = None,
    settings: Settings | None = None,
) -> ForegroundChild:
    """Spawn ``command`` as a foreground child of this process.

    This has to be called with a running event loop, which should be kept running until the child
    closed, e.g. by awaiting `ForegroundChild.finished`.

    :param command: The program, or a sequence of the program followed by its arguments.
    :param args: Arguments for the program, only when ``command`` is a string.
    :param options: Working directory and environment of the child.
    :param cleanup: Called after the child closed, see `Cleanup`.
    :param settings: Defaults to `Settings.from_environ`.
    """
    fg = ForegroundChild(
        _normalize_command(command, args), options=options, cleanup=cleanup, settings=settings
    )
    await fg.start()
    return fg


def run_foreground_child(
    command: str | Sequence[str],
    args: Sequence[str] = (),
    *,
    options: SpawnOptions | None = None,
    cleanup: Cleanup | None = None,
    settings: Settings | None = None,
) -> Disposition | None:
    """Run `foreground_child` in a new event loop until the child closed.

    Normally this does not return, as this process exits the same way as the child. It returns
    `None` when the cleanup callback vetoed the exit.

    It also returns, with the applied `Disposition`, when this process survived the signal it sent
    itself for ``settings.keep_alive`` seconds. That happens for signals whose default action is
    to be ignored (e.g. ``SIGWINCH``, ``SIGURG`` or ``SIGCHLD``) or to stop the process (once it is
    continued). Callers that must not keep running have to exit on their own then.
    """

    async def main() -> Disposition | None:
        fg = await foreground_child(
            command, args, options=options, cleanup=cleanup, settings=settings
        )
        return await fg.finished

    return asyncio.run(main())
