from __future__ import annotations

import asyncio
import os
import shlex
import typing
from dataclasses import dataclass
from typing import Any, Callable, Mapping

from .ipc import CHANNEL_FD_ENV, Channel
from .logging import log_debug
from .signals import signal_number, split_returncode

__all__ = [
    "ChildProcess",
    "CloseEvent",
    "ExitEvent",
    "MessageEvent",
    "NoChannelError",
    "ProcessEvent",
    "SpawnOptions",
    "spawn",
]

T_ProcessEvent = typing.TypeVar("T_ProcessEvent", bound="ProcessEvent")


@dataclass
class SpawnOptions:
    """Options for spawning the child process."""

    cwd: os.PathLike[Any] | str | None = None
    """The working directory of the child. Defaults to the working directory of the parent."""

    env: Mapping[str, str] | None = None
    """The environment of the child. Defaults to the environment of the parent."""


class NoChannelError(RuntimeError):
    """Raised when sending a message to a child that has no message channel."""

    def __init__(self, process: ChildProcess):
        self.process = process

    def __str__(self) -> str:
        return f"Process {self.process.pid} has no message channel"


@dataclass
class ProcessEvent:
    """Base class for events emitted by a `ChildProcess`."""


@dataclass
class ExitEvent(ProcessEvent):
    """Emitted as soon as the process exited."""

    code: int | None
    """The exit code, `None` if the process was terminated by a signal."""

    signal: str | None
    """The name of the signal that terminated the process, `None` if it exited normally."""


@dataclass
class CloseEvent(ProcessEvent):
    """Emitted after the process exited and its message channel has been closed.

    This is emitted exactly once by the process monitor. Handlers still have to tolerate repeated
    delivery, as anyone holding the handle can `ChildProcess.emit` events.
    """

    code: int | None
    signal: str | None


@dataclass
class MessageEvent(ProcessEvent):
    """Emitted for every message received over the message channel."""

    message: Any


class ChildProcess:
    """Handle of a spawned child process.

    Use `spawn` to create instances.
    """

    command: list[str]

    __proc: asyncio.subprocess.Process
    __channel: Channel | None
    __handlers: dict[type, dict[Callable[[Any], None], None]]
    __closed: asyncio.Future[tuple[int | None, str | None]]
    __monitor: asyncio.Task[None]

    def __init__(
        self,
        proc: asyncio.subprocess.Process,
        command: list[str],
        channel: Channel | None = None,
    ):
        self.command = command
        self.__proc = proc
        self.__channel = channel
        self.__handlers = {}
        self.__closed = asyncio.get_running_loop().create_future()

        if channel is not None:
            channel.add_listener(lambda message: self.emit(MessageEvent(message)))

        self.__monitor = asyncio.create_task(
            self.__monitor_main(), name=f"{command[0]} {proc.pid} monitor"
        )

    @property
    def pid(self) -> int:
        return self.__proc.pid

    @property
    def returncode(self) -> int | None:
        """The raw return code, `None` while the process is running."""
        return self.__proc.returncode

    @property
    def has_channel(self) -> bool:
        return self.__channel is not None

    @property
    def shell_command(self) -> str:
        """The command as a string that can be executed in a shell."""
        return shlex.join(self.command)

    @property
    async def closed(self) -> tuple[int | None, str | None]:
        """Awaitable that resolves to the ``(code, signal)`` pair once the process closed."""
        return await asyncio.shield(self.__closed)

    async def __monitor_main(self) -> None:
        returncode = await self.__proc.wait()
        code, signal = split_returncode(returncode)

        self.emit(ExitEvent(code, signal))

        if self.__channel is not None:
            self.__channel.close()

        log_debug(f"process {self.pid} closed (code={code}, signal={signal})")

        if not self.__closed.done():
            self.__closed.set_result((code, signal))
        self.emit(CloseEvent(code, signal))

    def kill(self, sig: str | int = "SIGTERM") -> None:
        """Send a signal to the process.

        :param sig: The signal as name (with or without ``SIG`` prefix) or number.
        :raises ValueError: if the signal is not known on this platform
        :raises ProcessLookupError: if the process already exited
        """
        signum = signal_number(sig)
        if self.returncode is not None:
            raise ProcessLookupError(f"process {self.pid} already exited")
        os.kill(self.pid, signum)

    def send(self, message: Any) -> None:
        """Send a message over the message channel.

        :raises NoChannelError: if the process was spawned without a message channel
        :raises BrokenPipeError: if the channel was already closed
        """
        if self.__channel is None:
            raise NoChannelError(self)
        self.__channel.send(message)

    def emit(self, event: ProcessEvent) -> None:
        """Deliver an event to all handlers registered for its type or any of its base classes."""
        for mro_item in type(event).mro():
            for handler in list(self.__handlers.get(mro_item, ())):
                handler(event)

    def handle_events(
        self,
        event_type: type[T_ProcessEvent],
        handler: Callable[[T_ProcessEvent], None],
    ) -> Callable[[], None]:
        """Register a synchronous handler for events emitted by this process.

        :param event_type: The type of events to handle, use `ProcessEvent` to handle all events.
        :param handler: The handler to call for each event.
        :return: A callable that can be called to unregister the handler. Calling it more than
            once is harmless.
        """
        handlers = self.__handlers.setdefault(event_type, {})
        handlers[handler] = None
        return lambda: handlers.pop(handler, None)  # type: ignore


async def spawn(
    command: list[str],
    options: SpawnOptions | None = None,
    *,
    channel: bool = False,
) -> ChildProcess:
    """Spawn a process that inherits the standard streams of the current process.

    :param command: The program followed by its arguments.
    :param options: Working directory and environment of the new process.
    :param channel: Whether to establish a message channel with the new process. The child finds
        its end through the ``FOREGROUND_CHILD_CHANNEL_FD`` environment variable.
    """
    if options is None:
        options = SpawnOptions()

    env = dict(os.environ if options.env is None else options.env)
    env.pop(CHANNEL_FD_ENV, None)

    ours: Channel | None = None
    pass_fds: tuple[int, ...] = ()

    if channel:
        ours, theirs = Channel.pair()
        env[CHANNEL_FD_ENV] = str(theirs.fileno())
        pass_fds = (theirs.fileno(),)
    else:
        theirs = None

    log_debug(f"starting process {shlex.join(command)}")

    try:
        proc = await asyncio.create_subprocess_exec(
            *command,
            stdin=None,
            stdout=None,
            stderr=None,
            cwd=options.cwd,
            env=env,
            pass_fds=pass_fds,
        )
    except BaseException:
        if ours is not None:
            ours.close()
        raise
    finally:
        if theirs is not None:
            theirs.close()

    return ChildProcess(proc, command, channel=ours)
