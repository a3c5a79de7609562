from __future__ import annotations

import asyncio
import json
import os
import select
import socket
import warnings
from typing import Any, Callable

from typing_extensions import Self

from .logging import log_debug, log_warning

__all__ = ["CHANNEL_FD_ENV", "Channel", "parent_channel"]

CHANNEL_FD_ENV = "FOREGROUND_CHILD_CHANNEL_FD"
"""Environment variable holding the file descriptor of a process's message channel."""

Listener = Callable[[Any], None]


class Channel:
    """A bidirectional message channel over a stream socket.

    Messages are JSON serializable values, sent as one JSON document per line. Incoming messages
    are only read while at least one listener is registered. Until then they stay buffered, so no
    message is lost between detaching one set of listeners and attaching another.

    Reading requires a running asyncio event loop, which is looked up when the first listener is
    added.
    """

    __sock: socket.socket | None
    __fd: int
    __listeners: dict[Listener, None]
    __buffer: bytes
    __loop: asyncio.AbstractEventLoop | None
    __eof: bool

    def __init__(self, sock: socket.socket):
        self.__sock = sock
        self.__fd = sock.fileno()
        self.__listeners = {}
        self.__buffer = b""
        self.__loop = None
        self.__eof = False

    @classmethod
    def pair(cls) -> tuple[Self, socket.socket]:
        """Create a connected pair.

        :return: The local end as `Channel` and the raw socket of the remote end, which is meant to
            be passed to a subprocess.
        """
        ours, theirs = socket.socketpair()
        return cls(ours), theirs

    def fileno(self) -> int:
        return self.__fd

    @property
    def closed(self) -> bool:
        return self.__sock is None

    @property
    def at_eof(self) -> bool:
        """Whether the remote end closed its side of the channel."""
        return self.__eof

    @property
    def listeners(self) -> list[Listener]:
        return list(self.__listeners)

    def send(self, message: Any) -> None:
        """Send a message to the remote end.

        :raises BrokenPipeError: if the channel is closed
        """
        if self.__sock is None:
            raise BrokenPipeError("channel is closed")
        data = json.dumps(message, separators=(",", ":")).encode() + b"\n"
        self.__sock.sendall(data)

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        """Register a listener that is called with every received message.

        :return: A callable that can be called to unregister the listener.
        """
        self.__listeners[listener] = None
        self.__register()
        if b"\n" in self.__buffer:
            asyncio.get_running_loop().call_soon(self.__dispatch)
        return lambda: self.remove_listener(listener)

    def remove_listener(self, listener: Listener) -> None:
        self.__listeners.pop(listener, None)
        if not self.__listeners:
            self.__unregister()

    def remove_all_listeners(self) -> list[Listener]:
        """Unregister all listeners.

        :return: The removed listeners, in registration order.
        """
        removed = list(self.__listeners)
        self.__listeners.clear()
        self.__unregister()
        return removed

    def drain(self) -> None:
        """Process all data that can be read without blocking."""
        while self.__sock is not None and not self.__eof:
            readable, _, _ = select.select([self.__sock], [], [], 0)
            if not readable:
                break
            self.__on_readable()

    def close(self) -> None:
        """Deliver pending messages to the current listeners and close the channel."""
        if self.__sock is None:
            return
        if self.__listeners:
            self.drain()
        self.__unregister()
        self.__sock.close()
        self.__sock = None

    def __register(self) -> None:
        if self.__sock is None or self.__eof:
            return
        loop = asyncio.get_running_loop()
        if self.__loop is not loop:
            self.__unregister()
            self.__loop = loop
            loop.add_reader(self.__fd, self.__on_readable)

    def __unregister(self) -> None:
        if self.__loop is not None:
            loop = self.__loop
            self.__loop = None
            if not loop.is_closed():
                loop.remove_reader(self.__fd)

    def __on_readable(self) -> None:
        assert self.__sock is not None
        try:
            data = self.__sock.recv(1 << 16)
        except BlockingIOError:
            return
        except ConnectionResetError:
            data = b""

        if not data:
            self.__eof = True
            self.__unregister()
            log_debug(f"message channel {self.__fd} reached EOF")
        else:
            self.__buffer += data
        self.__dispatch()

    def __dispatch(self) -> None:
        while self.__listeners:
            line, sep, rest = self.__buffer.partition(b"\n")
            if not sep:
                break
            self.__buffer = rest
            if not line.strip():
                continue
            try:
                message = json.loads(line)
            except ValueError:
                log_warning(f"dropping malformed message on channel {self.__fd}: {line!r}")
                continue
            for listener in list(self.__listeners):
                listener(message)


_parent_channel: Channel | None = None
_parent_channel_checked: bool = False


def parent_channel() -> Channel | None:
    """Return the message channel this process was started with, if any.

    The channel is looked up once, using the file descriptor named by the
    ``FOREGROUND_CHILD_CHANNEL_FD`` environment variable. An unusable descriptor produces a warning
    and is ignored.
    """
    global _parent_channel
    global _parent_channel_checked

    if _parent_channel_checked:
        return _parent_channel
    _parent_channel_checked = True

    value = os.environ.get(CHANNEL_FD_ENV)
    if not value:
        return None

    try:
        fd = int(value)
        sock = socket.socket(fileno=fd)
    except (ValueError, OSError):
        warnings.warn(
            f"Could not connect to the message channel found in {CHANNEL_FD_ENV}, "
            "running without one.",
            RuntimeWarning,
        )
        return None

    _parent_channel = Channel(sock)
    return _parent_channel
