from __future__ import annotations

import os
import time
import traceback
from dataclasses import dataclass, field
from typing import IO, Any, Callable, Literal

import click

Level = Literal["debug", "info", "warning", "error"]

levels = ["debug", "info", "warning", "error"]

_level_order = {level: i for i, level in enumerate(levels)}


@dataclass
class LogEvent:
    msg: str
    level: Level

    time: float = field(init=False)

    def __post_init__(self):
        self.time = time.time()


@dataclass
class Backtrace:
    exception: BaseException

    def __str__(self):
        backtrace = "".join(
            traceback.format_exception(None, self.exception, self.exception.__traceback__)
        )

        return f"exception:\n{click.style(backtrace, fg='red')}"


def default_time_formatter(t: float) -> str:
    tm = time.localtime(t)
    return f"{tm.tm_hour:02d}:{tm.tm_min:02d}:{tm.tm_sec:02d}"


def default_formatter(event: LogEvent):
    time_str = LogContext.time_format(event.time)
    parts: list[str] = []
    if LogContext.app_name:
        parts.append(f"{click.style(LogContext.app_name, fg='blue')} ")
    if time_str:
        parts.append(f"{click.style(time_str, fg='green')} ")
    if LogContext.scope:
        parts.append(f"{click.style(LogContext.scope, fg='magenta')}: ")

    prefix = "".join(parts)

    formatted_lines: list[str] = []

    for line in event.msg.splitlines():
        if event.level == "debug":
            formatted_lines.append(prefix + click.style(f"DEBUG: {line}", fg="cyan"))
        elif event.level == "warning":
            formatted_lines.append(prefix + click.style(f"WARNING: {line}", fg="yellow"))
        elif event.level == "error":
            formatted_lines.append(prefix + click.style(f"ERROR: {line}", fg="red"))
        else:
            formatted_lines.append(prefix + line)
    return "\n".join(formatted_lines)


class LogContext:
    """Process wide settings that customize logging behavior."""

    app_name: str | None = None
    """The default formatter will prefix all log messages with this if set."""

    scope: str | None = "foreground-child"
    """Scope prefix to display as part of log messages."""

    quiet: bool = False
    """Downgrade all info level messages to debug level messages.

    When set, the downgrading happens before the `LogEvent` is dispatched.
    """

    level: Level = "info"
    """The minimum log level to display/log.

    This does not stop `LogEvent` of smaller levels to be dispatched. It is only used to filter
    which messages to actually print/log. Hence, it does not affect any user installed handlers.
    """

    log_format: Callable[[LogEvent], str] = default_formatter
    """The formatter used to format log messages."""

    time_format: Callable[[float], str] = default_time_formatter
    """The formatter used by the default formatter to format the time of log messages.

    This is provided so it can be overridden with a fixed timestamp when running tests that check
    the log output.
    """


_handlers: dict[Callable[[LogEvent], None], None] = {}


def handle_log_events(handler: Callable[[LogEvent], None]) -> Callable[[], None]:
    """Register a handler that is called synchronously for every `LogEvent`.

    :return: A callable that can be called to unregister the handler.
    """
    _handlers[handler] = None
    return lambda: _handlers.pop(handler, None)


def log(*args: Any, level: Level = "info") -> LogEvent:
    """Produce log output.

    This is done by dispatching a `LogEvent` to all registered handlers. Without any handlers
    (see `start_logging`) the event is dropped.

    :param args: The message to log, will be converted to strings and joined with spaces.
    :param level: The log level, one of "debug", "info", "warning" or "error". Defaults to "info".
    :return: The dispatched event.
    """
    msg = " ".join(str(arg) for arg in args)

    if LogContext.quiet and level == "info":
        level = "debug"

    event = LogEvent(msg=msg, level=level)

    for handler in list(_handlers):
        handler(event)

    return event


def log_debug(*args: Any) -> LogEvent:
    """Produce debug log output.

    This calls `log` with ``level="debug"``.
    """
    return log(*args, level="debug")


def log_warning(*args: Any) -> LogEvent:
    return log(*args, level="warning")


def log_error(*args: Any) -> LogEvent:
    return log(*args, level="error")


def log_exception(exception: BaseException) -> LogEvent:
    """Produce error log output for an exception.

    Exceptions of builtin types get their type name and the innermost traceback entry added to the
    message. At debug level the full backtrace is logged as well. The exception is not raised,
    callers that want to propagate it have to re-raise it themselves.
    """
    msg = str(exception)

    if type(exception).__module__ == "builtins":
        short_trace = traceback.format_tb(exception.__traceback__, limit=-1)
        msg = f"{type(exception).__name__}: {msg}\n{''.join(short_trace)}"

    if exception.__traceback__:
        log_debug(Backtrace(exception))

    return log_error(msg)


_no_color = bool(os.getenv("NO_COLOR", ""))


def start_logging(
    file: IO[Any] | None = None,
    err: bool = True,
    color: bool | None = None,
) -> Callable[[], None]:
    """Start writing log events to a file.

    Can be called multiple times to log to multiple destinations.

    It is possible to stop logging by closing the file object passed to this function or by calling
    the returned callable.

    :param file: The file to log to. Defaults to `sys.stderr` or `sys.stdout` depending on ``err``.
    :param err: Whether to log to `sys.stderr` instead of `sys.stdout`. Defaults to ``True``, as
        the standard output is shared with the child process.
    :param color: Whether to use colors. Defaults to ``True`` for terminals and ``False`` otherwise.
        When the ``NO_COLOR`` environment variable is set, this will be ignored and no colors will
        be used.
    """
    if _no_color:
        color = False

    def log_handler(event: LogEvent):
        if file and file.closed:
            remove_log_handler()
            return
        if _level_order[event.level] < _level_order[LogContext.level]:
            return
        formatted = LogContext.log_format(event)
        click.echo(formatted, file=file, err=err, color=color)

    remove_log_handler = handle_log_events(log_handler)
    return remove_log_handler


_env_logging_started = False


def start_env_logging(level: Level) -> None:
    """Start logging to stderr at the given level, at most once per process.

    Used for the level configured through the environment.
    """
    global _env_logging_started
    if _env_logging_started:
        return
    _env_logging_started = True
    LogContext.level = level
    start_logging()
