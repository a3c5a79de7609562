from __future__ import annotations

import os
import typing
import warnings
from dataclasses import dataclass

from typing_extensions import Self

from .logging import Level, levels

__all__ = ["Settings"]


def _warn(name: str, value: str, expected: str) -> None:
    warnings.warn(
        f"Ignoring invalid value {value!r} for {name}, expected {expected}.",
        RuntimeWarning,
    )


@dataclass
class Settings:
    """Tunables for running a foreground child.

    `Settings.from_environ` reads them from ``FOREGROUND_CHILD_*`` environment variables, which is
    what is used when no explicit settings are passed.
    """

    watchdog: bool = True
    """Whether to start the watchdog process that terminates the child when the parent dies.

    Environment: ``FOREGROUND_CHILD_WATCHDOG``, disabled by ``0``, ``false``, ``no`` or ``off``.
    """

    watchdog_interval: float = 0.1
    """Seconds between two liveness checks of the parent process by the watchdog.

    Environment: ``FOREGROUND_CHILD_WATCHDOG_INTERVAL``.
    """

    keep_alive: float = 2.0
    """Seconds to keep the event loop alive after the parent signalled itself.

    Without this, a loop with nothing else to do could finish and exit normally before the signal
    is delivered. Environment: ``FOREGROUND_CHILD_KEEP_ALIVE``.
    """

    log_level: Level | None = None
    """When set, log output at this level and above is written to stderr.

    Environment: ``FOREGROUND_CHILD_LOG``.
    """

    @classmethod
    def from_environ(cls, environ: typing.Mapping[str, str] | None = None) -> Self:
        if environ is None:
            environ = os.environ

        settings = cls()

        if (value := environ.get("FOREGROUND_CHILD_WATCHDOG")) is not None:
            if value.strip().lower() in ("0", "false", "no", "off"):
                settings.watchdog = False
            elif value.strip().lower() not in ("", "1", "true", "yes", "on"):
                _warn("FOREGROUND_CHILD_WATCHDOG", value, "a boolean")

        if (value := environ.get("FOREGROUND_CHILD_WATCHDOG_INTERVAL")) is not None:
            try:
                interval = float(value)
            except ValueError:
                interval = 0.0
            if interval > 0:
                settings.watchdog_interval = interval
            else:
                _warn("FOREGROUND_CHILD_WATCHDOG_INTERVAL", value, "a positive number of seconds")

        if (value := environ.get("FOREGROUND_CHILD_KEEP_ALIVE")) is not None:
            try:
                keep_alive = float(value)
            except ValueError:
                keep_alive = -1.0
            if keep_alive >= 0:
                settings.keep_alive = keep_alive
            else:
                _warn("FOREGROUND_CHILD_KEEP_ALIVE", value, "a non-negative number of seconds")

        if value := environ.get("FOREGROUND_CHILD_LOG"):
            level = value.strip().lower()
            if level in levels:
                settings.log_level = typing.cast(Level, level)
            else:
                _warn("FOREGROUND_CHILD_LOG", value, f"one of {', '.join(levels)}")

        return settings
