from __future__ import annotations

import functools
import signal

__all__ = ["all_signals", "signal_name", "signal_number", "split_returncode"]

# Names that exist on at least one supported platform. Names missing on the host are kept in the
# catalog, consumers have to cope with them anyway.
_KNOWN_SIGNALS = (
    "SIGABRT",
    "SIGALRM",
    "SIGBREAK",
    "SIGBUS",
    "SIGCHLD",
    "SIGCLD",
    "SIGCONT",
    "SIGEMT",
    "SIGFPE",
    "SIGHUP",
    "SIGILL",
    "SIGINFO",
    "SIGINT",
    "SIGIO",
    "SIGIOT",
    "SIGKILL",
    "SIGLOST",
    "SIGPIPE",
    "SIGPOLL",
    "SIGPROF",
    "SIGPWR",
    "SIGQUIT",
    "SIGSEGV",
    "SIGSTKFLT",
    "SIGSTOP",
    "SIGSYS",
    "SIGTERM",
    "SIGTRAP",
    "SIGTSTP",
    "SIGTTIN",
    "SIGTTOU",
    "SIGUNUSED",
    "SIGURG",
    "SIGUSR1",
    "SIGUSR2",
    "SIGVTALRM",
    "SIGWINCH",
    "SIGXCPU",
    "SIGXFSZ",
)


@functools.lru_cache(maxsize=None)
def all_signals() -> tuple[str, ...]:
    """All signal names the host might deliver to a process.

    The names defined by the host come first, in signal number order (aliases right after the
    name they alias), followed by the remaining well-known names. The result is computed once and
    cached for the lifetime of the process.
    """
    host = sorted(signal.Signals.__members__.items(), key=lambda item: int(item[1]))
    names = [name for name, _ in host]
    names.extend(_KNOWN_SIGNALS)
    return tuple(dict.fromkeys(names))


def signal_number(sig: str | int) -> int:
    """Resolve a signal given by name (with or without the ``SIG`` prefix) or number.

    Unnamed signals, such as most real-time signals, are accepted in the ``SIG<number>`` form
    produced by `signal_name`.

    :raises ValueError: if the host does not define a signal of that name
    """
    if isinstance(sig, int):
        return int(sig)
    name = sig.upper()
    if not name.startswith("SIG"):
        name = f"SIG{name}"
    try:
        return int(signal.Signals.__members__[name])
    except KeyError:
        pass
    number = name[3:]
    if number.isdigit() and 0 < int(number) < signal.NSIG:
        return int(number)
    raise ValueError(f"Unknown signal: {sig!r}")


def signal_name(signum: int) -> str:
    """The name of a signal, ``SIG<number>`` for signals the host defines no name for."""
    try:
        return signal.Signals(signum).name
    except ValueError:
        return f"SIG{signum}"


def split_returncode(returncode: int) -> tuple[int | None, str | None]:
    """Convert a subprocess return code into an ``(code, signal)`` pair.

    A negative return code means the process was terminated by the signal ``-returncode``.
    """
    if returncode < 0:
        return None, signal_name(-returncode)
    return returncode, None
