from . import config, exit_hook, ipc, logging, process, proxy, signals, watchdog
from .foreground import (
    Cleanup,
    CleanupResult,
    Disposition,
    ForegroundChild,
    HostProcess,
    ProcessInfo,
    foreground_child,
    resolve_disposition,
    run_foreground_child,
)

Settings = config.Settings

ChildProcess = process.ChildProcess
SpawnOptions = process.SpawnOptions
ProcessEvent = process.ProcessEvent
ExitEvent = process.ExitEvent
CloseEvent = process.CloseEvent
MessageEvent = process.MessageEvent
NoChannelError = process.NoChannelError
spawn = process.spawn

Channel = ipc.Channel
parent_channel = ipc.parent_channel

SignalProxy = proxy.SignalProxy
proxy_signals = proxy.proxy_signals

Watchdog = watchdog.Watchdog

all_signals = signals.all_signals

on_exit = exit_hook.on_exit

log = logging.log
log_debug = logging.log_debug
log_warning = logging.log_warning
log_error = logging.log_error
log_exception = logging.log_exception
start_logging = logging.start_logging
LogContext = logging.LogContext

__all__ = [
    "foreground_child",
    "run_foreground_child",
    "ForegroundChild",
    "Cleanup",
    "CleanupResult",
    "Disposition",
    "ProcessInfo",
    "HostProcess",
    "resolve_disposition",
    "Settings",
    "ChildProcess",
    "SpawnOptions",
    "ProcessEvent",
    "ExitEvent",
    "CloseEvent",
    "MessageEvent",
    "NoChannelError",
    "spawn",
    "Channel",
    "parent_channel",
    "SignalProxy",
    "proxy_signals",
    "Watchdog",
    "all_signals",
    "on_exit",
    "log",
    "log_debug",
    "log_warning",
    "log_error",
    "log_exception",
    "start_logging",
    "LogContext",
]
