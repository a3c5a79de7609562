from __future__ import annotations

import asyncio
import atexit
import os
import signal
import subprocess
import sys
import tempfile
import time
from typing import Any

import pytest
from foreground_child import ipc
from foreground_child.config import Settings
from foreground_child.foreground import (
    Disposition,
    ForegroundChild,
    HostProcess,
    ProcessInfo,
    _normalize_command,
    foreground_child,
    resolve_disposition,
    run_foreground_child,
)
from foreground_child.ipc import Channel
from foreground_child.process import CloseEvent
from foreground_child.signals import all_signals
from hypothesis import given
from hypothesis import strategies as st
from test_watchdog import wait_until_dead

SETTINGS = Settings(watchdog=False, keep_alive=0)


class RecordingHost(HostProcess):
    def __init__(self):
        self.exits: list[int] = []
        self.kills: list[str] = []

    def exit(self, code: int) -> None:  # type: ignore[override]
        self.exits.append(code)

    def kill(self, sig: str) -> None:
        self.kills.append(sig)


def run_in_process(
    command: list[str], host: RecordingHost, **kwargs: Any
) -> tuple[ForegroundChild, Disposition | None]:
    kwargs.setdefault("settings", SETTINGS)
    kwargs.setdefault("parent_channel", None)

    async def main():
        fg = ForegroundChild(command, host=host, **kwargs)
        await fg.start()
        return fg, await fg.finished

    return asyncio.run(main())


def run_scenario(*args: str, **kwargs: Any) -> subprocess.CompletedProcess[str]:
    return subprocess.run(
        [sys.executable, __file__, *args],
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        timeout=60,
        **kwargs,
    )


# Scenarios running as parent process


@pytest.mark.parametrize("code", [0, 3])
def test_parent_exits_with_child_code(code: int):
    assert run_scenario(exits_like_child.__name__, str(code)).returncode == code


def test_parent_killed_like_child():
    result = run_scenario(child_killed_by_sigint.__name__)
    assert result.returncode == -signal.SIGINT


def test_parent_killed_by_uncatchable_signal():
    result = run_scenario(child_killed_by_signal_number.__name__, str(int(signal.SIGKILL)))
    assert result.returncode == -signal.SIGKILL


@pytest.mark.skipif(not hasattr(signal, "SIGRTMIN"), reason="no real-time signals")
def test_parent_killed_by_unnamed_signal():
    signum = int(signal.SIGRTMIN) + 6
    result = run_scenario(child_killed_by_signal_number.__name__, str(signum))
    assert result.returncode == -signum


def test_unknown_signal_falls_back_to_sigterm():
    result = run_scenario(cleanup_chooses_unknown_signal.__name__)
    assert result.returncode == -signal.SIGTERM


def test_parent_survives_ignored_signal():
    result = run_scenario(cleanup_chooses_ignored_signal.__name__)
    assert result.returncode == 0
    assert result.stdout.splitlines() == [
        "survived: Disposition(code=None, signal='SIGWINCH')"
    ]


def test_delayed_cleanup():
    start = time.time()
    result = run_scenario(delayed_cleanup.__name__)
    assert result.returncode == 42
    assert time.time() - start >= 0.3


def test_cleanup_chooses_signal():
    assert run_scenario(cleanup_chooses_signal.__name__).returncode == -signal.SIGTERM


def test_cleanup_chooses_code_for_signalled_child():
    assert run_scenario(cleanup_chooses_code.__name__).returncode == 7


def test_cleanup_vetoes_exit():
    result = run_scenario(cleanup_vetoes_exit.__name__)
    assert result.returncode == 0
    assert result.stdout.splitlines() == ["still running: None"]


def test_failing_cleanup():
    result = run_scenario(failing_cleanup.__name__)
    assert result.returncode == 1
    assert "ValueError: cleanup failed" in result.stderr


def test_signals_reach_the_child():
    parent = subprocess.Popen(
        [sys.executable, __file__, forwards_signals.__name__],
        stdout=subprocess.PIPE,
        text=True,
    )
    assert parent.stdout is not None
    try:
        assert parent.stdout.readline() == "ready\n"
        time.sleep(0.2)
        parent.send_signal(signal.SIGTERM)
        out, _ = parent.communicate(timeout=30)
    finally:
        if parent.returncode is None:
            parent.kill()
            parent.communicate()

    assert out.splitlines() == ["got SIGTERM"]
    assert parent.returncode == 0


def test_child_hangup_on_parent_exit():
    with tempfile.TemporaryDirectory() as temp_dir:
        marker = os.path.join(temp_dir, "hangup")
        result = run_scenario(hangup_on_exit.__name__, marker)
        assert result.returncode == 0
        assert os.path.exists(marker)


def test_parent_killed_by_sigkill_takes_child_down():
    parent = subprocess.Popen(
        [sys.executable, __file__, sigkilled_parent.__name__],
        stdout=subprocess.PIPE,
        text=True,
    )
    assert parent.stdout is not None
    try:
        child_pid = int(parent.stdout.readline())
        assert parent.wait(timeout=30) == -signal.SIGKILL
        assert wait_until_dead(child_pid)
    finally:
        parent.stdout.close()
        if parent.returncode is None:
            parent.kill()
            parent.wait()


# In-process reconciliation


def test_exit_code_is_applied():
    host = RecordingHost()
    fg, result = run_in_process(["sh", "-c", "exit 3"], host)
    assert result == Disposition(code=3)
    assert host.exits == [3]
    assert host.kills == []
    assert fg.state == "terminal"


def test_signal_is_applied():
    host = RecordingHost()
    _, result = run_in_process(["sh", "-c", "kill -TERM $$"], host)
    assert result == Disposition(signal="SIGTERM")
    assert host.exits == []
    assert host.kills == ["SIGTERM"]


def test_failed_self_signal_falls_back_to_sigterm():
    class FailingHost(RecordingHost):
        def kill(self, sig: str) -> None:
            super().kill(sig)
            if len(self.kills) == 1:
                raise OSError("cannot send signal")

    host = FailingHost()
    _, result = run_in_process(["true"], host, cleanup=lambda code, sig, info: "SIGUSR2")
    assert result == Disposition(signal="SIGUSR2")
    assert host.kills == ["SIGUSR2", "SIGTERM"]
    assert host.exits == []


def test_cleanup_receives_child_disposition():
    calls: list[tuple[int | None, str | None, ProcessInfo]] = []

    def cleanup(code: int | None, sig: str | None, info: ProcessInfo) -> None:
        calls.append((code, sig, info))

    run_in_process(["sh", "-c", "kill -USR1 $$"], RecordingHost(), cleanup=cleanup)
    assert calls == [(None, "SIGUSR1", ProcessInfo(watchdog_pid=None))]


@pytest.mark.parametrize(
    "outcome, exits, kills",
    [
        (None, [0], []),
        (True, [0], []),
        (5, [5], []),
        ("SIGUSR1", [], ["SIGUSR1"]),
        (False, [], []),
    ],
)
def test_cleanup_outcome(outcome: Any, exits: list[int], kills: list[str]):
    host = RecordingHost()
    run_in_process(["true"], host, cleanup=lambda code, sig, info: outcome)
    assert host.exits == exits
    assert host.kills == kills


def test_async_cleanup():
    async def cleanup(code: int | None, sig: str | None, info: ProcessInfo) -> int:
        await asyncio.sleep(0.05)
        return (code or 0) + 1

    host = RecordingHost()
    _, result = run_in_process(["sh", "-c", "exit 2"], host, cleanup=cleanup)
    assert result == Disposition(code=3)
    assert host.exits == [3]


def test_cleanup_exception():
    host = RecordingHost()

    def cleanup(code: int | None, sig: str | None, info: ProcessInfo) -> None:
        raise ValueError("cleanup failed")

    with pytest.raises(ValueError, match="cleanup failed"):
        run_in_process(["true"], host, cleanup=cleanup)

    assert host.exits == []
    assert host.kills == []


def test_state_transitions():
    states: list[str] = []
    host = RecordingHost()

    async def main():
        fg = ForegroundChild(
            ["true"],
            host=host,
            settings=SETTINGS,
            parent_channel=None,
            cleanup=lambda code, sig, info: states.append(fg.state),
        )
        states.append(fg.state)
        child = await fg.start()
        states.append(fg.state)
        child.handle_events(CloseEvent, lambda event: states.append(fg.state))
        await fg.finished
        states.append(fg.state)

    asyncio.run(main())

    assert states == ["spawning", "running", "child_closed", "reconciling", "terminal"]


def test_close_is_handled_once():
    calls: list[int | None] = []
    host = RecordingHost()

    async def main():
        fg = ForegroundChild(
            ["true"],
            host=host,
            settings=SETTINGS,
            parent_channel=None,
            cleanup=lambda code, sig, info: calls.append(code),
        )
        child = await fg.start()
        await fg.finished

        child.emit(CloseEvent(1, None))
        await asyncio.sleep(0.05)

    asyncio.run(main())

    assert calls == [0]
    assert host.exits == [0]


def test_watchdog_pid_is_passed():
    infos: list[ProcessInfo] = []
    settings = Settings(watchdog=True, watchdog_interval=0.05, keep_alive=0)

    fg, _ = run_in_process(
        ["true"],
        RecordingHost(),
        settings=settings,
        cleanup=lambda code, sig, info: infos.append(info),
    )

    assert fg.watchdog_pid is not None
    assert infos == [ProcessInfo(watchdog_pid=fg.watchdog_pid)]
    # stopped and reaped during teardown
    with pytest.raises(ProcessLookupError):
        os.kill(fg.watchdog_pid, 0)


def test_signal_handlers_are_restored():
    watched = [signal.SIGUSR1, signal.SIGTERM, signal.SIGHUP, signal.SIGPIPE]
    before: dict[int, Any] = {}
    during: dict[int, Any] = {}

    def cleanup(code: int | None, sig: str | None, info: ProcessInfo) -> None:
        during.update((signum, signal.getsignal(signum)) for signum in watched)

    async def main():
        before.update((signum, signal.getsignal(signum)) for signum in watched)
        fg = ForegroundChild(
            ["sleep", "0.1"],
            host=RecordingHost(),
            settings=SETTINGS,
            parent_channel=None,
            cleanup=cleanup,
        )
        await fg.start()
        proxied = {signum: signal.getsignal(signum) for signum in watched}
        await fg.finished
        after = {signum: signal.getsignal(signum) for signum in watched}

        assert proxied != before
        assert after == before

    asyncio.run(main())

    # the proxy unsubscribes as soon as the child exits
    assert during == before


def test_message_relay():
    received: list[Any] = []
    user_messages: list[Any] = []

    async def main():
        ours, theirs = Channel.pair()
        grandparent = Channel(theirs)
        user_listener = user_messages.append
        ours.add_listener(user_listener)

        fg = ForegroundChild(
            [sys.executable, __file__, echo_child.__name__],
            host=RecordingHost(),
            settings=SETTINGS,
            parent_channel=ours,
        )
        child = await fg.start()
        assert child.has_channel
        assert ours.listeners != [user_listener]

        queue: asyncio.Queue[Any] = asyncio.Queue()
        grandparent.add_listener(queue.put_nowait)
        grandparent.send({"ping": 1})
        received.append(await asyncio.wait_for(queue.get(), 30))

        assert await fg.finished == Disposition(code=0)
        assert ours.listeners == [user_listener]

        ours.close()
        grandparent.close()

    asyncio.run(main())

    assert received == [{"echo": {"ping": 1}}]
    assert user_messages == []


def test_no_channel_without_parent_channel():
    async def main():
        fg = ForegroundChild(
            ["true"], host=RecordingHost(), settings=SETTINGS, parent_channel=None
        )
        child = await fg.start()
        assert not child.has_channel
        await fg.finished

    asyncio.run(main())


def test_run_foreground_child_exits():
    with pytest.raises(SystemExit) as exc_info:
        run_foreground_child("sh", ["-c", "exit 4"], settings=SETTINGS)
    assert exc_info.value.code == 4


def test_foreground_child_veto():
    async def main():
        fg = await foreground_child(
            ["sh", "-c", "exit 4"], settings=SETTINGS, cleanup=lambda code, sig, info: False
        )
        assert await fg.finished is None
        return fg

    fg = asyncio.run(main())
    assert fg.state == "terminal"


def test_command_normalization():
    assert _normalize_command("ls", ["-l", "/"]) == ["ls", "-l", "/"]
    assert _normalize_command(["ls", "-l"], ()) == ["ls", "-l"]
    assert _normalize_command("ls", ()) == ["ls"]
    with pytest.raises(ValueError):
        _normalize_command(["ls"], ["-l"])
    with pytest.raises(ValueError):
        ForegroundChild([], settings=SETTINGS, parent_channel=None)


def test_not_started():
    fg = ForegroundChild(["true"], settings=SETTINGS, parent_channel=None)
    assert fg.state == "spawning"
    assert fg.watchdog_pid is None
    with pytest.raises(RuntimeError):
        fg.child


# Disposition resolution

dispositions = st.one_of(
    st.builds(Disposition, code=st.integers(0, 255)),
    st.builds(Disposition, signal=st.sampled_from(all_signals())),
)


def test_disposition_code_or_signal():
    with pytest.raises(ValueError):
        Disposition(code=1, signal="SIGTERM")


@given(dispositions, st.sampled_from([None, True]))
def test_resolve_keeps_child_disposition(child: Disposition, outcome: Any):
    assert resolve_disposition(child, outcome) == child


@given(dispositions)
def test_resolve_veto(child: Disposition):
    assert resolve_disposition(child, False) is None


@given(dispositions, st.integers())
def test_resolve_code(child: Disposition, code: int):
    assert resolve_disposition(child, code) == Disposition(code=code)


@given(dispositions, st.sampled_from(all_signals()))
def test_resolve_signal(child: Disposition, name: str):
    assert resolve_disposition(child, name) == Disposition(signal=name)


# Scenario entry points


def exits_like_child(code: str):
    run_foreground_child(["sh", "-c", f"exit {code}"])


def child_killed_by_sigint():
    run_foreground_child(
        [
            sys.executable,
            "-c",
            "import os, signal\n"
            "signal.signal(signal.SIGINT, signal.SIG_DFL)\n"
            "os.kill(os.getpid(), signal.SIGINT)\n",
        ]
    )


def delayed_cleanup():
    async def cleanup(code: int | None, sig: str | None, info: ProcessInfo) -> int:
        await asyncio.sleep(0.3)
        return 42

    run_foreground_child("true", cleanup=cleanup)


def cleanup_chooses_signal():
    run_foreground_child("true", cleanup=lambda code, sig, info: "SIGTERM")


def cleanup_chooses_code():
    run_foreground_child("sh", ["-c", "kill -TERM $$"], cleanup=lambda code, sig, info: 7)


def cleanup_chooses_unknown_signal():
    run_foreground_child("true", cleanup=lambda code, sig, info: "SIGBOGUS")


def cleanup_chooses_ignored_signal():
    result = run_foreground_child(
        "true",
        cleanup=lambda code, sig, info: "SIGWINCH",
        settings=Settings(watchdog=False, keep_alive=0.2),
    )
    print(f"survived: {result}", flush=True)


def child_killed_by_signal_number(signum: str):
    run_foreground_child(
        [sys.executable, "-c", f"import os\nos.kill(os.getpid(), {int(signum)})\n"],
        settings=Settings(watchdog=False),
    )


def cleanup_vetoes_exit():
    result = run_foreground_child("sh", ["-c", "exit 3"], cleanup=lambda code, sig, info: False)
    print(f"still running: {result}", flush=True)


def failing_cleanup():
    def cleanup(code: int | None, sig: str | None, info: ProcessInfo) -> None:
        raise ValueError("cleanup failed")

    run_foreground_child("true", cleanup=cleanup)


def forwards_signals():
    run_foreground_child(
        [
            sys.executable,
            "-c",
            "import signal, sys, time\n"
            "def handler(signum, frame):\n"
            "    print('got', signal.Signals(signum).name, flush=True)\n"
            "    sys.exit(0)\n"
            "signal.signal(signal.SIGTERM, handler)\n"
            "print('ready', flush=True)\n"
            "time.sleep(30)\n",
        ]
    )


def hangup_on_exit(marker: str):
    ready = marker + ".ready"

    def wait_for_marker() -> None:
        for _ in range(200):
            if os.path.exists(marker):
                return
            time.sleep(0.05)

    # exit hooks run in reverse order, so this runs after the hangup was sent
    atexit.register(wait_for_marker)

    async def main():
        await foreground_child(
            [
                sys.executable,
                "-c",
                "import os, signal, sys, time\n"
                "def handler(signum, frame):\n"
                "    open(sys.argv[1], 'w').close()\n"
                "    sys.exit(0)\n"
                "signal.signal(signal.SIGHUP, handler)\n"
                "open(sys.argv[2], 'w').close()\n"
                "time.sleep(30)\n",
                marker,
                ready,
            ],
            settings=Settings(watchdog=False),
        )
        while not os.path.exists(ready):
            await asyncio.sleep(0.05)
        sys.exit(0)

    asyncio.run(main())


def sigkilled_parent():
    async def main():
        fg = await foreground_child(
            ["sleep", "30"], settings=Settings(watchdog=True, watchdog_interval=0.05)
        )
        print(fg.child.pid, flush=True)
        os.kill(os.getpid(), signal.SIGKILL)

    asyncio.run(main())


def echo_child():
    async def main():
        channel = ipc.parent_channel()
        assert channel is not None
        queue: asyncio.Queue[Any] = asyncio.Queue()
        channel.add_listener(queue.put_nowait)
        message = await queue.get()
        channel.send({"echo": message})
        channel.close()

    asyncio.run(main())


if __name__ == "__main__":
    if len(sys.argv) >= 2:
        globals()[sys.argv[1]](*sys.argv[2:])
