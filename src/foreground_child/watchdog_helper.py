from __future__ import annotations

import os
import signal
import time


def _alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # exists, but owned by someone else
        return True
    return True


def _parent_alive(parent_pid: int) -> bool:
    # Once the parent is gone this process is reparented, which also guards against the parent's
    # pid being reused by an unrelated process.
    if os.getppid() != parent_pid:
        return False
    return os.name != "posix" or _alive(parent_pid)


def watchdog_helper(
    parent_pid: int, child_pid: int, interval: float
) -> None:  # pragma: no cover (covered but not detected by coverage)
    """Terminate the child when the parent disappears before it.

    Polls the liveness of both processes every ``interval`` seconds. Returns without doing anything
    once the child is gone.
    """
    # Ctrl+C in a terminal is for the parent to handle and forward
    signal.signal(signal.SIGINT, signal.SIG_IGN)

    while _alive(child_pid):
        if not _parent_alive(parent_pid):
            try:
                os.kill(child_pid, signal.SIGTERM)
            except ProcessLookupError:
                pass
            return
        time.sleep(interval)


if __name__ == "__main__":  # pragma: no cover (covered but not detected by coverage)
    import sys

    assert len(sys.argv) == 4
    watchdog_helper(int(sys.argv[1]), int(sys.argv[2]), float(sys.argv[3]))
