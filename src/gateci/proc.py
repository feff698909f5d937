# proc.py
# Process helpers shared by the job executor and the service manager.

from __future__ import annotations

import os
import signal
import subprocess
from typing import Dict, Optional


def spawn(command: str, *, cwd: Optional[str] = None, env: Optional[Dict[str, str]] = None, capture: bool = True) -> subprocess.Popen:
    """
    Start a shell command in its own process group so the whole tree
    (shell + children) can be signalled at once.
    """
    return subprocess.Popen(
        command,
        shell=True,
        cwd=cwd,
        env=env,
        stdout=subprocess.PIPE if capture else subprocess.DEVNULL,
        stderr=subprocess.PIPE if capture else subprocess.DEVNULL,
        stdin=subprocess.DEVNULL,
        start_new_session=(os.name == "posix"),
    )


def _signal_group(proc: subprocess.Popen, sig: int) -> None:
    if os.name == "posix":
        try:
            os.killpg(proc.pid, sig)
        except ProcessLookupError:
            pass
    elif sig == signal.SIGTERM:
        proc.terminate()
    else:
        proc.kill()


def terminate(proc: subprocess.Popen, grace_period: float) -> None:
    """
    SIGTERM the process group, wait up to grace_period seconds for the
    leader, then SIGKILL whatever is left of the group. Returns once the
    process has been reaped.
    """
    if proc.poll() is None:
        _signal_group(proc, signal.SIGTERM)
        try:
            proc.wait(timeout=max(grace_period, 0.0))
        except subprocess.TimeoutExpired:
            pass
    # The shell may be gone while its children still hold the group (and
    # its output pipes).
    _signal_group(proc, getattr(signal, "SIGKILL", signal.SIGTERM))
    proc.wait()
