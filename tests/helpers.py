# helpers.py
# Shell commands for test jobs, built from the running interpreter so they
# behave the same on every machine.
from __future__ import annotations

import json
import shlex
import sys
import textwrap

from gateci.services import ServiceHandle


def py(code: str) -> str:
    """A shell command that runs `code` with the current Python."""
    return f"{shlex.quote(sys.executable)} -c {shlex.quote(textwrap.dedent(code))}"


def report_cmd(findings: list, exit_code: int = 0) -> str:
    """A scanner that writes `findings` to its report path and exits."""
    doc = json.dumps({"tool": "fake-scanner", "findings": findings})
    return py(
        f"""
        import os, sys
        with open(os.environ["GATECI_REPORT_PATH"], "w") as f:
            f.write({doc!r})
        sys.exit({exit_code})
        """
    )


def finding(severity: str, category: str = "sast", location: str = "app.py:1") -> dict:
    return {"severity": severity, "category": category, "location": location, "title": f"{severity} issue"}


class FakeLauncher:
    """Stands in for a service launcher; services stay 'alive' until stopped."""

    def __init__(self, alive=True):
        self.handles = []
        self.stopped = []
        self.environs = []
        self._alive = alive

    def launch(self, svc, *, run_id, stage_id, environ=None):
        self.environs.append(environ)
        handle = ServiceHandle(
            svc,
            stage_id,
            stop=lambda: self.stopped.append(svc.name),
            alive=lambda: self._alive,
        )
        self.handles.append(handle)
        return handle
