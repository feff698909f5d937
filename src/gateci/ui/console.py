"""Console output formatting utilities for gateci."""

from __future__ import annotations

import json
import sys
from typing import Any, Iterable, List, Optional

from ..model import ArtifactInfo, RunStatus, StageResult, StageState


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, max_findings: int = 10):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            max_findings: Blocking findings listed per failed stage
        """
        self.debug = debug
        self.max_findings = max_findings

    def print_header(self, title: str) -> None:
        """Print a section header."""
        print(f"\n{title}")
        print("-" * len(title))

    def print_run_started(
        self,
        run_id: str,
        pipeline: str,
        stage_count: int,
        revision: Optional[str] = None,
        ref: Optional[str] = None,
    ) -> None:
        """Print run start information."""
        print("\nRUN STARTED")
        print(f"Run ID: {run_id}")
        print(f"Pipeline: {pipeline}")
        if ref or revision:
            print(f"Revision: {ref or '-'} @ {(revision or '-')[:12]}")
        print(f"Stages: {stage_count}")
        print()

    def print_plan(self, levels: List[List[str]], needs: dict[str, Iterable[str]]) -> None:
        """Print stages grouped by the earliest wave they can start in."""
        self.print_header("PLAN")
        for i, level in enumerate(levels, start=1):
            print(f"  wave {i}:")
            for stage_id in level:
                deps = list(needs.get(stage_id, ()))
                suffix = f" (needs: {', '.join(deps)})" if deps else ""
                print(f"    {stage_id}{suffix}")

    def print_stage_update(self, result: StageResult) -> None:
        """Print a stage state transition (scheduler callback)."""
        if result.state == StageState.RUNNING:
            print(f"STAGE STARTED: {result.stage_id}")
        elif result.state == StageState.PASSED:
            duration = f" ({result.duration:.1f}s)" if result.duration is not None else ""
            print(f"STAGE PASSED: {result.stage_id}{duration}")
        elif result.state == StageState.SKIPPED:
            print(f"STAGE SKIPPED: {result.stage_id} ({result.message})")
        elif result.state == StageState.FAILED:
            self.print_stage_failure(result)

    def print_stage_failure(self, result: StageResult) -> None:
        kind = result.kind.value if result.kind else "failed"
        print(f"STAGE FAILED: {result.stage_id} [{kind}]")
        if result.exit_code is not None:
            print(f"Exit code: {result.exit_code}")
        if self.debug:
            print(f"Error details: {result.message}")
        else:
            # Show first line of error for non-debug mode
            error_line = result.message.split("\n")[0] if result.message else ""
            if error_line:
                print(f"Error: {error_line}")
        self.print_findings(result.blocking)
        if self.debug and result.stderr_tail:
            print("stderr (tail):")
            for line in result.stderr_tail.splitlines()[-20:]:
                print(f"  | {line}")

    def print_findings(self, findings: List[Any]) -> None:
        shown = findings[: self.max_findings]
        for f in shown:
            title = f" {f.title}" if f.title else ""
            print(f"  {f.severity.name:<8} {f.category} @ {f.location}{title}")
        if len(findings) > len(shown):
            print(f"  ... and {len(findings) - len(shown)} more")

    def print_results(self, status: RunStatus) -> None:
        """Print final results summary."""
        print("\n" + "=" * 40)
        print("RESULTS")
        print("=" * 40)
        for r in status.stages:
            state = r.state.value.upper()
            if r.state == StageState.PASSED:
                state = "SUCCESS"
            kind = f" ({r.kind.value})" if r.kind else ""
            print(f"  {r.stage_id}: {state}{kind}")
        print(f"\nVERDICT: {status.verdict.value.upper()}")

    def print_artifacts(self, infos: List[ArtifactInfo]) -> None:
        if not infos:
            print("No artifacts.")
            return
        for a in infos:
            print(f"  {a.stage_id}/{a.name}  {a.size}B  {a.content_type}  {a.digest[:12]}")

    def print_json(self, data: Any) -> None:
        print(json.dumps(data, indent=2, sort_keys=True))

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        print(f"\nERROR: {title}", file=sys.stderr)
        print(f"{message}", file=sys.stderr)
        if details:
            for detail in details:
                print(f"  {detail}", file=sys.stderr)
        if suggestion:
            print(f"\n{suggestion}", file=sys.stderr)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        print(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            print(f"[DEBUG] {message}", file=sys.stderr)


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
