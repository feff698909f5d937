# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List

from .model import FailureKind


@dataclass(eq=False)
class CIError(Exception):
    """
    Structured CI error with enough context for:
      - clean CLI output
      - the run status surface
      - debugging without full tracebacks
    """
    kind: str
    message: str
    stage: str | None = None
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        if self.stage:
            lines.append(f"stage={self.stage}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


class DefinitionError(CIError):
    """Invalid pipeline definition. Fatal: no run is created, no job starts."""

    def __init__(self, message: str, *, problems: List[str] | None = None, details: dict | None = None):
        super().__init__(FailureKind.DEFINITION_ERROR.value, message, None, details or {})
        self.problems = list(problems or [])

    def __str__(self) -> str:
        if not self.problems:
            return super().__str__()
        return "\n".join([f"{self.kind}: {self.message}", *(f"  - {p}" for p in self.problems)])


class ServiceUnavailable(CIError):
    def __init__(self, message: str, *, stage: str | None = None, details: dict | None = None):
        super().__init__(FailureKind.SERVICE_UNAVAILABLE.value, message, stage, details or {})


class JobCrash(CIError):
    def __init__(self, message: str, *, stage: str | None = None, details: dict | None = None):
        super().__init__(FailureKind.JOB_CRASH.value, message, stage, details or {})


class JobTimeout(CIError):
    def __init__(self, message: str, *, stage: str | None = None, details: dict | None = None):
        super().__init__(FailureKind.TIMEOUT.value, message, stage, details or {})


class GateRejected(CIError):
    def __init__(self, message: str, *, stage: str | None = None, details: dict | None = None):
        super().__init__(FailureKind.GATE_REJECTED.value, message, stage, details or {})


class DuplicateArtifact(CIError):
    def __init__(self, message: str, *, stage: str | None = None, details: dict | None = None):
        super().__init__(FailureKind.DUPLICATE_ARTIFACT.value, message, stage, details or {})


class StageCancelled(CIError):
    def __init__(self, message: str = "run was cancelled", *, stage: str | None = None, details: dict | None = None):
        super().__init__(FailureKind.CANCELLED.value, message, stage, details or {})


class ArtifactNotFound(CIError):
    def __init__(self, message: str, *, stage: str | None = None, details: dict | None = None):
        super().__init__("NotFound", message, stage, details or {})


class ReportError(CIError):
    """A scanner report could not be parsed. Treated as "no report"."""

    def __init__(self, message: str, *, stage: str | None = None, details: dict | None = None):
        super().__init__("ReportError", message, stage, details or {})


class UnknownRun(CIError):
    def __init__(self, run_id: str):
        super().__init__("UnknownRun", f"No run with id {run_id!r}", None, {"run_id": run_id})
