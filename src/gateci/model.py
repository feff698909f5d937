# model.py
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple


class Severity(enum.IntEnum):
    """Ordered finding severity. Comparisons follow the declaration order."""
    INFO = 0
    LOW = 1
    MEDIUM = 2
    HIGH = 3
    CRITICAL = 4

    @classmethod
    def parse(cls, value: "Severity | str | int") -> "Severity":
        if isinstance(value, Severity):
            return value
        if isinstance(value, int):
            return cls(value)
        key = str(value).strip().lower()
        if key in _SEVERITY_ALIASES:
            return _SEVERITY_ALIASES[key]
        try:
            return cls[key.upper()]
        except KeyError:
            raise ValueError(f"Unknown severity: {value!r}") from None


_SEVERITY_ALIASES = {
    "informational": Severity.INFO,
    "unknown": Severity.INFO,
    "none": Severity.INFO,
    "note": Severity.LOW,
    "moderate": Severity.MEDIUM,
    "warning": Severity.MEDIUM,
    "error": Severity.HIGH,
}


class FailurePolicy(str, enum.Enum):
    FAIL_FAST = "fail-fast"
    CONTINUE = "continue"


class StageState(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def terminal(self) -> bool:
        return self in (StageState.PASSED, StageState.FAILED, StageState.SKIPPED)


class Verdict(str, enum.Enum):
    RUNNING = "running"
    SUCCESS = "success"
    FAILURE = "failure"
    CANCELLED = "cancelled"


class FailureKind(str, enum.Enum):
    DEFINITION_ERROR = "DefinitionError"
    SERVICE_UNAVAILABLE = "ServiceUnavailable"
    JOB_CRASH = "JobCrash"
    TIMEOUT = "Timeout"
    GATE_REJECTED = "GateRejected"
    DUPLICATE_ARTIFACT = "DuplicateArtifact"
    CANCELLED = "Cancelled"
    INTERNAL_ERROR = "InternalError"


# ----------------------------------------------------------------------
# Definition types (immutable once loaded)
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class ReadinessProbe:
    """
    How to decide that a service is ready.

    kind:
      - "command": run `command`, ready on exit 0
      - "tcp":     connect to host:port
      - "http":    GET url, ready on status < 400
    """
    kind: str
    command: str | None = None
    host: str = "127.0.0.1"
    port: int | None = None
    url: str | None = None
    interval: float = 1.0
    retries: int = 30
    timeout: float = 30.0


@dataclass(frozen=True)
class ServiceDependency:
    """An ephemeral auxiliary process (database, cache) owned by one stage."""
    name: str
    image: str | None = None
    command: str | None = None
    ports: Tuple[int, ...] = ()
    env: Dict[str, str] = field(default_factory=dict)
    probe: ReadinessProbe | None = None


@dataclass(frozen=True)
class ArtifactRef:
    stage: str
    name: str

    @classmethod
    def parse(cls, value: "ArtifactRef | str") -> "ArtifactRef":
        if isinstance(value, ArtifactRef):
            return value
        stage, sep, name = str(value).partition(":")
        if not sep or not stage or not name:
            raise ValueError(f"Artifact reference must look like 'stage:name', got {value!r}")
        return cls(stage=stage, name=name)

    def __str__(self) -> str:
        return f"{self.stage}:{self.name}"


@dataclass(frozen=True)
class Job:
    """The executable unit of a stage: one shell command."""
    command: str
    cwd: str | None = None
    secrets: Tuple[str, ...] = ()
    inputs: Tuple[ArtifactRef, ...] = ()
    outputs: Tuple[str, ...] = ()
    report: bool = False               # scanner: expected to write a Report
    env: Dict[str, str] = field(default_factory=dict)
    timeout: float | None = None       # falls back to the pipeline default


@dataclass(frozen=True)
class Stage:
    id: str
    job: Job
    needs: Tuple[str, ...] = ()
    services: Tuple[ServiceDependency, ...] = ()
    failure_policy: FailurePolicy = FailurePolicy.FAIL_FAST
    threshold: Severity | None = None  # gate override
    tolerate_dependency_failure: bool = False


@dataclass(frozen=True)
class Pipeline:
    name: str
    stages: Tuple[Stage, ...]
    secrets: Tuple[str, ...] = ()
    default_threshold: Severity = Severity.CRITICAL
    default_timeout: float = 3600.0

    def stage(self, stage_id: str) -> Stage:
        for s in self.stages:
            if s.id == stage_id:
                return s
        raise KeyError(stage_id)

    @property
    def stage_ids(self) -> List[str]:
        return [s.id for s in self.stages]

    def threshold_for(self, stage: Stage) -> Severity:
        return stage.threshold if stage.threshold is not None else self.default_threshold

    def timeout_for(self, stage: Stage) -> float:
        return stage.job.timeout if stage.job.timeout is not None else self.default_timeout


@dataclass(frozen=True)
class Trigger:
    """Opaque event that started a run. Only forwarded to jobs via env."""
    revision: str | None = None
    ref: str | None = None
    actor: str | None = None
    extra: Dict[str, str] = field(default_factory=dict)

    def as_env(self) -> Dict[str, str]:
        env: Dict[str, str] = {}
        if self.revision:
            env["GATECI_REVISION"] = self.revision
        if self.ref:
            env["GATECI_REF"] = self.ref
        if self.actor:
            env["GATECI_ACTOR"] = self.actor
        for k, v in self.extra.items():
            env[f"GATECI_TRIGGER_{k.upper()}"] = str(v)
        return env

    def to_dict(self) -> Dict[str, Any]:
        return {"revision": self.revision, "ref": self.ref, "actor": self.actor, "extra": dict(self.extra)}


# ----------------------------------------------------------------------
# Reports
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class Finding:
    severity: Severity
    category: str
    location: str
    title: str = ""
    rule_id: str | None = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "severity": self.severity.name,
            "category": self.category,
            "location": self.location,
            "title": self.title,
            "rule_id": self.rule_id,
        }


@dataclass(frozen=True)
class Report:
    findings: Tuple[Finding, ...] = ()
    tool: str | None = None

    def max_severity(self) -> Optional[Severity]:
        if not self.findings:
            return None
        return max(f.severity for f in self.findings)

    def at_or_above(self, threshold: Severity) -> Tuple[Finding, ...]:
        return tuple(f for f in self.findings if f.severity >= threshold)


# ----------------------------------------------------------------------
# Run state
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class ArtifactInfo:
    run_id: str
    stage_id: str
    name: str
    digest: str
    size: int
    content_type: str
    created_at: str

    @property
    def key(self) -> str:
        return f"{self.run_id}/{self.stage_id}/{self.name}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "stage_id": self.stage_id,
            "name": self.name,
            "digest": self.digest,
            "size": self.size,
            "content_type": self.content_type,
            "created_at": self.created_at,
        }


@dataclass
class StageResult:
    stage_id: str
    state: StageState = StageState.PENDING
    kind: FailureKind | None = None
    message: str = ""
    exit_code: int | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    findings: List[Finding] = field(default_factory=list)
    blocking: List[Finding] = field(default_factory=list)
    artifacts: List[ArtifactInfo] = field(default_factory=list)
    stdout_tail: str = ""
    stderr_tail: str = ""

    @property
    def duration(self) -> float | None:
        if self.started_at is None or self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stage_id": self.stage_id,
            "state": self.state.value,
            "kind": self.kind.value if self.kind else None,
            "message": self.message,
            "exit_code": self.exit_code,
            "started_at": _iso(self.started_at),
            "finished_at": _iso(self.finished_at),
            "findings": [f.to_dict() for f in self.findings],
            "blocking": [f.to_dict() for f in self.blocking],
            "artifacts": [a.to_dict() for a in self.artifacts],
            "stdout_tail": self.stdout_tail,
            "stderr_tail": self.stderr_tail,
        }


@dataclass
class RunStatus:
    run_id: str
    pipeline: str
    verdict: Verdict
    stages: List[StageResult]
    trigger: Trigger = field(default_factory=Trigger)
    created_at: datetime | None = None
    finished_at: datetime | None = None

    def stage(self, stage_id: str) -> StageResult:
        for r in self.stages:
            if r.stage_id == stage_id:
                return r
        raise KeyError(stage_id)

    @property
    def states(self) -> Dict[str, StageState]:
        return {r.stage_id: r.state for r in self.stages}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "pipeline": self.pipeline,
            "verdict": self.verdict.value,
            "trigger": self.trigger.to_dict(),
            "created_at": _iso(self.created_at),
            "finished_at": _iso(self.finished_at),
            "stages": [r.to_dict() for r in self.stages],
        }


def _iso(ts: datetime | None) -> str | None:
    return ts.isoformat() if ts is not None else None
