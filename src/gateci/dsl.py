# src/gateci/dsl.py
from __future__ import annotations

from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Union

from .model import (
    ArtifactRef,
    FailurePolicy,
    Job,
    Pipeline,
    ReadinessProbe,
    ServiceDependency,
    Severity,
    Stage,
)

RefLike = Union[ArtifactRef, str]
SeverityLike = Union[Severity, str, int]


def _refs(values: Iterable[RefLike]) -> tuple:
    return tuple(ArtifactRef.parse(v) for v in values)


def _env(env: Optional[Dict[str, Any]]) -> Dict[str, str]:
    # force values to str for env compatibility
    return {k: str(v) for k, v in (env or {}).items()}


def _severity(value: Optional[SeverityLike]) -> Optional[Severity]:
    return None if value is None else Severity.parse(value)


# ---------------------------------------------------------------------
# Job helpers
# ---------------------------------------------------------------------

def sh(
    command: str,
    *,
    cwd: str | None = None,
    env: Optional[Dict[str, Any]] = None,
    secrets: Sequence[str] = (),
    inputs: Sequence[RefLike] = (),
    outputs: Sequence[str] = (),
    report: bool = False,
    timeout: float | None = None,
) -> Job:
    """Create a shell job."""
    if not command or not command.strip():
        raise ValueError("sh() needs a non-empty command")
    return Job(
        command=command,
        cwd=cwd,
        secrets=tuple(secrets),
        inputs=_refs(inputs),
        outputs=tuple(outputs),
        report=report,
        env=_env(env),
        timeout=timeout,
    )


def scan(command: str, **kwargs: Any) -> Job:
    """A scanner job: same as sh(), but the job is expected to write a report."""
    kwargs["report"] = True
    return sh(command, **kwargs)


# ---------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------

def command_probe(command: str, *, interval: float = 1.0, retries: int = 30, timeout: float = 30.0) -> ReadinessProbe:
    return ReadinessProbe(kind="command", command=command, interval=interval, retries=retries, timeout=timeout)


def tcp_probe(
    port: int, *, host: str = "127.0.0.1", interval: float = 1.0, retries: int = 30, timeout: float = 30.0
) -> ReadinessProbe:
    return ReadinessProbe(kind="tcp", host=host, port=port, interval=interval, retries=retries, timeout=timeout)


def http_probe(url: str, *, interval: float = 1.0, retries: int = 30, timeout: float = 30.0) -> ReadinessProbe:
    return ReadinessProbe(kind="http", url=url, interval=interval, retries=retries, timeout=timeout)


def service(
    name: str,
    *,
    image: str | None = None,
    command: str | None = None,
    ports: Sequence[int] = (),
    env: Optional[Dict[str, Any]] = None,
    probe: ReadinessProbe | None = None,
) -> ServiceDependency:
    """
    A dependency started before a stage's job and torn down after it.

    image   -> run as a container (docker), command becomes the container command
    command -> run as a local process
    """
    return ServiceDependency(
        name=name,
        image=image,
        command=command,
        ports=tuple(int(p) for p in ports),
        env=_env(env),
        probe=probe,
    )


def artifact(stage_id: str, name: str) -> ArtifactRef:
    """Reference another stage's artifact: artifact("build", "image.tar")."""
    return ArtifactRef(stage=stage_id, name=name)


# ---------------------------------------------------------------------
# Functional Stage helper
# ---------------------------------------------------------------------

def stage(
    id: str,
    job: Union[Job, str],
    *,
    needs: Sequence[str] = (),
    services: Sequence[ServiceDependency] = (),
    policy: Union[FailurePolicy, str] = FailurePolicy.FAIL_FAST,
    threshold: Optional[SeverityLike] = None,
    tolerate_failures: bool = False,
) -> Stage:
    if isinstance(job, str):
        job = sh(job)
    return Stage(
        id=id,
        job=job,
        needs=tuple(needs),
        services=tuple(services),
        failure_policy=FailurePolicy(policy),
        threshold=_severity(threshold),
        tolerate_dependency_failure=tolerate_failures,
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class StageBuilder:
    def __init__(self, id: str):
        self.id = id
        self._command: Optional[str] = None
        self._cwd: Optional[str] = None
        self._needs: list[str] = []
        self._services: list[ServiceDependency] = []
        self._secrets: list[str] = []
        self._inputs: list[ArtifactRef] = []
        self._outputs: list[str] = []
        self._env: dict[str, str] = {}
        self._report = False
        self._timeout: Optional[float] = None
        self._policy = FailurePolicy.FAIL_FAST
        self._threshold: Optional[Severity] = None
        self._tolerate = False

    def run(self, command: str, cwd: str | None = None):
        self._command = command
        self._cwd = cwd
        return self

    def depends_on(self, *stage_ids: str):
        self._needs.extend(stage_ids)
        return self

    def with_service(self, svc: ServiceDependency):
        self._services.append(svc)
        return self

    def with_secrets(self, *names: str):
        self._secrets.extend(names)
        return self

    def with_env(self, **env):
        self._env.update(_env(env))
        return self

    def consumes(self, *refs: RefLike):
        self._inputs.extend(_refs(refs))
        return self

    def produces(self, *names: str):
        self._outputs.extend(names)
        return self

    def reports(self, enabled: bool = True):
        self._report = enabled
        return self

    def gate_at(self, threshold: SeverityLike):
        self._threshold = Severity.parse(threshold)
        return self

    def timeout(self, seconds: float):
        self._timeout = seconds
        return self

    def continue_on_failure(self):
        self._policy = FailurePolicy.CONTINUE
        return self

    def tolerate_failures(self, enabled: bool = True):
        self._tolerate = enabled
        return self

    def build(self) -> Stage:
        if not self._command:
            raise ValueError(f"Stage '{self.id}' has no command")
        return Stage(
            id=self.id,
            job=Job(
                command=self._command,
                cwd=self._cwd,
                secrets=tuple(self._secrets),
                inputs=tuple(self._inputs),
                outputs=tuple(self._outputs),
                report=self._report,
                env=dict(self._env),
                timeout=self._timeout,
            ),
            needs=tuple(self._needs),
            services=tuple(self._services),
            failure_policy=self._policy,
            threshold=self._threshold,
            tolerate_dependency_failure=self._tolerate,
        )


def build(id: str) -> StageBuilder:
    """Convenience: build('sast').run('semgrep ...').reports().gate_at('high').build()"""
    return StageBuilder(id)


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

class Matrix:
    """
    Minimal matrix expander.

    Example:
        matrix("target", ["api", "web"]).stages(
            lambda t: stage(f"scan-{t}", scan(f"trivy image {t}"))
        )
    """
    def __init__(self, key: str, values: Iterable[Any]):
        self.key = key
        self.values = list(values)

    def stages(self, builder: Callable[[Any], Stage]) -> List[Stage]:
        return [builder(v) for v in self.values]


def matrix(key: str, values: Iterable[Any]) -> Matrix:
    return Matrix(key, values)


# ---------------------------------------------------------------------
# Pipeline helper (single-file story)
# ---------------------------------------------------------------------

def wf(
    name: str,
    *stages: Union[Stage, Sequence[Stage]],
    secrets: Sequence[str] = (),
    default_threshold: SeverityLike = Severity.CRITICAL,
    default_timeout: float = 3600.0,
) -> Pipeline:
    """
    Pipeline definition helper. Use this name so you can define your own
    def pipeline(): return wf(...).

    Users can write:
        from gateci.dsl import wf, stage, sh, scan

        def pipeline():
            return wf(
                "security",
                stage("sast", scan("semgrep --json -o $GATECI_REPORT_PATH .")),
                stage("build", sh("make"), needs=["sast"]),
            )

    Or use PIPELINE directly:
        PIPELINE = wf("security", stage(...), stage(...))

    Lists (e.g. from matrix().stages()) are flattened in place.
    """
    flat: List[Stage] = []
    for item in stages:
        if isinstance(item, Stage):
            flat.append(item)
        else:
            flat.extend(item)
    return Pipeline(
        name=name,
        stages=tuple(flat),
        secrets=tuple(secrets),
        default_threshold=Severity.parse(default_threshold),
        default_timeout=default_timeout,
    )


workflow = wf  # alias (avoid naming your function workflow if you use it)
