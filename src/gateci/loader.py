# loader.py
from __future__ import annotations

import json
import runpy
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import DefinitionError
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

# ----------------------------------------------------------------------
# Document schema (JSON / YAML)
# ----------------------------------------------------------------------


class _Strict(BaseModel):
    model_config = ConfigDict(extra="forbid")


class ProbeSpec(_Strict):
    kind: str
    command: Optional[str] = None
    host: str = "127.0.0.1"
    port: Optional[int] = None
    url: Optional[str] = None
    interval: float = 1.0
    retries: int = 30
    timeout: float = 30.0


class ServiceSpec(_Strict):
    name: str
    image: Optional[str] = None
    command: Optional[str] = None
    ports: List[int] = Field(default_factory=list)
    env: Dict[str, str] = Field(default_factory=dict)
    probe: Optional[ProbeSpec] = None


class JobSpec(_Strict):
    command: str
    cwd: Optional[str] = None
    secrets: List[str] = Field(default_factory=list)
    inputs: List[str] = Field(default_factory=list)   # "stage:name"
    outputs: List[str] = Field(default_factory=list)
    report: bool = False
    env: Dict[str, str] = Field(default_factory=dict)
    timeout: Optional[float] = None

    @field_validator("env", mode="before")
    @classmethod
    def _stringify_env(cls, value: Any) -> Any:
        # force values to str for env compatibility (YAML turns 5432 into an int)
        if isinstance(value, dict):
            return {str(k): str(v) for k, v in value.items()}
        return value


class StageSpec(_Strict):
    id: str
    job: JobSpec
    needs: List[str] = Field(default_factory=list)
    services: List[ServiceSpec] = Field(default_factory=list)
    failure_policy: FailurePolicy = FailurePolicy.FAIL_FAST
    threshold: Optional[str] = None
    tolerate_dependency_failure: bool = False


class PipelineSpec(_Strict):
    name: str
    stages: List[StageSpec]
    secrets: List[str] = Field(default_factory=list)
    default_threshold: str = "CRITICAL"
    default_timeout: float = 3600.0


def _severity(value: Optional[str], where: str) -> Optional[Severity]:
    if value is None:
        return None
    try:
        return Severity.parse(value)
    except ValueError as e:
        raise DefinitionError(f"{where}: {e}") from e


def _artifact_ref(value: str, where: str) -> ArtifactRef:
    try:
        return ArtifactRef.parse(value)
    except ValueError as e:
        raise DefinitionError(f"{where}: {e}") from e


def pipeline_from_dict(data: Dict[str, Any]) -> Pipeline:
    """Build a Pipeline from a parsed document. Schema problems raise DefinitionError."""
    try:
        spec = PipelineSpec.model_validate(data)
    except ValidationError as e:
        problems = [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
        raise DefinitionError("Pipeline document does not match the schema", problems=problems) from e

    stages: List[Stage] = []
    for s in spec.stages:
        where = f"stage '{s.id}'"
        services = tuple(
            ServiceDependency(
                name=svc.name,
                image=svc.image,
                command=svc.command,
                ports=tuple(svc.ports),
                env=dict(svc.env),
                probe=ReadinessProbe(**svc.probe.model_dump()) if svc.probe else None,
            )
            for svc in s.services
        )
        job = Job(
            command=s.job.command,
            cwd=s.job.cwd,
            secrets=tuple(s.job.secrets),
            inputs=tuple(_artifact_ref(ref, where) for ref in s.job.inputs),
            outputs=tuple(s.job.outputs),
            report=s.job.report,
            env=dict(s.job.env),
            timeout=s.job.timeout,
        )
        stages.append(
            Stage(
                id=s.id,
                job=job,
                needs=tuple(s.needs),
                services=services,
                failure_policy=s.failure_policy,
                threshold=_severity(s.threshold, where),
                tolerate_dependency_failure=s.tolerate_dependency_failure,
            )
        )

    return Pipeline(
        name=spec.name,
        stages=tuple(stages),
        secrets=tuple(spec.secrets),
        default_threshold=_severity(spec.default_threshold, "pipeline") or Severity.CRITICAL,
        default_timeout=spec.default_timeout,
    )


def pipeline_to_dict(pipeline: Pipeline) -> Dict[str, Any]:
    """Reverse of pipeline_from_dict (used to ship definitions over the API)."""
    stages = []
    for stage in pipeline.stages:
        job = stage.job
        job_dict: Dict[str, Any] = {
            "command": job.command,
            "secrets": list(job.secrets),
            "inputs": [str(ref) for ref in job.inputs],
            "outputs": list(job.outputs),
            "report": job.report,
            "env": dict(job.env),
        }
        if job.cwd is not None:
            job_dict["cwd"] = job.cwd
        if job.timeout is not None:
            job_dict["timeout"] = job.timeout

        services = []
        for svc in stage.services:
            svc_dict: Dict[str, Any] = {"name": svc.name, "ports": list(svc.ports), "env": dict(svc.env)}
            if svc.image is not None:
                svc_dict["image"] = svc.image
            if svc.command is not None:
                svc_dict["command"] = svc.command
            if svc.probe is not None:
                p = svc.probe
                svc_dict["probe"] = {
                    "kind": p.kind,
                    "command": p.command,
                    "host": p.host,
                    "port": p.port,
                    "url": p.url,
                    "interval": p.interval,
                    "retries": p.retries,
                    "timeout": p.timeout,
                }
            services.append(svc_dict)

        stage_dict: Dict[str, Any] = {
            "id": stage.id,
            "job": job_dict,
            "needs": list(stage.needs),
            "services": services,
            "failure_policy": stage.failure_policy.value,
            "tolerate_dependency_failure": stage.tolerate_dependency_failure,
        }
        if stage.threshold is not None:
            stage_dict["threshold"] = stage.threshold.name
        stages.append(stage_dict)

    return {
        "name": pipeline.name,
        "secrets": list(pipeline.secrets),
        "default_threshold": pipeline.default_threshold.name,
        "default_timeout": pipeline.default_timeout,
        "stages": stages,
    }


# ----------------------------------------------------------------------
# Files
# ----------------------------------------------------------------------

def _load_python(path: Path) -> Pipeline:
    """
    The file must define either:
      - pipeline() -> Pipeline
      - PIPELINE = Pipeline(...)
    """
    module_name = f"gateci_pipeline_{path.stem}"
    globals_dict = runpy.run_path(str(path), run_name=module_name)

    pipeline = None
    if "pipeline" in globals_dict and callable(globals_dict["pipeline"]):
        try:
            pipeline = globals_dict["pipeline"]()
        except TypeError as e:
            if "missing" in str(e) and "argument" in str(e):
                raise DefinitionError(
                    "pipeline() is being called without arguments (name collision with the DSL helper?). "
                    "Build the pipeline with the wf() helper: `def pipeline(): return wf(...)`"
                ) from e
            raise
    elif "PIPELINE" in globals_dict:
        pipeline = globals_dict["PIPELINE"]

    if not isinstance(pipeline, Pipeline):
        raise DefinitionError(
            f"{path.name} must define pipeline() -> Pipeline or PIPELINE = Pipeline(...)"
        )
    return pipeline


def load_pipeline(path: Union[str, Path]) -> Pipeline:
    """
    Load a pipeline definition from:
      - a Python file (.py) using gateci.dsl
      - a JSON document (.json)
      - a YAML document (.yml / .yaml)
    """
    p = Path(path).expanduser().resolve()
    if not p.exists():
        raise FileNotFoundError(f"Pipeline file not found: {p}")

    suffix = p.suffix.lower()
    if suffix == ".py":
        return _load_python(p)

    text = p.read_text(encoding="utf-8")
    try:
        if suffix == ".json":
            data = json.loads(text)
        elif suffix in (".yml", ".yaml"):
            data = yaml.safe_load(text)
        else:
            raise DefinitionError(f"Unsupported pipeline file type: {p.name} (use .py, .json, .yml or .yaml)")
    except (ValueError, yaml.YAMLError) as e:
        raise DefinitionError(f"Could not parse {p.name}: {e}") from e

    if not isinstance(data, dict):
        raise DefinitionError(f"{p.name} must contain a mapping at the top level")
    return pipeline_from_dict(data)
