from .dsl import (
    artifact,
    build,
    command_probe,
    http_probe,
    matrix,
    scan,
    service,
    sh,
    stage,
    tcp_probe,
    wf,
    workflow,
    StageBuilder,
)
from .controller import PipelineController, run_pipeline
from .loader import load_pipeline
from .model import Job, Pipeline, Severity, Stage, Trigger

__all__ = [
    "artifact", "build", "command_probe", "http_probe", "matrix", "scan", "service", "sh",
    "stage", "tcp_probe", "wf", "workflow", "StageBuilder",
    "PipelineController", "run_pipeline", "load_pipeline",
    "Job", "Pipeline", "Severity", "Stage", "Trigger",
]
