# runner.py
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone

from .artifacts import ArtifactStore
from .errors import CIError, StageCancelled
from .executor import JobExecutor, JobResult
from .gate import GateEvaluator
from .model import FailureKind, Pipeline, Stage, StageResult, StageState, Trigger
from .secrets import SecretStore
from .services import ServiceDependencyManager

logger = logging.getLogger(__name__)


@dataclass
class RunContext:
    """Everything a stage needs to know about the run it belongs to."""
    run_id: str
    pipeline: Pipeline
    secrets: SecretStore = field(default_factory=SecretStore)
    trigger: Trigger = field(default_factory=Trigger)
    cancel_event: threading.Event = field(default_factory=threading.Event)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _kind_of(error: CIError) -> FailureKind:
    try:
        return FailureKind(error.kind)
    except ValueError:
        return FailureKind.INTERNAL_ERROR


class StageRunner:
    """
    Runs one stage start to finish, sequentially:

        services up -> readiness -> job -> services down -> gate -> artifacts

    Every failure is turned into a StageResult; nothing raised inside a stage
    crosses the stage boundary.
    """

    def __init__(
        self,
        artifacts: ArtifactStore,
        *,
        executor: JobExecutor | None = None,
        services: ServiceDependencyManager | None = None,
        gate: GateEvaluator | None = None,
    ):
        self.artifacts = artifacts
        self.executor = executor or JobExecutor(artifacts)
        self.services = services or ServiceDependencyManager()
        self.gate = gate or GateEvaluator()

    def __call__(self, stage: Stage, ctx: RunContext) -> StageResult:
        return self.run(stage, ctx)

    def run(self, stage: Stage, ctx: RunContext) -> StageResult:
        result = StageResult(stage_id=stage.id, state=StageState.RUNNING, started_at=_utcnow())
        try:
            self._run(stage, ctx, result)
        except StageCancelled as e:
            self._fail(result, FailureKind.CANCELLED, e.message)
        except CIError as e:
            self._fail(result, _kind_of(e), e.message)
        except Exception as e:
            logger.exception("[%s] unexpected error", stage.id)
            self._fail(result, FailureKind.INTERNAL_ERROR, f"{type(e).__name__}: {e}")
        finally:
            result.finished_at = _utcnow()
        logger.info("[%s] %s%s", stage.id, result.state.value, f" ({result.kind.value})" if result.kind else "")
        return result

    @staticmethod
    def _fail(result: StageResult, kind: FailureKind, message: str) -> None:
        result.state = StageState.FAILED
        result.kind = kind
        result.message = message

    def _run(self, stage: Stage, ctx: RunContext, result: StageResult) -> None:
        pipeline = ctx.pipeline
        job_result: JobResult

        # Teardown happens when this block exits: after the job terminates,
        # whatever its outcome.
        with self.services.running(
            stage, run_id=ctx.run_id, cancel_event=ctx.cancel_event, secrets=ctx.secrets
        ) as service_env:
            if ctx.cancel_event.is_set():
                raise StageCancelled(stage=stage.id)
            job_result = self.executor.execute(
                stage,
                run_id=ctx.run_id,
                timeout=pipeline.timeout_for(stage),
                secrets=ctx.secrets,
                trigger=ctx.trigger,
                service_env=service_env,
                cancel_event=ctx.cancel_event,
            )

        result.exit_code = job_result.exit_code
        result.stdout_tail = self.executor.tail(job_result.stdout)
        result.stderr_tail = self.executor.tail(job_result.stderr)

        if job_result.cancelled:
            self._fail(result, FailureKind.CANCELLED, "job terminated: run was cancelled")
            return
        if job_result.timed_out:
            self._fail(result, FailureKind.TIMEOUT, f"job exceeded its {pipeline.timeout_for(stage):g}s timeout")
            return

        decision = self.gate.evaluate(
            job_result.exit_code,
            job_result.report,
            pipeline.threshold_for(stage),
            report_expected=stage.job.report,
        )
        result.findings = list(decision.findings)
        result.blocking = list(decision.blocking)

        # Reports of rejected scans are retained too: they explain the failure.
        # Recorded one by one, so a DuplicateArtifact still leaves the ones
        # already stored visible on the result.
        result.artifacts = []
        _, missing = self.executor.publish(
            job_result, stage, run_id=ctx.run_id, secrets=ctx.secrets, on_stored=result.artifacts.append
        )

        if not decision.passed:
            message = decision.message
            if job_result.report_error:
                message = f"{message} ({job_result.report_error})"
            self._fail(result, decision.kind or FailureKind.JOB_CRASH, message)
            return
        if missing:
            self._fail(result, FailureKind.JOB_CRASH, f"declared output(s) not produced: {', '.join(missing)}")
            return

        result.state = StageState.PASSED
        result.message = decision.message
