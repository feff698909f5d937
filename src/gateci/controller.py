# controller.py
from __future__ import annotations

import logging
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Mapping, Optional

from .archive import RunArchive
from .artifacts import ArtifactStore
from .dag import validate_pipeline
from .errors import UnknownRun
from .executor import JobExecutor
from .model import Pipeline, RunStatus, Stage, StageResult, Trigger, Verdict
from .runner import RunContext, StageRunner
from .scheduler import Scheduler, ScheduleOutcome, aggregate_verdict
from .secrets import SecretStore
from .services import DockerLauncher, ProcessLauncher, ServiceDependencyManager
from .settings import Settings

logger = logging.getLogger(__name__)


def new_run_id() -> str:
    return uuid.uuid4().hex


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Run:
    """One execution of a pipeline, from trigger to verdict."""
    run_id: str
    pipeline: Pipeline
    trigger: Trigger
    secrets: SecretStore
    results: Dict[str, StageResult]
    created_at: datetime = field(default_factory=_utcnow)
    finished_at: datetime | None = None
    verdict: Verdict = Verdict.RUNNING
    cancel_event: threading.Event = field(default_factory=threading.Event)
    done: threading.Event = field(default_factory=threading.Event)
    future: Future | None = None
    lock: threading.Lock = field(default_factory=threading.Lock)

    def snapshot(self) -> RunStatus:
        with self.lock:
            stages = [self.results[s.id] for s in self.pipeline.stages]
            return RunStatus(
                run_id=self.run_id,
                pipeline=self.pipeline.name,
                verdict=self.verdict,
                stages=list(stages),
                trigger=self.trigger,
                created_at=self.created_at,
                finished_at=self.finished_at,
            )


class PipelineController:
    """
    Top-level driver: validates a definition, creates a run, drives the
    scheduler and records the verdict.

    start() runs synchronously (wait=True) or on a background thread.
    Finished runs are archived and leave the live table; status() then
    answers from the archive.
    """

    def __init__(
        self,
        *,
        artifacts: ArtifactStore | None = None,
        stage_runner: Callable[[Stage, RunContext], StageResult] | None = None,
        archive: RunArchive | None = None,
        max_workers: int | None = None,
        max_concurrent_runs: int = 4,
        on_update: Callable[[str, StageResult], None] | None = None,
    ):
        self.artifacts = artifacts or ArtifactStore()
        self.stage_runner = stage_runner or StageRunner(self.artifacts)
        self.archive = archive or RunArchive()
        self.scheduler = Scheduler(max_workers=max_workers)
        self.on_update = on_update
        self._runs: Dict[str, Run] = {}
        self._lock = threading.Lock()
        self._pool = ThreadPoolExecutor(max_workers=max_concurrent_runs, thread_name_prefix="gateci-run")

    # ---- public API ----

    def validate(self, pipeline: Pipeline, secret_bindings: Optional[Mapping[str, str]] = None) -> List[str]:
        """Raise DefinitionError if the pipeline cannot run with these bindings."""
        names = None if secret_bindings is None else list(secret_bindings)
        return validate_pipeline(pipeline, names)

    def start(
        self,
        pipeline: Pipeline,
        trigger: Trigger | None = None,
        secret_bindings: Optional[Mapping[str, str]] = None,
        *,
        wait: bool = False,
        run_id: str | None = None,
    ) -> str:
        # Nothing is created, and no job starts, for an invalid definition.
        validate_pipeline(pipeline, list(secret_bindings or {}))

        run = Run(
            run_id=run_id or new_run_id(),
            pipeline=pipeline,
            trigger=trigger or Trigger(),
            secrets=SecretStore(
                {k: v for k, v in (secret_bindings or {}).items() if k in set(pipeline.secrets)}
            ),
            results={s.id: StageResult(stage_id=s.id) for s in pipeline.stages},
        )
        with self._lock:
            if run.run_id in self._runs:
                raise ValueError(f"run id already in use: {run.run_id}")
            self._runs[run.run_id] = run
        logger.info("run %s: pipeline %s, %d stage(s)", run.run_id, pipeline.name, len(pipeline.stages))

        if wait:
            self._execute(run)
        else:
            run.future = self._pool.submit(self._execute, run)
        return run.run_id

    def status(self, run_id: str) -> RunStatus:
        with self._lock:
            run = self._runs.get(run_id)
        if run is not None:
            return run.snapshot()
        archived = self.archive.get(run_id)
        if archived is None:
            raise UnknownRun(run_id)
        return archived

    def wait(self, run_id: str, timeout: float | None = None) -> RunStatus:
        with self._lock:
            run = self._runs.get(run_id)
        if run is not None and not run.done.wait(timeout):
            raise TimeoutError(f"run {run_id} still running after {timeout}s")
        return self.status(run_id)

    def cancel(self, run_id: str) -> bool:
        """
        Request cooperative cancellation. Returns False if the run already
        finished. In-flight jobs are terminated (grace period, then forced),
        pending stages are skipped.
        """
        with self._lock:
            run = self._runs.get(run_id)
        if run is None:
            if self.archive.get(run_id) is None:
                raise UnknownRun(run_id)
            return False
        if run.done.is_set():
            return False
        logger.info("run %s: cancellation requested", run_id)
        run.cancel_event.set()
        return True

    def runs(self) -> List[RunStatus]:
        """Live runs first, then archived ones."""
        with self._lock:
            live = list(self._runs.values())
        statuses = [r.snapshot() for r in live]
        seen = {s.run_id for s in statuses}
        statuses.extend(s for s in self.archive.list_runs() if s.run_id not in seen)
        return statuses

    def shutdown(self, *, cancel: bool = False) -> None:
        if cancel:
            with self._lock:
                live = list(self._runs.values())
            for run in live:
                run.cancel_event.set()
        self._pool.shutdown(wait=True)

    # ---- internals ----

    def _update(self, run: Run, result: StageResult) -> None:
        with run.lock:
            run.results[result.stage_id] = result
        if self.on_update is not None:
            self.on_update(run.run_id, result)

    def _execute(self, run: Run) -> None:
        ctx = RunContext(
            run_id=run.run_id,
            pipeline=run.pipeline,
            secrets=run.secrets,
            trigger=run.trigger,
            cancel_event=run.cancel_event,
        )
        outcome: ScheduleOutcome | None = None
        try:
            outcome = self.scheduler.run(
                run.pipeline,
                lambda stage: self.stage_runner(stage, ctx),
                cancel_event=run.cancel_event,
                on_update=lambda result: self._update(run, result),
            )
        except Exception:
            logger.exception("run %s: scheduler failed", run.run_id)
        finally:
            with run.lock:
                if outcome is not None:
                    run.results.update(outcome.results)
                    run.verdict = outcome.verdict
                else:
                    run.verdict = aggregate_verdict(run.results.values(), cancelled=run.cancel_event.is_set())
                    if run.verdict == Verdict.SUCCESS:
                        run.verdict = Verdict.FAILURE
                run.finished_at = _utcnow()
            self._finish(run)

    def _finish(self, run: Run) -> None:
        status = run.snapshot()
        try:
            self.archive.record(status)
        except Exception:
            # keep the run live so its status stays retrievable
            logger.exception("run %s: could not archive", run.run_id)
        else:
            with self._lock:
                self._runs.pop(run.run_id, None)
        finally:
            run.done.set()
        logger.info("run %s: %s", run.run_id, status.verdict.value)


# ----------------------------------------------------------------------
# Wiring
# ----------------------------------------------------------------------

def build_controller(
    settings: Settings | None = None,
    *,
    repo_root: str = ".",
    on_update: Callable[[str, StageResult], None] | None = None,
) -> PipelineController:
    """Assemble a controller from settings (CLI and HTTP API entry points)."""
    settings = settings or Settings.from_env()
    settings.ensure_dirs()
    artifacts = ArtifactStore(settings.artifact_dir)
    executor = JobExecutor(
        artifacts,
        workspace_root=settings.workspace_dir,
        repo_root=repo_root,
        grace_period=settings.grace_period,
    )
    services = ServiceDependencyManager(
        process_launcher=ProcessLauncher(grace_period=settings.grace_period),
        docker_launcher=DockerLauncher(grace_period=settings.grace_period),
    )
    return PipelineController(
        artifacts=artifacts,
        stage_runner=StageRunner(artifacts, executor=executor, services=services),
        archive=RunArchive(settings.archive_url),
        max_workers=settings.max_workers,
        on_update=on_update,
    )


def run_pipeline(
    pipeline: Pipeline,
    trigger: Trigger | None = None,
    secret_bindings: Optional[Mapping[str, str]] = None,
    *,
    settings: Settings | None = None,
    repo_root: str = ".",
    on_start: Callable[[str], None] | None = None,
) -> RunStatus:
    """
    Run a pipeline to completion in the calling thread and return its status.
    Raises DefinitionError before anything runs if the definition is invalid.
    """
    controller = build_controller(settings, repo_root=repo_root)
    run_id = new_run_id()
    if on_start is not None:
        on_start(run_id)
    try:
        controller.start(pipeline, trigger, secret_bindings, wait=True, run_id=run_id)
        return controller.status(run_id)
    finally:
        controller.shutdown()
