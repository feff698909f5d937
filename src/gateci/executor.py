# executor.py
from __future__ import annotations

import logging
import os
import shutil
import subprocess
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Tuple

from .artifacts import LOG, REPORT_JSON, ArtifactStore, guess_content_type
from .dag import LOG_ARTIFACT, REPORT_ARTIFACT
from .errors import ArtifactNotFound, JobCrash, ReportError
from .gate import parse_report
from .model import ArtifactInfo, Report, Stage, Trigger
from .proc import spawn, terminate
from .secrets import SecretStore

logger = logging.getLogger(__name__)

DEFAULT_WORKSPACE_DIR = ".gateci/work"
REPORT_FILENAME = "report.json"


@dataclass
class JobResult:
    """What happened when a job's command ran. Output is already redacted."""
    stage_id: str
    command: str
    exit_code: int | None
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False
    cancelled: bool = False
    started_at: datetime | None = None
    finished_at: datetime | None = None
    report: Report | None = None
    report_bytes: bytes | None = None
    report_error: str | None = None
    out_dir: Path | None = None
    duration: float = 0.0

    @property
    def terminal(self) -> bool:
        """True when the job ran to completion on its own (success or failure)."""
        return not (self.timed_out or self.cancelled)


@dataclass
class Workspace:
    root: Path
    in_dir: Path
    out_dir: Path
    cwd: Path
    env: Dict[str, str] = field(default_factory=dict)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobExecutor:
    """
    Runs one job command:
      - declared secrets resolved into its environment (and nothing else)
      - declared input artifacts materialised under GATECI_INPUT_DIR
      - stdout/stderr captured, wall-clock timeout enforced
      - terminated (SIGTERM, then SIGKILL after the grace period) on
        timeout or cancellation

    It does not interpret what the command does.
    """

    def __init__(
        self,
        artifacts: ArtifactStore,
        *,
        workspace_root: str | Path = DEFAULT_WORKSPACE_DIR,
        repo_root: str | Path = ".",
        grace_period: float = 5.0,
        poll_interval: float = 0.1,
        tail_chars: int = 4000,
    ):
        self.artifacts = artifacts
        self.workspace_root = Path(workspace_root).resolve()
        self.repo_root = Path(repo_root).resolve()
        self.grace_period = grace_period
        self.poll_interval = poll_interval
        self.tail_chars = tail_chars

    # ---- setup ----

    def prepare(
        self,
        stage: Stage,
        *,
        run_id: str,
        secrets: SecretStore,
        trigger: Optional[Trigger] = None,
        service_env: Optional[Mapping[str, str]] = None,
    ) -> Workspace:
        job = stage.job
        root = self.workspace_root / run_id / stage.id
        if root.exists():
            shutil.rmtree(root)
        in_dir = root / "in"
        out_dir = root / "out"
        in_dir.mkdir(parents=True)
        out_dir.mkdir(parents=True)

        cwd = self.repo_root / (job.cwd or ".")
        if not cwd.is_dir():
            raise JobCrash(f"working directory not found: {cwd}", stage=stage.id)

        for ref in job.inputs:
            dest = in_dir / ref.stage / ref.name
            try:
                self.artifacts.materialize(run_id, ref.stage, ref.name, dest)
            except ArtifactNotFound as e:
                raise JobCrash(f"input artifact '{ref}' is not available", stage=stage.id, details=e.details) from e

        # The host environment minus every variable a secret was bound from.
        env = secrets.scrub(os.environ)
        env.update(job.env)
        env.update((trigger or Trigger()).as_env())
        env.update(service_env or {})
        env.update(
            {
                "CI": "true",
                "GATECI_RUN_ID": run_id,
                "GATECI_STAGE_ID": stage.id,
                "GATECI_INPUT_DIR": str(in_dir),
                "GATECI_OUTPUT_DIR": str(out_dir),
                "GATECI_REPORT_PATH": str(out_dir / REPORT_FILENAME),
            }
        )
        # Only what the job declared; validation guarantees the names are bound.
        env.update(secrets.scoped(job.secrets))

        return Workspace(root=root, in_dir=in_dir, out_dir=out_dir, cwd=cwd, env=env)

    # ---- run ----

    def execute(
        self,
        stage: Stage,
        *,
        run_id: str,
        timeout: float,
        secrets: Optional[SecretStore] = None,
        trigger: Optional[Trigger] = None,
        service_env: Optional[Mapping[str, str]] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> JobResult:
        secrets = secrets or SecretStore()
        job = stage.job
        ws = self.prepare(stage, run_id=run_id, secrets=secrets, trigger=trigger, service_env=service_env)

        logger.info("[%s] ▶ %s", stage.id, secrets.redact(job.command))
        started_at = _utcnow()
        t0 = time.monotonic()
        deadline = t0 + timeout
        timed_out = cancelled = False

        try:
            proc = spawn(job.command, cwd=str(ws.cwd), env=ws.env)
        except OSError as e:
            raise JobCrash(f"could not start job: {e}", stage=stage.id) from e

        while True:
            try:
                out, err = proc.communicate(timeout=self.poll_interval)
                break
            except subprocess.TimeoutExpired:
                if cancel_event is not None and cancel_event.is_set():
                    cancelled = True
                elif time.monotonic() >= deadline:
                    timed_out = True
                else:
                    continue
                logger.warning(
                    "[%s] %s, terminating job (grace %.1fs)",
                    stage.id,
                    "cancelled" if cancelled else f"timed out after {timeout}s",
                    self.grace_period,
                )
                terminate(proc, self.grace_period)
                out, err = proc.communicate()
                break

        result = JobResult(
            stage_id=stage.id,
            command=secrets.redact(job.command),
            exit_code=proc.returncode,
            stdout=secrets.redact((out or b"").decode("utf-8", errors="replace")),
            stderr=secrets.redact((err or b"").decode("utf-8", errors="replace")),
            timed_out=timed_out,
            cancelled=cancelled,
            started_at=started_at,
            finished_at=_utcnow(),
            out_dir=ws.out_dir,
            duration=time.monotonic() - t0,
        )

        # Partial output of a killed scanner cannot be trusted: only read the
        # report of a job that finished on its own.
        if result.terminal:
            report_path = ws.out_dir / REPORT_FILENAME
            if report_path.is_file():
                result.report_bytes = secrets.redact_bytes(report_path.read_bytes())
                try:
                    result.report = parse_report(result.report_bytes)
                except ReportError as e:
                    result.report_error = e.message
                    logger.warning("[%s] unparseable report: %s", stage.id, e.message)

        logger.info("[%s] exit=%s in %.2fs", stage.id, result.exit_code, result.duration)
        return result

    def tail(self, text: str) -> str:
        return text[-self.tail_chars:] if self.tail_chars else ""

    # ---- artifacts ----

    def publish(
        self,
        result: JobResult,
        stage: Stage,
        *,
        run_id: str,
        secrets: Optional[SecretStore] = None,
        on_stored: Optional[Callable[[ArtifactInfo], None]] = None,
    ) -> Tuple[List[ArtifactInfo], List[str]]:
        """
        Register the job's artifacts. Returns (stored, missing_outputs).

        Nothing is stored for a job that timed out or was cancelled.
        DuplicateArtifact propagates to the caller; `on_stored` has by then
        seen every artifact stored before the conflict.
        """
        if not result.terminal:
            logger.info("[%s] discarding artifacts of an interrupted job", stage.id)
            return [], []

        secrets = secrets or SecretStore()
        stored: List[ArtifactInfo] = []
        missing: List[str] = []

        def put(name: str, content: bytes, content_type: str) -> None:
            info = self.artifacts.put(run_id, stage.id, name, content, content_type)
            stored.append(info)
            if on_stored is not None:
                on_stored(info)

        if result.report_bytes is not None:
            put(REPORT_ARTIFACT, result.report_bytes, REPORT_JSON)

        for name in stage.job.outputs:
            path = (result.out_dir or Path(".")) / name
            if not path.is_file():
                missing.append(name)
                continue
            put(name, secrets.redact_bytes(path.read_bytes()), guess_content_type(name))

        log = "\n".join(
            [
                f"$ {result.command}",
                f"exit code: {result.exit_code}",
                "--- stdout ---",
                result.stdout,
                "--- stderr ---",
                result.stderr,
            ]
        )
        put(LOG_ARTIFACT, log.encode("utf-8"), LOG)
        return stored, missing
