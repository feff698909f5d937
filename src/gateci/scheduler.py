# scheduler.py
from __future__ import annotations

import logging
import os
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from .dag import build_dag, downstream_of, topo_order
from .model import FailureKind, FailurePolicy, Pipeline, Stage, StageResult, StageState, Verdict

logger = logging.getLogger(__name__)

RunStage = Callable[[Stage], StageResult]


@dataclass
class ScheduleOutcome:
    results: Dict[str, StageResult]
    started: List[str] = field(default_factory=list)   # stage ids in start order
    cancelled: bool = False

    @property
    def verdict(self) -> Verdict:
        return aggregate_verdict(self.results.values(), cancelled=self.cancelled)


def aggregate_verdict(results, *, cancelled: bool = False) -> Verdict:
    if cancelled:
        return Verdict.CANCELLED
    if any(r.state == StageState.FAILED for r in results):
        return Verdict.FAILURE
    return Verdict.SUCCESS


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def default_workers() -> int:
    c = os.cpu_count() or 2
    return max(1, c - 1)


class Scheduler:
    """
    Runs a pipeline's stages in dependency order.

    - A stage starts only after every stage it needs is terminal.
    - Ready stages start in declaration order, at most `max_workers` at once.
    - failed + fail-fast: every not-yet-started transitive dependent is skipped.
    - failed + continue: direct dependents are skipped unless they tolerate
      dependency failure; unrelated stages keep running.
    - cancel_event: pending stages are skipped at once, in-flight stages are
      awaited (their runner sees the same event and stops its job).
    """

    def __init__(self, max_workers: int | None = None, *, poll_interval: float = 0.1):
        self.max_workers = max_workers if max_workers and max_workers > 0 else default_workers()
        self.poll_interval = poll_interval

    def run(
        self,
        pipeline: Pipeline,
        run_stage: RunStage,
        *,
        cancel_event: Optional[threading.Event] = None,
        on_update: Optional[Callable[[StageResult], None]] = None,
    ) -> ScheduleOutcome:
        stages = list(pipeline.stages)
        topo_order(stages)  # cycles / duplicates raise DefinitionError before anything runs
        adj, _indeg = build_dag(stages)
        by_id: Dict[str, Stage] = {s.id: s for s in stages}
        position = {s.id: i for i, s in enumerate(stages)}

        results: Dict[str, StageResult] = {s.id: StageResult(stage_id=s.id) for s in stages}
        outcome = ScheduleOutcome(results=results)
        cancel_event = cancel_event or threading.Event()

        def notify(result: StageResult) -> None:
            if on_update is not None:
                try:
                    on_update(result)
                except Exception:
                    logger.exception("status callback failed for stage %s", result.stage_id)

        def skip(stage_id: str, reason: str) -> None:
            r = results[stage_id]
            if r.state != StageState.PENDING:
                return
            r.state = StageState.SKIPPED
            r.message = reason
            r.finished_at = _utcnow()
            logger.info("[%s] skipped: %s", stage_id, reason)
            notify(r)

        def settle(stage_id: str, result: StageResult) -> None:
            results[stage_id] = result
            notify(result)
            if result.state != StageState.FAILED:
                return
            stage = by_id[stage_id]
            if stage.failure_policy == FailurePolicy.FAIL_FAST:
                for dep in sorted(downstream_of(adj, stage_id), key=position.__getitem__):
                    skip(dep, f"upstream stage '{stage_id}' failed (fail-fast)")

        def blocked_reason(stage: Stage) -> Optional[str]:
            """None if the stage may run, else why it must be skipped."""
            if stage.tolerate_dependency_failure:
                return None
            for need in stage.needs:
                state = results[need].state
                if state == StageState.FAILED:
                    return f"dependency '{need}' failed"
                if state == StageState.SKIPPED:
                    return f"dependency '{need}' was skipped"
            return None

        in_flight: Dict[Future, str] = {}

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="gateci-stage") as pool:
            while True:
                if cancel_event.is_set() and not outcome.cancelled:
                    outcome.cancelled = True
                    for s in stages:
                        skip(s.id, "run was cancelled")

                # Resolve pending stages whose dependencies are all terminal, in
                # declaration order; skips can unblock further stages, so loop.
                progressed = True
                while progressed and not outcome.cancelled:
                    progressed = False
                    for s in stages:
                        if results[s.id].state != StageState.PENDING:
                            continue
                        if not all(results[n].state.terminal for n in s.needs):
                            continue
                        reason = blocked_reason(s)
                        if reason is not None:
                            skip(s.id, reason)
                            progressed = True
                            continue
                        if len(in_flight) >= self.max_workers:
                            continue
                        started = StageResult(stage_id=s.id, state=StageState.RUNNING, started_at=_utcnow())
                        results[s.id] = started
                        outcome.started.append(s.id)
                        notify(started)
                        logger.info("[%s] started", s.id)
                        in_flight[pool.submit(run_stage, s)] = s.id

                if not in_flight:
                    break

                done, _ = wait(list(in_flight), timeout=self.poll_interval, return_when=FIRST_COMPLETED)
                for fut in sorted(done, key=lambda f: position[in_flight[f]]):
                    stage_id = in_flight.pop(fut)
                    try:
                        result = fut.result()
                    except Exception as e:
                        logger.exception("[%s] stage runner raised", stage_id)
                        result = StageResult(
                            stage_id=stage_id,
                            state=StageState.FAILED,
                            kind=FailureKind.INTERNAL_ERROR,
                            message=f"{type(e).__name__}: {e}",
                            started_at=results[stage_id].started_at,
                            finished_at=_utcnow(),
                        )
                    if not result.state.terminal:
                        result.state = StageState.FAILED
                        result.kind = result.kind or FailureKind.INTERNAL_ERROR
                        result.message = result.message or "stage runner returned a non-terminal state"
                    settle(stage_id, result)

            # Anything still pending is unreachable (only possible on cancel).
            for s in stages:
                skip(s.id, "run was cancelled" if outcome.cancelled else "not reachable")

        return outcome
