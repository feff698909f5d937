# archive.py
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

import sqlalchemy as sa
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, relationship, sessionmaker
from sqlalchemy.pool import StaticPool

from .model import (
    ArtifactInfo,
    FailureKind,
    Finding,
    RunStatus,
    Severity,
    StageResult,
    StageState,
    Trigger,
    Verdict,
)

DEFAULT_ARCHIVE_URL = "sqlite://"


class Base(DeclarativeBase):
    pass


class RunRecord(Base):
    __tablename__ = "runs"
    id: Mapped[str] = mapped_column(sa.String(64), primary_key=True)
    pipeline: Mapped[str] = mapped_column(sa.Text, nullable=False)
    verdict: Mapped[str] = mapped_column(sa.String(16), nullable=False)
    trigger_json: Mapped[dict] = mapped_column(sa.JSON, nullable=False, default=dict)
    created_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    finished_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True), nullable=True)

    stages: Mapped[List["StageRecord"]] = relationship(
        back_populates="run",
        cascade="all, delete-orphan",
        order_by="StageRecord.position",
    )


class StageRecord(Base):
    __tablename__ = "stage_results"
    run_id: Mapped[str] = mapped_column(sa.String(64), sa.ForeignKey("runs.id", ondelete="CASCADE"), primary_key=True)
    stage_id: Mapped[str] = mapped_column(sa.Text, primary_key=True)
    position: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    state: Mapped[str] = mapped_column(sa.String(16), nullable=False)
    kind: Mapped[Optional[str]] = mapped_column(sa.String(32), nullable=True)
    message: Mapped[str] = mapped_column(sa.Text, nullable=False, default="")
    exit_code: Mapped[Optional[int]] = mapped_column(sa.Integer, nullable=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    finished_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    # findings, blocking findings, artifact infos, output tails
    detail_json: Mapped[dict] = mapped_column(sa.JSON, nullable=False, default=dict)

    run: Mapped[RunRecord] = relationship(back_populates="stages")


def _finding(d: Dict[str, Any]) -> Finding:
    return Finding(
        severity=Severity[d["severity"]],
        category=d["category"],
        location=d["location"],
        title=d.get("title", ""),
        rule_id=d.get("rule_id"),
    )


class RunArchive:
    """
    Durable record of finished runs: verdict plus per-stage detail, enough
    to diagnose a failed run without re-running it.
    """

    def __init__(self, url: str = DEFAULT_ARCHIVE_URL):
        kwargs: Dict[str, Any] = {}
        if url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
            if url in ("sqlite://", "sqlite:///:memory:"):
                # one shared connection, otherwise every session sees an empty db
                kwargs["poolclass"] = StaticPool
        self.engine = sa.create_engine(url, **kwargs)
        Base.metadata.create_all(self.engine)
        self._sessions = sessionmaker(self.engine, expire_on_commit=False)

    def record(self, status: RunStatus) -> None:
        with self._sessions() as s, s.begin():
            existing = s.get(RunRecord, status.run_id)
            if existing is not None:
                s.delete(existing)
                s.flush()
            run = RunRecord(
                id=status.run_id,
                pipeline=status.pipeline,
                verdict=status.verdict.value,
                trigger_json=status.trigger.to_dict(),
                created_at=status.created_at,
                finished_at=status.finished_at,
            )
            for i, r in enumerate(status.stages):
                d = r.to_dict()
                run.stages.append(
                    StageRecord(
                        stage_id=r.stage_id,
                        position=i,
                        state=r.state.value,
                        kind=r.kind.value if r.kind else None,
                        message=r.message,
                        exit_code=r.exit_code,
                        started_at=r.started_at,
                        finished_at=r.finished_at,
                        detail_json={
                            "findings": d["findings"],
                            "blocking": d["blocking"],
                            "artifacts": d["artifacts"],
                            "stdout_tail": r.stdout_tail,
                            "stderr_tail": r.stderr_tail,
                        },
                    )
                )
            s.add(run)

    def get(self, run_id: str) -> Optional[RunStatus]:
        with self._sessions() as s:
            run = s.get(RunRecord, run_id)
            if run is None:
                return None
            return self._to_status(run)

    def list_runs(self, limit: int = 50) -> List[RunStatus]:
        with self._sessions() as s:
            q = sa.select(RunRecord).order_by(RunRecord.created_at.desc()).limit(limit)
            return [self._to_status(run) for run in s.scalars(q)]

    def delete(self, run_id: str) -> bool:
        with self._sessions() as s, s.begin():
            run = s.get(RunRecord, run_id)
            if run is None:
                return False
            s.delete(run)
            return True

    @staticmethod
    def _to_status(run: RunRecord) -> RunStatus:
        stages: List[StageResult] = []
        for rec in run.stages:
            detail = rec.detail_json or {}
            stages.append(
                StageResult(
                    stage_id=rec.stage_id,
                    state=StageState(rec.state),
                    kind=FailureKind(rec.kind) if rec.kind else None,
                    message=rec.message,
                    exit_code=rec.exit_code,
                    started_at=rec.started_at,
                    finished_at=rec.finished_at,
                    findings=[_finding(f) for f in detail.get("findings", [])],
                    blocking=[_finding(f) for f in detail.get("blocking", [])],
                    artifacts=[ArtifactInfo(**a) for a in detail.get("artifacts", [])],
                    stdout_tail=detail.get("stdout_tail", ""),
                    stderr_tail=detail.get("stderr_tail", ""),
                )
            )
        trigger = run.trigger_json or {}
        return RunStatus(
            run_id=run.id,
            pipeline=run.pipeline,
            verdict=Verdict(run.verdict),
            stages=stages,
            trigger=Trigger(
                revision=trigger.get("revision"),
                ref=trigger.get("ref"),
                actor=trigger.get("actor"),
                extra=trigger.get("extra") or {},
            ),
            created_at=run.created_at,
            finished_at=run.finished_at,
        )
