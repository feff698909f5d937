# settings.py
from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Mapping, Optional


@dataclass(frozen=True)
class Settings:
    home: Path = Path(".gateci")
    artifact_dir: Path = Path(".gateci/artifacts")
    workspace_dir: Path = Path(".gateci/work")
    archive_url: str = "sqlite:///.gateci/runs.db"
    max_workers: Optional[int] = None
    grace_period: float = 5.0
    secret_prefix: str = ""

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        home = Path(env.get("GATECI_HOME", ".gateci"))
        workers = env.get("GATECI_MAX_WORKERS")
        return cls(
            home=home,
            artifact_dir=Path(env.get("GATECI_ARTIFACT_DIR", str(home / "artifacts"))),
            workspace_dir=Path(env.get("GATECI_WORKSPACE_DIR", str(home / "work"))),
            archive_url=env.get("GATECI_ARCHIVE_URL", f"sqlite:///{home / 'runs.db'}"),
            max_workers=int(workers) if workers else None,
            grace_period=float(env.get("GATECI_GRACE_PERIOD", "5.0")),
            secret_prefix=env.get("GATECI_SECRET_PREFIX", ""),
        )

    def with_overrides(self, **changes) -> "Settings":
        return replace(self, **{k: v for k, v in changes.items() if v is not None})

    def ensure_dirs(self) -> None:
        self.home.mkdir(parents=True, exist_ok=True)
        self.artifact_dir.mkdir(parents=True, exist_ok=True)
        self.workspace_dir.mkdir(parents=True, exist_ok=True)
