from __future__ import annotations

import pytest

from gateci.archive import RunArchive
from gateci.artifacts import ArtifactStore
from gateci.controller import PipelineController
from gateci.executor import JobExecutor
from gateci.runner import StageRunner
from gateci.services import ProcessLauncher, ServiceDependencyManager


@pytest.fixture
def store(tmp_path):
    return ArtifactStore(tmp_path / "artifacts")


@pytest.fixture
def executor(store, tmp_path):
    return JobExecutor(
        store,
        workspace_root=tmp_path / "work",
        repo_root=tmp_path,
        grace_period=0.5,
        poll_interval=0.05,
    )


@pytest.fixture
def services():
    return ServiceDependencyManager(process_launcher=ProcessLauncher(grace_period=0.5))


@pytest.fixture
def stage_runner(store, executor, services):
    return StageRunner(store, executor=executor, services=services)


@pytest.fixture
def controller(store, stage_runner):
    ctl = PipelineController(
        artifacts=store,
        stage_runner=stage_runner,
        archive=RunArchive(),
        max_workers=4,
    )
    yield ctl
    ctl.shutdown(cancel=True)
