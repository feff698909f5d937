from __future__ import annotations

import os
import threading
from typing import Any, Mapping, Optional

from fastapi import FastAPI, HTTPException, Response
from pydantic import BaseModel, Field

from gateci import artifacts as content_types
from gateci.controller import PipelineController, build_controller
from gateci.errors import ArtifactNotFound, DefinitionError, UnknownRun
from gateci.loader import pipeline_from_dict
from gateci.model import Trigger
from gateci.secrets import SecretStore
from gateci.settings import Settings

_MEDIA_TYPES = {
    content_types.REPORT_JSON: "application/json",
    content_types.JSON: "application/json",
    content_types.HTML: "text/html",
    content_types.LOG: "text/plain",
}

# -------------------- Schemas --------------------

class TriggerModel(BaseModel):
    revision: str | None = None
    ref: str | None = None
    actor: str | None = None
    extra: dict[str, str] = Field(default_factory=dict)

class CreateRunRequest(BaseModel):
    pipeline: dict[str, Any]
    trigger: TriggerModel = Field(default_factory=TriggerModel)
    wait: bool = False

class CreateRunResponse(BaseModel):
    run_id: str
    verdict: str

class CancelResponse(BaseModel):
    run_id: str
    cancelled: bool

class EvictResponse(BaseModel):
    run_id: str
    evicted: int

# -------------------- App --------------------

def create_app(
    controller: Optional[PipelineController] = None,
    *,
    settings: Optional[Settings] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> FastAPI:
    """
    HTTP surface over one PipelineController.

    Secrets are never accepted over the wire: declared secrets are bound from
    this process's environment (${GATECI_SECRET_PREFIX}NAME).
    """
    environ = os.environ if environ is None else environ
    settings = settings or Settings.from_env(environ)
    app = FastAPI(title="gateci")
    lock = threading.Lock()
    app.state.controller = controller

    def get_controller() -> PipelineController:
        # built on first use so importing the module has no side effects
        with lock:
            if app.state.controller is None:
                app.state.controller = build_controller(settings)
            return app.state.controller

    # -------------------- Endpoints --------------------

    @app.post("/runs", response_model=CreateRunResponse, status_code=201)
    def create_run(req: CreateRunRequest):
        ctl = get_controller()
        try:
            pipeline = pipeline_from_dict(req.pipeline)
            bindings = SecretStore.from_env(pipeline.secrets, environ, prefix=settings.secret_prefix)
            trigger = Trigger(**req.trigger.model_dump())
            run_id = ctl.start(pipeline, trigger, dict(bindings), wait=req.wait)
        except DefinitionError as e:
            raise HTTPException(status_code=422, detail={"message": e.message, "problems": e.problems})
        return CreateRunResponse(run_id=run_id, verdict=ctl.status(run_id).verdict.value)

    @app.get("/runs")
    def list_runs() -> list[dict[str, Any]]:
        return [s.to_dict() for s in get_controller().runs()]

    @app.get("/runs/{run_id}")
    def get_run(run_id: str) -> dict[str, Any]:
        try:
            return get_controller().status(run_id).to_dict()
        except UnknownRun as e:
            raise HTTPException(status_code=404, detail=e.message)

    @app.post("/runs/{run_id}/cancel", response_model=CancelResponse)
    def cancel_run(run_id: str):
        try:
            cancelled = get_controller().cancel(run_id)
        except UnknownRun as e:
            raise HTTPException(status_code=404, detail=e.message)
        return CancelResponse(run_id=run_id, cancelled=cancelled)

    @app.get("/runs/{run_id}/artifacts")
    def list_artifacts(run_id: str) -> list[dict[str, Any]]:
        return [a.to_dict() for a in get_controller().artifacts.list(run_id)]

    @app.get("/runs/{run_id}/artifacts/{stage_id}/{name}")
    def get_artifact(run_id: str, stage_id: str, name: str):
        store = get_controller().artifacts
        try:
            info = store.info(run_id, stage_id, name)
            data = store.get(run_id, stage_id, name)
        except ArtifactNotFound as e:
            raise HTTPException(status_code=404, detail=e.message)
        return Response(
            content=data,
            media_type=_MEDIA_TYPES.get(info.content_type, "application/octet-stream"),
            headers={"X-Gateci-Digest": info.digest},
        )

    @app.delete("/runs/{run_id}/artifacts", response_model=EvictResponse)
    def evict_artifacts(run_id: str):
        return EvictResponse(run_id=run_id, evicted=get_controller().artifacts.evict(run_id))

    return app


# uvicorn gateci.cloud.app:app
app = create_app()
