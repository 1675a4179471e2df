from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from .. import settings
from ..aggregate import PipelineStatus
from ..artifacts import transport_for
from ..errors import DefinitionError
from ..executor import ShellExecutor
from ..loader import parse_definition
from ..model import RunContext
from ..notify import LoggingNotifier
from ..scheduler import Scheduler

logger = logging.getLogger(__name__)

# -------------------- Schemas --------------------

class ContextIn(BaseModel):
    event: str = "push"
    ref: str = ""
    sha: str = ""
    head_ref: str = ""
    base_ref: str = ""
    actor: str = ""
    run_id: str | None = None
    changed_files: list[str] = Field(default_factory=list)
    variables: dict[str, str] = Field(default_factory=dict)

    def to_context(self) -> RunContext:
        extra = {"run_id": self.run_id} if self.run_id else {}
        return RunContext(
            event=self.event,
            ref=self.ref,
            sha=self.sha,
            head_ref=self.head_ref,
            base_ref=self.base_ref,
            actor=self.actor,
            changed_files=tuple(self.changed_files),
            variables=dict(self.variables),
            **extra,
        )

class CreateRunRequest(BaseModel):
    definition: str  # YAML document
    context: ContextIn = Field(default_factory=ContextIn)

class CreateRunResponse(BaseModel):
    run_id: str
    state: str
    triggered: bool
    jobs: list[str]

class JobState(BaseModel):
    name: str
    status: str
    reason: str | None = None
    error_type: str | None = None

class RunResponse(BaseModel):
    run_id: str
    pipeline: str
    state: str
    group: str | None = None
    jobs: dict[str, JobState]
    result: dict[str, Any] | None = None

class CheckResponse(BaseModel):
    run_id: str
    gate: str
    job: str
    status: str
    passed: bool

class CancelResponse(BaseModel):
    run_id: str
    cancelled: bool


def default_scheduler() -> Scheduler:
    return Scheduler(
        ShellExecutor(settings.WORKDIR),
        max_workers=settings.WORKERS,
        transport=transport_for(settings.ARTIFACT_DIR),
        notifier=LoggingNotifier(),
        default_timeout=settings.DEFAULT_TIMEOUT,
    )


def create_app(scheduler: Scheduler | None = None) -> FastAPI:
    app = FastAPI(title="relayci status API")
    sched = scheduler or default_scheduler()
    app.state.scheduler = sched

    @app.on_event("shutdown")
    async def shutdown() -> None:
        sched.shutdown(wait=False)

    def _run_or_404(run_id: str):
        run = sched.get(run_id)
        if run is None:
            raise HTTPException(status_code=404, detail="Run not found")
        return run

    # -------------------- Endpoints --------------------

    @app.get("/health")
    async def health():
        return {"ok": True, "workers": sched.max_workers}

    @app.post("/runs", response_model=CreateRunResponse)
    async def create_run(req: CreateRunRequest):
        try:
            definition = parse_definition(req.definition, source="api")
            run = sched.submit(definition, req.context.to_context())
        except DefinitionError as e:
            raise HTTPException(
                status_code=422,
                detail={"error": e.kind, "message": e.message, "job": e.job},
            )
        except ValueError as e:
            raise HTTPException(status_code=409, detail=str(e))

        logger.info("accepted run %s for %s", run.id, definition.name)
        triggered = run.result is None or run.result.status != PipelineStatus.NOT_TRIGGERED
        return CreateRunResponse(
            run_id=run.id, state=run.state.value, triggered=triggered, jobs=list(run.records)
        )

    @app.get("/runs/{run_id}", response_model=RunResponse)
    async def get_run(run_id: str):
        run = _run_or_404(run_id)
        snap = run.snapshot()
        return RunResponse(
            run_id=snap["run_id"],
            pipeline=snap["pipeline"],
            state=snap["state"],
            group=snap["group"],
            jobs={k: JobState(**v) for k, v in snap["jobs"].items()},
            result=run.result.to_dict() if run.result is not None else None,
        )

    @app.get("/runs/{run_id}/checks/{gate}", response_model=CheckResponse)
    async def get_check(run_id: str, gate: str):
        run = _run_or_404(run_id)
        if run.result is None:
            raise HTTPException(status_code=409, detail="Run still in progress")
        if run.result.status == PipelineStatus.NOT_TRIGGERED:
            raise HTTPException(status_code=404, detail="Pipeline was not triggered")
        try:
            check = run.result.check(gate)
        except KeyError:
            raise HTTPException(status_code=404, detail=f"Unknown gate: {gate}")
        return CheckResponse(
            run_id=run.id,
            gate=check.name,
            job=check.job,
            status=check.status.value,
            passed=check.passed,
        )

    @app.post("/runs/{run_id}/cancel", response_model=CancelResponse)
    async def cancel_run(run_id: str):
        _run_or_404(run_id)
        return CancelResponse(run_id=run_id, cancelled=sched.cancel(run_id))

    return app
