from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import BackgroundTasks, FastAPI, HTTPException
from pydantic import BaseModel, Field

from ciforge.config import RunnerConfig
from ciforge.errors import WorkflowError
from ciforge.executor import now_utc
from ciforge.loader import jobs_from_dicts
from ciforge.model import EventType, RunContext, SkipPolicy
from ciforge.report import RunReport
from ciforge.runner import build_executor
from ciforge.scheduler import JobScheduler

from . import settings

# -------------------- Schemas --------------------

class CreateRunRequest(BaseModel):
    workflow: dict[str, Any]
    event: EventType = EventType.PUSH
    branch: str = "main"
    sha: str = ""
    env: dict[str, str] = Field(default_factory=dict)
    capacity: Optional[int] = Field(default=None, ge=1)
    fail_fast: Optional[bool] = None
    skip_policy: Optional[SkipPolicy] = None

class CreateRunResponse(BaseModel):
    run_id: str
    job_ids: list[str]

class RunResponse(BaseModel):
    run_id: str
    status: str  # queued|running|success|failure|cancelled
    created_at: datetime
    finished_at: Optional[datetime] = None
    jobs: dict[str, str]
    report: Optional[dict[str, Any]] = None
    error: Optional[str] = None

class CancelResponse(BaseModel):
    run_id: str
    status: str

# -------------------- Registry --------------------

@dataclass
class RunRecord:
    run_id: str
    scheduler: JobScheduler
    status: str = "queued"
    created_at: datetime = field(default_factory=now_utc)
    finished_at: Optional[datetime] = None
    report: Optional[RunReport] = None
    error: Optional[str] = None
    cancel_requested: bool = False

    @property
    def done(self) -> bool:
        return self.finished_at is not None


class RunRegistry:
    """In-memory run table; runs do not survive a restart."""

    def __init__(self, keep: int = settings.KEEP_RUNS):
        self.keep = keep
        self._lock = threading.Lock()
        self._runs: Dict[str, RunRecord] = {}

    def add(self, record: RunRecord) -> None:
        with self._lock:
            self._runs[record.run_id] = record
            finished = [r for r in self._runs.values() if r.done]
            excess = len(self._runs) - self.keep
            for old in sorted(finished, key=lambda r: r.created_at)[: max(0, excess)]:
                del self._runs[old.run_id]

    def get(self, run_id: str) -> RunRecord:
        with self._lock:
            record = self._runs.get(run_id)
        if record is None:
            raise HTTPException(status_code=404, detail="Run not found")
        return record

    def ids(self) -> List[str]:
        with self._lock:
            return list(self._runs)


def _execute_run(registry: RunRegistry, record: RunRecord) -> None:
    with registry._lock:
        if record.cancel_requested:
            record.status = "cancelled"
        else:
            record.status = "running"
    try:
        report = record.scheduler.run()
    except Exception as e:
        with registry._lock:
            record.error = f"{type(e).__name__}: {e}"
            record.status = "failure"
            record.finished_at = now_utc()
        return

    with registry._lock:
        record.report = report
        record.status = "cancelled" if record.cancel_requested else report.status.value
        record.finished_at = now_utc()


# -------------------- App --------------------

def create_app(workdir: Optional[str] = None, registry: Optional[RunRegistry] = None) -> FastAPI:
    app = FastAPI(title="ciforge control plane")
    app.state.registry = registry or RunRegistry()
    app.state.workdir = workdir or settings.WORKDIR

    @app.post("/runs", response_model=CreateRunResponse)
    def create_run(req: CreateRunRequest, background: BackgroundTasks):
        try:
            jobs = jobs_from_dicts(req.workflow)
        except WorkflowError as e:
            raise HTTPException(status_code=422, detail=str(e))

        capacity = min(req.capacity, settings.MAX_CAPACITY) if req.capacity else None
        config = RunnerConfig(capacity=settings.MAX_CAPACITY).with_overrides(
            capacity=capacity,
            fail_fast=req.fail_fast,
            skip_policy=req.skip_policy,
        )
        context = RunContext(event=req.event, branch=req.branch, sha=req.sha, env=req.env)

        try:
            scheduler = JobScheduler.from_jobs(
                jobs, context, build_executor(config, app.state.workdir), config
            )
        except WorkflowError as e:
            # cycles and missing needs are rejected before anything is queued
            raise HTTPException(status_code=400, detail=str(e))

        record = RunRecord(run_id=str(uuid.uuid4()), scheduler=scheduler)
        app.state.registry.add(record)
        background.add_task(_execute_run, app.state.registry, record)

        return CreateRunResponse(
            run_id=record.run_id,
            job_ids=[i.id for i in scheduler.graph.instances],
        )

    @app.get("/runs", response_model=list[str])
    def list_runs():
        return app.state.registry.ids()

    @app.get("/runs/{run_id}", response_model=RunResponse)
    def get_run(run_id: str):
        """Run status, per-job states and (once finished) the full report."""
        record = app.state.registry.get(run_id)
        report = record.report or record.scheduler.report()
        return RunResponse(
            run_id=record.run_id,
            status=record.status,
            created_at=record.created_at,
            finished_at=record.finished_at,
            jobs={k: v.value for k, v in record.scheduler.states().items()},
            report=report.to_dict(),
            error=record.error,
        )

    @app.post("/runs/{run_id}/cancel", response_model=CancelResponse)
    def cancel_run(run_id: str):
        record = app.state.registry.get(run_id)
        if record.done:
            raise HTTPException(status_code=409, detail=f"Run already {record.status}")
        record.cancel_requested = True
        record.scheduler.cancel("cancelled via API")
        return CancelResponse(run_id=run_id, status="cancelling")

    return app


app = create_app()
