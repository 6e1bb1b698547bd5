from __future__ import annotations

import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from .. import settings
from ..errors import ConfigurationError
from ..executor import ConcurrencyGroups, JobGraphExecutor
from ..jobs import Workflow, load_jobs
from ..model import EVENT_TYPES, TriggerEvent
from ..ui.console import get_console

ExecutorFactory = Callable[[ConcurrencyGroups, str], JobGraphExecutor]

# -------------------- Schemas --------------------

class TriggerRequest(BaseModel):
    type: str
    ref: str
    branch: Optional[str] = None
    labels: List[str] = Field(default_factory=list)


class TriggerResponse(BaseModel):
    run_id: str
    status: str


class RunResponse(BaseModel):
    id: str
    status: str  # queued|running|success|failure|error
    trigger: Dict[str, Any]
    created_at: datetime
    finished_at: Optional[datetime] = None
    verdict: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


class RunRecord:
    def __init__(self, run_id: str, event: TriggerEvent):
        self.id = run_id
        self.event = event
        self.status = "queued"
        self.created_at = now_utc()
        self.finished_at: Optional[datetime] = None
        self.verdict: Optional[Dict[str, Any]] = None
        self.error: Optional[str] = None

    def to_response(self) -> RunResponse:
        return RunResponse(
            id=self.id,
            status=self.status,
            trigger=self.event.to_dict(),
            created_at=self.created_at,
            finished_at=self.finished_at,
            verdict=self.verdict,
            error=self.error,
        )


def _default_executor(groups: ConcurrencyGroups, workflow: str) -> JobGraphExecutor:
    return JobGraphExecutor(groups=groups, workflow=workflow)


def create_app(
    workflow: Optional[Workflow] = None,
    *,
    executor_factory: ExecutorFactory = _default_executor,
    max_parallel_runs: int = 4,
    max_records: int = settings.MAX_RUN_RECORDS,
) -> FastAPI:
    """
    Build the trigger service.

    Every accepted trigger runs the job graph on a background thread. All
    runs share one ConcurrencyGroups, so a newer push to the same ref
    cancels the superseded run.

    Finished run records beyond `max_records` are dropped, oldest first.
    """
    if workflow is None:
        workflow = load_jobs(Path(settings.JOBS_FILE))

    app = FastAPI(title="plangate trigger service")
    groups = ConcurrencyGroups()
    pool = ThreadPoolExecutor(max_workers=max_parallel_runs, thread_name_prefix="plangate-run")
    runs: Dict[str, RunRecord] = {}
    lock = threading.Lock()

    app.state.workflow = workflow
    app.state.groups = groups
    app.state.runs = runs

    def prune() -> None:
        # caller holds the lock; dict order is creation order
        excess = len(runs) - max_records
        if excess <= 0:
            return
        for run_id in [r.id for r in runs.values() if r.finished_at is not None][:excess]:
            del runs[run_id]

    def execute(record: RunRecord) -> None:
        record.status = "running"
        status = "error"
        try:
            verdict = executor_factory(groups, workflow.name).execute(workflow.jobs, record.event)
        except ConfigurationError as e:
            record.error = str(e)
        except Exception as e:
            get_console().print_exception(e)
            record.error = f"{type(e).__name__}: {e}"
        else:
            record.verdict = verdict.to_dict()
            status = "success" if verdict.success else "failure"
        finally:
            # finished_at first, so a terminal status always has it
            record.finished_at = now_utc()
            record.status = status

    @app.on_event("shutdown")
    def shutdown() -> None:
        pool.shutdown(wait=True, cancel_futures=True)

    # -------------------- Endpoints --------------------

    @app.post("/triggers", response_model=TriggerResponse, status_code=202)
    def create_trigger(req: TriggerRequest):
        if req.type not in EVENT_TYPES:
            raise HTTPException(status_code=422, detail=f"type must be one of {list(EVENT_TYPES)}")
        event = TriggerEvent(type=req.type, ref=req.ref, branch=req.branch, labels=frozenset(req.labels))
        record = RunRecord(str(uuid.uuid4()), event)
        with lock:
            runs[record.id] = record
            prune()
        pool.submit(execute, record)
        return TriggerResponse(run_id=record.id, status=record.status)

    @app.get("/runs/{run_id}", response_model=RunResponse)
    def get_run(run_id: str):
        with lock:
            record = runs.get(run_id)
        if record is None:
            raise HTTPException(status_code=404, detail="Run not found")
        return record.to_response()

    @app.get("/runs", response_model=List[RunResponse])
    def list_runs():
        with lock:
            records = sorted(runs.values(), key=lambda r: r.created_at)
        return [r.to_response() for r in records]

    return app
