from __future__ import annotations

import itertools
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from relayci.cache import CacheStore
from relayci.errors import RelayError
from relayci.governor import ConcurrencyGovernor
from relayci.model import PipelineDefinition, RunReport
from relayci.report import aggregate
from relayci.runner import StepExecutor, execute
from relayci.triggers import should_run
from relayci.ui.console import get_console

# -------------------- Schemas --------------------

class TriggerRequest(BaseModel):
    event: str = "push"
    ref: str
    base_ref: Optional[str] = None
    sha: str = ""

class TriggerResponse(BaseModel):
    run_id: Optional[str]
    status: str  # queued|skipped

class RunResponse(BaseModel):
    run_id: str
    status: str  # queued|running|done|error
    verdict: Optional[str] = None
    error: Optional[str] = None
    report: Optional[Dict[str, Any]] = None

class GroupsResponse(BaseModel):
    groups: Dict[str, Optional[str]] = Field(default_factory=dict)

# -------------------- State --------------------

@dataclass
class RunRecord:
    run_id: str
    status: str = "queued"
    report: Optional[RunReport] = None
    error: Optional[str] = None


@dataclass
class ServerState:
    """Runs started by this process. Nothing outlives the process."""
    definition: PipelineDefinition
    root: Path
    cache: CacheStore
    workers: Optional[int] = None
    executor: Optional[StepExecutor] = None
    governor: ConcurrencyGovernor = field(default_factory=ConcurrencyGovernor)
    runs: Dict[str, RunRecord] = field(default_factory=dict)
    lock: threading.Lock = field(default_factory=threading.Lock)
    _seq: Any = field(default_factory=lambda: itertools.count(1))

    def next_run_id(self) -> str:
        # strictly increasing, so supersession order follows arrival order
        with self.lock:
            return f"run-{next(self._seq):06d}"


def _run_in_background(state: ServerState, record: RunRecord, req: TriggerRequest) -> None:
    def mark_running(_run_id: str) -> None:
        record.status = "running"

    try:
        record.report = execute(
            state.definition,
            event=req.event,
            ref=req.ref,
            base_ref=req.base_ref,
            sha=req.sha,
            run_id=record.run_id,
            governor=state.governor,
            cache=state.cache,
            root=state.root,
            workers=state.workers,
            executor=state.executor,
            on_admitted=mark_running,
        )
        record.status = "done"
    except RelayError as e:
        record.error = str(e)
        record.status = "error"
    except Exception as e:
        get_console().print_exception(e)
        record.error = f"{type(e).__name__}: {e}"
        record.status = "error"


def create_app(
    definition: PipelineDefinition,
    *,
    root: str | Path = ".",
    cache_dir: str | Path = ".relayci/cache",
    workers: Optional[int] = None,
    executor: Optional[StepExecutor] = None,
) -> FastAPI:
    state = ServerState(
        definition=definition,
        root=Path(root).resolve(),
        cache=CacheStore(cache_dir),
        workers=workers,
        executor=executor,
    )
    app = FastAPI(title="relayci trigger server")
    app.state.relayci = state

    # -------------------- Endpoints --------------------

    @app.post("/runs", response_model=TriggerResponse, status_code=202)
    def trigger(req: TriggerRequest):
        if not should_run(state.definition.triggers, req.event, req.ref, base_ref=req.base_ref):
            return TriggerResponse(run_id=None, status="skipped")

        record = RunRecord(run_id=state.next_run_id())
        with state.lock:
            state.runs[record.run_id] = record

        t = threading.Thread(
            target=_run_in_background,
            args=(state, record, req),
            name=f"relayci-{record.run_id}",
            daemon=True,
        )
        t.start()
        return TriggerResponse(run_id=record.run_id, status="queued")

    @app.get("/runs/{run_id}", response_model=RunResponse)
    def get_run(run_id: str):
        with state.lock:
            record = state.runs.get(run_id)
        if record is None:
            raise HTTPException(status_code=404, detail="Run not found")

        report = record.report
        return RunResponse(
            run_id=record.run_id,
            status=record.status,
            verdict=aggregate(report).value if report is not None else None,
            error=record.error,
            report=report.to_dict() if report is not None else None,
        )

    @app.get("/groups", response_model=GroupsResponse)
    def groups():
        return GroupsResponse(groups=state.governor.groups())

    return app
