from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Callable, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from .actions import ActionRegistry, default_registry
from .errors import CIError
from .loader import discover_workflows, load_workflow
from .model import TriggerEvent, Workflow, WorkflowResult
from .provision import LocalProvisioner, Provisioner
from .runner import run_workflow
from .secrets import EnvSecretProvider, SecretProvider
from .settings import WORKFLOW_DIR
from .triggers import select

logger = logging.getLogger(__name__)

# -------------------- Schemas --------------------

class EventRequest(BaseModel):
    event: str
    ref: str = "refs/heads/main"
    sha: str = ""
    action: str | None = None
    labels: list[str] = Field(default_factory=list)
    inputs: dict[str, str] = Field(default_factory=dict)

class JobSummary(BaseModel):
    status: str
    exit_code: int | None = None
    reason: str | None = None
    error: str | None = None
    outputs: dict[str, str] = Field(default_factory=dict)

class RunSummary(BaseModel):
    workflow: str
    source: str | None
    run_id: str
    status: str
    jobs: dict[str, JobSummary]

class EventResponse(BaseModel):
    event: str
    runs: list[RunSummary]
    errors: dict[str, str] = Field(default_factory=dict)

class WorkflowInfo(BaseModel):
    name: str
    source: str | None
    triggers: list[str]
    jobs: list[str]


def _summary(wf: Workflow, result: WorkflowResult) -> RunSummary:
    return RunSummary(
        workflow=result.workflow,
        source=wf.source,
        run_id=result.run_id,
        status=result.status.value,
        jobs={
            job_id: JobSummary(
                status=r.status.value,
                exit_code=r.exit_code,
                reason=r.reason,
                error=r.error,
                outputs=dict(r.outputs),
            )
            for job_id, r in result.jobs.items()
        },
    )


def create_app(
    workflow_dir: str | Path = WORKFLOW_DIR,
    *,
    provisioner_factory: Optional[Callable[[], Provisioner]] = None,
    secrets: Optional[SecretProvider] = None,
    actions: Optional[ActionRegistry] = None,
    max_workers: Optional[int] = None,
) -> FastAPI:
    """
    Build the trigger endpoint.

    POST /events matches the delivered event against every workflow in
    `workflow_dir` and runs the matching ones, one after another. Workflow
    files are re-read on each request so edits take effect without restart.
    """
    app = FastAPI(title="yamlci trigger endpoint")
    workflow_dir = Path(workflow_dir)
    provisioner_factory = provisioner_factory or LocalProvisioner
    secrets = secrets or EnvSecretProvider()
    actions = actions or default_registry(Path(".").resolve())

    def _load_all() -> tuple[list[Workflow], dict[str, str]]:
        loaded: list[Workflow] = []
        errors: dict[str, str] = {}
        for path in discover_workflows(workflow_dir):
            try:
                loaded.append(load_workflow(path))
            except CIError as e:
                logger.warning("skipping invalid workflow %s: %s", path, e.message)
                errors[str(path)] = str(e)
        return loaded, errors

    # -------------------- Endpoints --------------------

    @app.get("/health")
    def health() -> dict[str, Any]:
        return {"ok": True}

    @app.get("/workflows", response_model=list[WorkflowInfo])
    def list_workflows():
        loaded, _ = _load_all()
        return [
            WorkflowInfo(
                name=wf.name,
                source=wf.source,
                triggers=[t.event for t in wf.triggers],
                jobs=list(wf.job_ids),
            )
            for wf in loaded
        ]

    # plain def: FastAPI runs it in its threadpool, jobs block on subprocesses
    @app.post("/events", response_model=EventResponse)
    def deliver_event(req: EventRequest):
        if not workflow_dir.is_dir():
            raise HTTPException(status_code=404, detail=f"Workflow directory not found: {workflow_dir}")

        event = TriggerEvent(
            name=req.event,
            ref=req.ref,
            sha=req.sha,
            action=req.action,
            labels=tuple(req.labels),
            inputs=dict(req.inputs),
        )
        loaded, errors = _load_all()
        runs: list[RunSummary] = []
        for wf in select(loaded, event):
            logger.info("event %s (%s) triggers %s", event.name, event.ref, wf.name)
            result = run_workflow(
                wf,
                event,
                provisioner=provisioner_factory(),
                secrets=secrets,
                actions=actions,
                max_workers=max_workers,
            )
            runs.append(_summary(wf, result))

        return EventResponse(event=req.event, runs=runs, errors=errors)

    return app
