"""
Workflow API endpoints.

Thin HTTP wrappers over the vault files. Long-running work (generation, edits,
runs) is never done inline: the endpoints write a queue file and return its
id, and clients poll the matching result endpoint while the engine poller
works through the queue.
"""

import logging
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, HTTPException, Query, Request

from spark_engine.models.queue import ChatMessage, WorkflowEditRequest, WorkflowGenerateRequest, WorkflowQueueItem
from spark_engine.models.workflow import CamelModel
from spark_engine.services.workflow_layout import layout_workflow
from spark_engine.services.workflow_storage import (
    WORKFLOW_EDIT_QUEUE_DIR,
    WORKFLOW_EDIT_RESULTS_DIR,
    WORKFLOW_GENERATE_QUEUE_DIR,
    WORKFLOW_GENERATE_RESULTS_DIR,
    WORKFLOW_QUEUE_DIR,
    list_runs,
    list_workflows,
    load_run,
    load_runs_index,
    load_workflow,
    read_json,
    save_workflow,
    write_json,
)
from spark_engine.services.workflow_validator import ValidationErr, generate_id, validate_workflow_definition

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/workflows")

RECENT_RUNS_FOR_EDIT = 5


class WorkflowSummary(CamelModel):
    id: str
    name: str
    description: Optional[str] = None
    node_count: int
    edge_count: int
    updated: str
    last_run: Optional[Dict[str, Any]] = None


class RunWorkflowRequest(CamelModel):
    input: Any = None


class GenerateWorkflowBody(CamelModel):
    prompt: str
    allow_code: bool = False
    clarifications: Optional[str] = None
    model_override: Optional[str] = None
    thread_id: Optional[str] = None
    attempt: Optional[int] = None


class EditWorkflowBody(CamelModel):
    message: str
    selected_node_id: Optional[str] = None
    conversation_history: List[ChatMessage] = []
    thread_id: Optional[str] = None


class QueuedResponse(CamelModel):
    request_id: str


class RunQueuedResponse(CamelModel):
    run_id: str


def _vault(request: Request) -> Path:
    return request.app.state.settings.vault_path


def _now_ms() -> int:
    return int(time.time() * 1000)


def _read_result(path: Path, request_id: str) -> Dict[str, Any]:
    if not path.is_file():
        raise HTTPException(status_code=404, detail=f"No result for request {request_id}")
    return read_json(path)


# ---------------------------------------------------------------------------
# Definitions
# ---------------------------------------------------------------------------


@router.get("", response_model=List[WorkflowSummary], response_model_by_alias=True, response_model_exclude_none=True)
async def get_workflows(request: Request):
    """List stored workflows with their last-run summary."""
    vault = _vault(request)
    index = load_runs_index(vault)["workflows"]
    return [
        WorkflowSummary(
            id=wf.id,
            name=wf.name,
            description=wf.description,
            node_count=len(wf.nodes),
            edge_count=len(wf.edges),
            updated=wf.updated,
            last_run=index.get(wf.id),
        )
        for wf in list_workflows(vault)
    ]


@router.post("/validate")
async def validate_workflow(
    raw: Any = Body(...),
    allow_code: bool = Query(False, alias="allowCode"),
):
    """Validate and normalize a posted workflow without saving it."""
    result = validate_workflow_definition(raw, allow_code=allow_code)
    if isinstance(result, ValidationErr):
        raise HTTPException(status_code=400, detail={"errors": result.errors})
    return {"ok": True, "workflow": result.workflow.to_json_dict(), "warnings": result.warnings}


@router.get("/{workflow_id}")
async def get_workflow(workflow_id: str, request: Request):
    workflow = load_workflow(_vault(request), workflow_id)
    if workflow is None:
        raise HTTPException(status_code=404, detail="Workflow not found")
    return workflow.to_json_dict()


@router.post("/{workflow_id}/layout")
async def relayout_workflow(workflow_id: str, request: Request):
    """Recompute node positions and edge handles, and save the result."""
    vault = _vault(request)
    workflow = load_workflow(vault, workflow_id)
    if workflow is None:
        raise HTTPException(status_code=404, detail="Workflow not found")
    laid_out = layout_workflow(workflow, force=True)
    save_workflow(vault, laid_out)
    logger.info("Re-laid out workflow %s", workflow_id)
    return laid_out.to_json_dict()


# ---------------------------------------------------------------------------
# Runs
# ---------------------------------------------------------------------------


@router.post("/{workflow_id}/runs", status_code=202)
async def queue_run(workflow_id: str, request: Request, body: Optional[RunWorkflowRequest] = None):
    vault = _vault(request)
    if load_workflow(vault, workflow_id) is None:
        raise HTTPException(status_code=404, detail="Workflow not found")

    run_id = generate_id("run")
    item = WorkflowQueueItem(
        workflow_id=workflow_id,
        run_id=run_id,
        status="pending",
        input=body.input if body else None,
        timestamp=_now_ms(),
    )
    write_json(vault / WORKFLOW_QUEUE_DIR / f"{run_id}.json", item.to_json_dict())
    logger.info("Queued run %s for workflow %s", run_id, workflow_id)
    return RunQueuedResponse(run_id=run_id).to_json_dict()


@router.get("/{workflow_id}/runs/{run_id}")
async def get_run(workflow_id: str, run_id: str, request: Request):
    run = load_run(_vault(request), workflow_id, run_id)
    if run is None:
        raise HTTPException(status_code=404, detail="Run not found")
    return run.to_json_dict()


# ---------------------------------------------------------------------------
# Generation and edit requests
# ---------------------------------------------------------------------------


@router.post("/generate", status_code=202)
async def queue_generation(body: GenerateWorkflowBody, request: Request):
    if not body.prompt.strip():
        raise HTTPException(status_code=400, detail="Prompt cannot be empty")

    request_id = generate_id("wfgen")
    queued = WorkflowGenerateRequest(
        request_id=request_id,
        timestamp=_now_ms(),
        prompt=body.prompt,
        allow_code=body.allow_code,
        clarifications=body.clarifications,
        model_override=body.model_override,
        thread_id=body.thread_id,
        attempt=body.attempt,
    )
    write_json(_vault(request) / WORKFLOW_GENERATE_QUEUE_DIR / f"{request_id}.json", queued.to_json_dict())
    logger.info("Queued workflow generation request %s", request_id)
    return QueuedResponse(request_id=request_id).to_json_dict()


@router.get("/generate/{request_id}")
async def get_generation_result(request_id: str, request: Request):
    return _read_result(_vault(request) / WORKFLOW_GENERATE_RESULTS_DIR / f"{request_id}.json", request_id)


@router.post("/{workflow_id}/edit", status_code=202)
async def queue_edit(workflow_id: str, body: EditWorkflowBody, request: Request):
    vault = _vault(request)
    workflow = load_workflow(vault, workflow_id)
    if workflow is None:
        raise HTTPException(status_code=404, detail="Workflow not found")
    if not body.message.strip():
        raise HTTPException(status_code=400, detail="Message cannot be empty")

    recent_runs = [
        {
            "id": run.id,
            "status": run.status,
            "startTime": run.start_time,
            "error": run.error,
            "output": run.output,
        }
        for run in list_runs(vault, workflow_id)[:RECENT_RUNS_FOR_EDIT]
    ]

    request_id = generate_id("wfedit")
    queued = WorkflowEditRequest(
        request_id=request_id,
        workflow_id=workflow_id,
        timestamp=_now_ms(),
        workflow=workflow.to_json_dict(),
        selected_node_id=body.selected_node_id,
        recent_runs=recent_runs,
        message=body.message,
        conversation_history=body.conversation_history,
        thread_id=body.thread_id,
    )
    write_json(vault / WORKFLOW_EDIT_QUEUE_DIR / f"{request_id}.json", queued.to_json_dict())
    logger.info("Queued edit request %s for workflow %s", request_id, workflow_id)
    return QueuedResponse(request_id=request_id).to_json_dict()


@router.get("/edit/{request_id}")
async def get_edit_result(request_id: str, request: Request):
    return _read_result(_vault(request) / WORKFLOW_EDIT_RESULTS_DIR / f"{request_id}.json", request_id)
