"""
Leadflow HTTP surface

Workflow CRUD lives in the product's CRUD layer. This app exposes the
engine-side operations: activation (structural validation gate), cloning,
template instantiation, test runs, event/webhook ingress and run inspection.
Anything that executes a workflow is handed to a Celery worker.
"""

from fastapi import FastAPI, HTTPException, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.orm import Session
from typing import Any, Dict, List, Optional
import json
import os
import logging
import time
import uuid

from ..database import get_db_session
from ..models import WorkflowRun
from ..core.exceptions import StructuralError
from ..core.graph import WorkflowGraph, nodes_by_type, validate
from ..core.logging_config import setup_logging, set_request_id, clear_request_id
from ..core.repository import WorkflowRepository
from ..core.run_store import RunStore
from ..core.signing import SIGNATURE_HEADER, TIMESTAMP_HEADER, verify_signature
from ..core.triggers import WebhookReceivedEvent, parse_event
from .schemas import (
    WorkflowResponse, CloneWorkflowRequest, InstantiateTemplateRequest,
    ValidationResponse, TestRunRequest, TaskQueuedResponse,
    RunResponse, RunDetailResponse, RunListResponse,
)

REQUEST_ID_HEADER = "X-Request-ID"

setup_logging(
    level=os.getenv("LOG_LEVEL", "INFO"),
    json_logs=os.getenv("JSON_LOGS", "false").lower() == "true",
    log_file=os.getenv("LOG_FILE", None)
)

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Leadflow API",
    description="""
# Leadflow workflow automation engine

Runs per-workspace automation graphs (trigger -> condition -> action) against leads.

## Flow

1. **POST /events** - a lead entered a stage, its score or a field changed
2. Matching active workflows start one run each (in a Celery worker)
3. **GET /workflows/{id}/runs** / **GET /runs/{id}** - inspect runs and their per-node trace
""",
    version="0.1.0",
)


def get_db():
    """Request-scoped session (overridden in tests)"""
    db = get_db_session()
    try:
        yield db
    finally:
        db.close()


# ============================================================================
# MIDDLEWARE / ERRORS
# ============================================================================

@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    """
    Tag every log line of the request with X-Request-ID (caller's or a new
    UUID), echo it on the response and log one line per request with timing.
    """
    request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
    set_request_id(request_id)
    started = time.perf_counter()
    try:
        response = await call_next(request)
    except Exception:
        logger.exception(f"{request.method} {request.url.path} raised")
        raise
    else:
        response.headers[REQUEST_ID_HEADER] = request_id
        logger.info(
            f"{request.method} {request.url.path} -> {response.status_code}",
            extra={"duration_ms": round((time.perf_counter() - started) * 1000, 1)},
        )
        return response
    finally:
        clear_request_id()


def _error_body(status_code: int, error: Any, issues: Optional[List[Dict[str, Any]]] = None) -> JSONResponse:
    content: Dict[str, Any] = {"error": error, "status_code": status_code}
    if issues is not None:
        content["issues"] = issues
    return JSONResponse(status_code=status_code, content=content)


@app.exception_handler(HTTPException)
async def http_exception_handler(request, exc):
    return _error_body(exc.status_code, exc.detail)


@app.exception_handler(StructuralError)
async def structural_error_handler(request, exc: StructuralError):
    """Invalid workflow graphs: 422 with every issue found"""
    return _error_body(422, exc.message, exc.issues)


@app.get("/health", tags=["health"])
def health_check():
    return {"status": "healthy", "service": "Leadflow API", "version": app.version}


# ============================================================================
# EVENT INGRESS
# ============================================================================

def _enqueue_event(event_data: Dict[str, Any]) -> str:
    from ..workers.tasks import handle_event_task
    return handle_event_task.delay(event_data).id


@app.post("/events", status_code=202, response_model=TaskQueuedResponse, tags=["events"])
async def ingest_event(payload: Dict[str, Any]):
    """
    Accept a lead event (stage_entry, score_change, field_change, manual)
    and queue it for matching. Returns immediately.
    """
    try:
        event = parse_event(payload)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=f"Invalid event: {e.errors()}")

    task_id = _enqueue_event(event.model_dump(mode="json"))
    return TaskQueuedResponse(task_id=task_id, message=f"{event.kind} event queued")


@app.post("/workflows/{workflow_id}/webhook", status_code=202, response_model=TaskQueuedResponse, tags=["events"])
async def receive_webhook(workflow_id: int, request: Request, db: Session = Depends(get_db)):
    """
    Inbound webhook for a workflow's trigger_webhook nodes.

    When any of those triggers has a secret, the body must carry a valid
    X-Leadflow-Signature (sha256=<hmac hex> over "<timestamp>.<body>") for
    one of them and a X-Leadflow-Timestamp within the replay tolerance.
    """
    workflow = WorkflowRepository(db).get(workflow_id)
    if not workflow:
        raise HTTPException(status_code=404, detail=f"Workflow {workflow_id} not found")

    body = await request.body()
    try:
        payload = json.loads(body or b"{}")
    except ValueError:
        raise HTTPException(status_code=400, detail="Webhook body must be JSON")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Webhook body must be a JSON object")

    graph = WorkflowGraph.from_row(workflow)
    secrets = [node.config.secret for node in nodes_by_type(graph, "trigger_webhook") if node.config.secret]
    if secrets:
        signature = request.headers.get(SIGNATURE_HEADER)
        timestamp = request.headers.get(TIMESTAMP_HEADER)
        if not any(verify_signature(secret, body, signature, timestamp) for secret in secrets):
            logger.warning(f"Rejected webhook for workflow {workflow_id}: bad or stale signature")
            raise HTTPException(status_code=401, detail="Invalid webhook signature")

    event = WebhookReceivedEvent(
        workflow_id=workflow_id,
        payload=payload,
        lead_id=request.query_params.get("lead_id"),
    )
    task_id = _enqueue_event(event.model_dump(mode="json"))
    return TaskQueuedResponse(task_id=task_id, message="Webhook queued")


# ============================================================================
# WORKFLOW OPERATIONS
# ============================================================================

def _repository_call(call, *args, **kwargs):
    try:
        return call(*args, **kwargs)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.post("/workflows/{workflow_id}/validate", response_model=ValidationResponse, tags=["workflows"])
def validate_workflow(workflow_id: int, db: Session = Depends(get_db)):
    """Report every structural error and warning without changing anything"""
    graph = WorkflowRepository(db).load_graph(workflow_id)
    if graph is None:
        raise HTTPException(status_code=404, detail=f"Workflow {workflow_id} not found")
    result = validate(graph)
    return ValidationResponse(
        is_valid=result.is_valid,
        errors=[issue.model_dump() for issue in result.errors],
        warnings=[issue.model_dump() for issue in result.warnings],
    )


@app.post("/workflows/{workflow_id}/activate", response_model=WorkflowResponse, tags=["workflows"])
def activate_workflow(workflow_id: int, db: Session = Depends(get_db)):
    """Activate a workflow; 422 with the issue list if the graph is invalid"""
    return _repository_call(WorkflowRepository(db).activate, workflow_id)


@app.post("/workflows/{workflow_id}/pause", response_model=WorkflowResponse, tags=["workflows"])
def pause_workflow(workflow_id: int, db: Session = Depends(get_db)):
    """Stop new triggers and resumptions; in-flight runs are not cancelled"""
    return _repository_call(WorkflowRepository(db).set_status, workflow_id, "paused")


@app.post("/workflows/{workflow_id}/archive", response_model=WorkflowResponse, tags=["workflows"])
def archive_workflow(workflow_id: int, db: Session = Depends(get_db)):
    return _repository_call(WorkflowRepository(db).set_status, workflow_id, "archived")


@app.post("/workflows/{workflow_id}/clone", status_code=201, response_model=WorkflowResponse, tags=["workflows"])
def clone_workflow(workflow_id: int, request: CloneWorkflowRequest, db: Session = Depends(get_db)):
    """Copy a workflow into a workspace as a draft"""
    return _repository_call(
        WorkflowRepository(db).clone,
        workflow_id,
        request.target_workspace_id,
        name=request.name,
        description=request.description,
        created_by_id=request.created_by_id,
    )


@app.post("/templates/{template_id}/instantiate", status_code=201, response_model=WorkflowResponse, tags=["workflows"])
def instantiate_template(template_id: int, request: InstantiateTemplateRequest, db: Session = Depends(get_db)):
    """Create a draft workflow from a template"""
    return _repository_call(
        WorkflowRepository(db).instantiate_template,
        template_id,
        request.workspace_id,
        request.name,
        created_by_id=request.created_by_id,
        description=request.description,
    )


@app.post("/workflows/{workflow_id}/test", status_code=202, response_model=TaskQueuedResponse, tags=["runs"])
def queue_test_run(workflow_id: int, request: TestRunRequest, db: Session = Depends(get_db)):
    """
    Queue a dry run: no messages, tags, webhooks or lead writes happen.
    Poll GET /tasks/{task_id} for the trace.
    """
    from ..workers.tasks import run_workflow_test_task

    if WorkflowRepository(db).get(workflow_id) is None:
        raise HTTPException(status_code=404, detail=f"Workflow {workflow_id} not found")

    task = run_workflow_test_task.delay(
        workflow_id=workflow_id,
        test_lead_id=request.test_lead_id,
        entry_node_id=request.entry_node_id,
    )
    return TaskQueuedResponse(task_id=task.id, message=f"Test run queued. Use GET /tasks/{task.id} to check status.")


_TASK_STATE_MESSAGES = {
    "PENDING": "Queued, waiting for a worker",
    "STARTED": "Running",
    "SUCCESS": "Done",
    "FAILURE": "Task crashed; the run record (if any) holds the failure reason",
}


@app.get("/tasks/{task_id}", tags=["runs"])
def get_task_status(task_id: str):
    """
    Poll a queued event/test task.

    A finished test-run task returns the dry-run trace under "result"; a
    finished event task returns {"matched", "runs"}.
    """
    from celery.result import AsyncResult
    from ..workers.celery_app import celery_app

    task = AsyncResult(task_id, app=celery_app)
    body: Dict[str, Any] = {
        "task_id": task_id,
        "status": task.state,
        "message": _TASK_STATE_MESSAGES.get(task.state, task.state.lower()),
    }
    if task.successful():
        body["result"] = task.result
    elif task.failed():
        body["error"] = str(task.info)
    return body


# ============================================================================
# RUN INSPECTION
# ============================================================================

@app.get("/workflows/{workflow_id}/runs", response_model=RunListResponse, tags=["runs"])
def list_runs(
    workflow_id: int,
    include_tests: bool = False,
    limit: int = 50,
    db: Session = Depends(get_db)
):
    """Recent runs of a workflow, newest first (test runs excluded by default)"""
    if WorkflowRepository(db).get(workflow_id) is None:
        raise HTTPException(status_code=404, detail=f"Workflow {workflow_id} not found")
    runs = RunStore(db).list_runs(workflow_id, include_tests=include_tests, limit=min(max(limit, 1), 200))
    return RunListResponse(runs=[RunResponse.model_validate(run) for run in runs], total=len(runs))


@app.get("/runs/{run_id}", response_model=RunDetailResponse, tags=["runs"])
def get_run(run_id: int, db: Session = Depends(get_db)):
    """One run with its full per-node trace"""
    run = db.query(WorkflowRun).filter(WorkflowRun.id == run_id).first()
    if not run:
        raise HTTPException(status_code=404, detail=f"Run {run_id} not found")
    return run
