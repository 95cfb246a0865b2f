"""
Celery Tasks for Leadflow

Main Tasks:
- handle_event_task: match an event and run every matching workflow
- sweep_suspended_runs_task: periodic scheduler tick (beat)
- run_workflow_test_task: dry-run a workflow for the editor

Task Design Principles:
- No automatic retry: failed runs are final, re-triggering is explicit
- Idempotent sweep: each suspended run and each time-trigger firing is
  claimed by exactly one tick
- Observable: every task logs its outcome; run ids appear on every line
"""

import asyncio
import os
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from .celery_app import celery_app, SWEEP_INTERVAL_SECONDS
from ..database import get_db
from ..core.automation import AutomationService
from ..core.collaborators import load_collaborators
from ..core.exceptions import StructuralError
from ..core.graph import WorkflowGraph
from ..core.harness import WorkflowTestHarness
from ..core.run_store import make_json_serializable
from ..core.triggers import parse_event
from ..models.workflow import Workflow

logger = logging.getLogger(__name__)


@celery_app.task(bind=True, name="handle_event_task", acks_late=True)
def handle_event_task(self, event_data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Handle one lead/webhook/manual event.

    Args:
        event_data: {"kind": "stage_entry", "lead_id": ..., ...}

    Returns:
        {"matched": n, "runs": [{"run_id", "status", "failure_reason"}, ...]}
    """
    task_id = self.request.id
    event = parse_event(event_data)
    logger.info(f"Task {task_id}: Handling {event.kind} event")

    with get_db() as db:
        service = AutomationService(db, load_collaborators())
        results = asyncio.run(service.handle_event(event))

    summary = {
        "matched": len(results),
        "runs": [
            {
                "run_id": result["run_id"],
                "status": result["status"],
                "failure_reason": result["failure_reason"],
            }
            for result in results
        ],
    }
    logger.info(f"Task {task_id}: {event.kind} event started {len(results)} run(s)")
    return summary


@celery_app.task(bind=True, name="sweep_suspended_runs_task", acks_late=True)
def sweep_suspended_runs_task(self, now: Optional[str] = None) -> Dict[str, Any]:
    """
    Scheduler tick, run by beat every SWEEP_INTERVAL_SECONDS.

    Resumes due suspended runs and fires time triggers scheduled since the
    previous tick. Redelivered or overlapping ticks are safe: a run is resumed
    by whichever tick claims it first, and a time trigger fires once per lead.
    """
    task_id = self.request.id
    tick = datetime.fromisoformat(now) if now else datetime.utcnow()

    with get_db() as db:
        service = AutomationService(db, load_collaborators())
        summary = asyncio.run(service.sweep(now=tick, lookback=timedelta(seconds=SWEEP_INTERVAL_SECONDS)))

    logger.info(
        f"Task {task_id}: Sweep resumed {len(summary['resumed'])} run(s), "
        f"{summary['time_triggered']} time-triggered"
    )
    return summary


@celery_app.task(bind=True, name="run_workflow_test_task")
def run_workflow_test_task(
    self,
    workflow_id: int,
    test_lead_id: Optional[str] = None,
    entry_node_id: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Dry-run a workflow (any status) and return the trace.

    Returns:
        The harness result, or {"status": "invalid", "issues": [...]}
        when the graph does not validate.
    """
    task_id = self.request.id
    logger.info(f"Task {task_id}: Test run of workflow {workflow_id}")

    with get_db() as db:
        workflow = db.query(Workflow).filter(Workflow.id == workflow_id).first()
        if not workflow:
            error_msg = f"Workflow {workflow_id} not found"
            logger.error(f"Task {task_id}: {error_msg}")
            raise ValueError(error_msg)

        # Collaborators are optional here: they only serve reads of a real test lead
        collaborators = load_collaborators() if os.getenv("LEADFLOW_COLLABORATORS") else None
        harness = WorkflowTestHarness(db, collaborators)
        try:
            graph = WorkflowGraph.from_row(workflow)
            result = asyncio.run(harness.run_test(graph, test_lead_id=test_lead_id, entry_node_id=entry_node_id))
        except StructuralError as e:
            logger.info(f"Task {task_id}: Workflow {workflow_id} is invalid ({len(e.issues)} issue(s))")
            return {"status": "invalid", "error": e.message, "issues": e.issues}

    logger.info(f"Task {task_id}: Test run {result['run_id']} {result['status']}")
    return make_json_serializable(result)
