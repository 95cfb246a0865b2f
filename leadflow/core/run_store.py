"""
Run Store

Persists workflow runs and their per-node trace (RunStep rows), and provides
the queries the scheduler sweep and the operator surface need.

Every state transition is committed immediately so a crash between steps
leaves an accurate record of what already happened.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..models import RunStep, SweepCursor, TriggerFiring, Workflow, WorkflowRun
from ..models.workflow import default_stats

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = ("succeeded", "failed")


def make_json_serializable(obj):
    """
    Recursively convert non-JSON-serializable objects to serializable format.

    Handles:
    - datetime -> ISO 8601 string
    - sets/tuples -> lists
    - pydantic models -> dicts
    """
    if isinstance(obj, dict):
        return {str(k): make_json_serializable(v) for k, v in obj.items()}
    elif isinstance(obj, (list, tuple, set)):
        return [make_json_serializable(item) for item in obj]
    elif isinstance(obj, datetime):
        return obj.isoformat()
    elif hasattr(obj, "model_dump"):
        return make_json_serializable(obj.model_dump())
    elif isinstance(obj, (str, int, float, bool)) or obj is None:
        return obj
    else:
        return str(obj)


class RunStore:
    """SQLAlchemy-backed storage for WorkflowRun / RunStep."""

    def __init__(self, db_session: Session):
        self.db = db_session

    # ------------------------------------------------------------------
    # Workflows
    # ------------------------------------------------------------------

    def get_workflow(self, workflow_id: int, fresh: bool = False) -> Optional[Workflow]:
        """
        Load a workflow row.

        fresh=True bypasses the session identity map so a status change made by
        another process (pause/archive) is seen.
        """
        query = self.db.query(Workflow).filter(Workflow.id == workflow_id)
        if fresh:
            query = query.execution_options(populate_existing=True)
        return query.first()

    def bump_stats(self, workflow_id: int, succeeded: bool) -> None:
        workflow = self.get_workflow(workflow_id)
        if workflow is None:
            return
        stats = dict(workflow.stats or default_stats())
        stats["runs"] = stats.get("runs", 0) + 1
        key = "success" if succeeded else "failed"
        stats[key] = stats.get(key, 0) + 1
        # JSON columns only notice reassignment
        workflow.stats = stats

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    def create_run(
        self,
        workflow_id: int,
        lead_id: str,
        trigger_kind: Optional[str] = None,
        entry_node_id: Optional[str] = None,
        is_test: bool = False,
    ) -> WorkflowRun:
        run = WorkflowRun(
            workflow_id=workflow_id,
            lead_id=lead_id,
            trigger_kind=trigger_kind,
            entry_node_id=entry_node_id,
            is_test=is_test,
            status="pending",
            state={"steps": 0, "loop_frames": []},
        )
        self.db.add(run)
        self.db.commit()
        logger.info(
            f"Created run {run.id} for workflow {workflow_id}, lead {lead_id}"
            f"{' (test)' if is_test else ''}"
        )
        return run

    def get_run(self, run_id: int) -> Optional[WorkflowRun]:
        return self.db.query(WorkflowRun).filter(WorkflowRun.id == run_id).first()

    def mark_running(self, run: WorkflowRun) -> None:
        run.status = "running"
        if run.started_at is None:
            run.started_at = datetime.utcnow()
        self.db.commit()

    def record_step(self, run: WorkflowRun, metadata: Dict[str, Any]) -> RunStep:
        """
        Append one node visit to the run's trace.

        `metadata` is the dict built by the engine for each node
        (node_id, node_type, status, output, error_message, ...).
        """
        sequence = self.db.query(RunStep).filter(RunStep.run_id == run.id).count() + 1
        step = RunStep(
            run_id=run.id,
            sequence=sequence,
            node_id=metadata["node_id"],
            node_type=metadata["node_type"],
            status=metadata.get("status", "success"),
            action_name=metadata.get("action_name"),
            output=make_json_serializable(metadata.get("output")),
            error_message=metadata.get("error_message"),
            decision_result=metadata.get("decision_result"),
            path_taken=metadata.get("path_taken"),
            target_lead_id=metadata.get("target_lead_id"),
            execution_time=metadata.get("execution_time"),
            timestamp=datetime.utcnow(),
        )
        self.db.add(step)
        self.db.commit()
        return step

    def suspend(
        self,
        run: WorkflowRun,
        resume_node_id: str,
        wake_at: datetime,
        state: Dict[str, Any],
    ) -> None:
        run.status = "suspended"
        run.resume_node_id = resume_node_id
        run.wake_at = wake_at
        run.claimed_at = None
        run.state = make_json_serializable(state)
        self.db.commit()
        logger.info(f"Run {run.id} suspended until {wake_at.isoformat()} (resume at {resume_node_id})")

    def finish(
        self,
        run: WorkflowRun,
        status: str,
        error: Optional[str] = None,
        failure_reason: Optional[str] = None,
        state: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Move a run to succeeded/failed and update workflow stats for real runs."""
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"finish() needs a terminal status, got '{status}'")

        run.status = status
        run.error = error
        run.failure_reason = failure_reason
        run.completed_at = datetime.utcnow()
        run.resume_node_id = None
        run.wake_at = None
        if state is not None:
            run.state = make_json_serializable(state)
        if not run.is_test:
            self.bump_stats(run.workflow_id, succeeded=(status == "succeeded"))
        self.db.commit()
        logger.info(
            f"Run {run.id} {status}"
            + (f" ({failure_reason}: {error})" if failure_reason else "")
        )

    # ------------------------------------------------------------------
    # Scheduler support
    # ------------------------------------------------------------------

    def due_run_ids(self, now: datetime, limit: Optional[int] = None) -> List[int]:
        query = (
            self.db.query(WorkflowRun.id)
            .filter(WorkflowRun.status == "suspended", WorkflowRun.wake_at <= now)
            .order_by(WorkflowRun.wake_at, WorkflowRun.id)
        )
        if limit:
            query = query.limit(limit)
        return [row[0] for row in query.all()]

    def claim(self, run_id: int, now: datetime) -> bool:
        """
        Atomically flip one due suspended run to running.

        Only one of several concurrent sweeps can win: the UPDATE matches only
        while the row is still 'suspended'.
        """
        result = self.db.execute(
            update(WorkflowRun)
            .where(
                WorkflowRun.id == run_id,
                WorkflowRun.status == "suspended",
                WorkflowRun.wake_at <= now,
            )
            .values(status="running", claimed_at=now)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        claimed = result.rowcount == 1
        if claimed:
            run = self.get_run(run_id)
            if run is not None:
                self.db.refresh(run)
        else:
            logger.debug(f"Run {run_id} already claimed or not due")
        return claimed

    def fail_claimed(self, run_id: int, error: str) -> bool:
        """
        Fail a run left `running` by a resumption that crashed before the
        engine could record the outcome. Returns False if the run is gone or
        no longer running (finished, or suspended again).
        """
        run = self.get_run(run_id)
        if run is None:
            return False
        self.db.refresh(run)
        if run.status != "running":
            return False
        run.claimed_at = None
        self.finish(run, "failed", error=error, failure_reason="internal_error")
        return True

    def sweep_cursor(self, name: str) -> Optional[datetime]:
        cursor = (
            self.db.query(SweepCursor)
            .filter(SweepCursor.name == name)
            .execution_options(populate_existing=True)
            .first()
        )
        return cursor.swept_until if cursor is not None else None

    def advance_sweep_cursor(self, name: str, swept_until: datetime) -> None:
        """Move the cursor forward to `swept_until`; never moves it back."""
        result = self.db.execute(
            update(SweepCursor)
            .where(SweepCursor.name == name, SweepCursor.swept_until < swept_until)
            .values(swept_until=swept_until, updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0 and self.sweep_cursor(name) is None:
            self.db.add(SweepCursor(name=name, swept_until=swept_until))
            try:
                self.db.commit()
            except IntegrityError:
                # Another sweep created it first
                self.db.rollback()
                self.advance_sweep_cursor(name, swept_until)
            return
        self.db.commit()

    def claim_trigger_firing(
        self,
        workflow_id: int,
        node_id: str,
        scheduled_at: datetime,
        lead_id: str,
    ) -> Optional[TriggerFiring]:
        """
        Record that a time trigger fired for a lead.

        Returns the new row, or None when some sweep already fired it (the
        unique key rejects the insert).
        """
        firing = TriggerFiring(
            workflow_id=workflow_id,
            node_id=node_id,
            scheduled_at=scheduled_at,
            lead_id=lead_id,
        )
        self.db.add(firing)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            logger.debug(
                f"Trigger {node_id} of workflow {workflow_id} at {scheduled_at.isoformat()} "
                f"already fired for lead {lead_id}"
            )
            return None
        return firing

    def link_firing(self, firing: TriggerFiring, run_id: int) -> None:
        firing.run_id = run_id
        self.db.commit()

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    def list_runs(self, workflow_id: int, include_tests: bool = False, limit: int = 50) -> List[WorkflowRun]:
        query = self.db.query(WorkflowRun).filter(WorkflowRun.workflow_id == workflow_id)
        if not include_tests:
            query = query.filter(WorkflowRun.is_test.is_(False))
        return query.order_by(WorkflowRun.created_at.desc(), WorkflowRun.id.desc()).limit(limit).all()

    def get_trace(self, run_id: int) -> List[Dict[str, Any]]:
        steps = (
            self.db.query(RunStep)
            .filter(RunStep.run_id == run_id)
            .order_by(RunStep.sequence)
            .all()
        )
        return [
            {
                "sequence": step.sequence,
                "node_id": step.node_id,
                "node_type": step.node_type,
                "status": step.status,
                "action_name": step.action_name,
                "output": step.output,
                "error_message": step.error_message,
                "decision_result": step.decision_result,
                "path_taken": step.path_taken,
                "target_lead_id": step.target_lead_id,
                "execution_time": step.execution_time,
                "timestamp": step.timestamp,
            }
            for step in steps
        ]
