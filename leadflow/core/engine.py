"""
Workflow Engine for Leadflow

The WorkflowEngine is responsible for:
1. Starting a run at a trigger node for one lead
2. Stepping through the graph node by node (strictly sequential)
3. Dispatching action nodes through the ActionDispatcher
4. Branching on condition nodes (fresh lead read each time)
5. Suspending at delay / wait-until nodes and resuming later
6. Iterating loop bodies within their max_iterations bound
7. Recording every visited node into the run's trace (RunStep)

Bounds:
    - Step budget (WORKFLOW_STEP_BUDGET, default 500) counted across suspensions
    - Each entry into a loop node runs its body at most max_iterations times

Failure model: every exception raised while stepping is caught, written to
the trace with the failing node id, and turns the run into `failed` with a
failure_reason. Nothing propagates to the trigger source. Failed runs are
never retried automatically.

Example:
    engine = WorkflowEngine(db_session, ActionDispatcher(collaborators))
    result = await engine.start_run(graph, entry_node_id="t1", lead_id="lead_42")
    # later, from the scheduler sweep:
    result = await engine.resume_run(run_id)
"""

import logging
import os
import time
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from .actions import ActionDispatcher
from .collaborators import LeadSnapshot
from .conditions import evaluate_condition
from .exceptions import (
    ActionError,
    BudgetExceeded,
    LeadflowException,
    StructuralError,
    WorkflowDeactivated,
)
from .graph import WorkflowGraph, validate_or_raise
from .logging_config import run_context
from .nodes import BaseNode, TRIGGER_TYPES
from .run_store import RunStore

logger = logging.getLogger(__name__)

DEFAULT_STEP_BUDGET = 500


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return (value - value.utcoffset()).replace(tzinfo=None)
    return value


class _Suspend(Exception):
    """Internal signal: stop stepping and persist the run as suspended."""

    def __init__(self, wake_at: datetime, resume_node_id: Optional[str], metadata: Dict[str, Any]):
        self.wake_at = wake_at
        self.resume_node_id = resume_node_id
        self.metadata = metadata


class WorkflowEngine:
    """
    Core execution engine for workflow graphs.

    Args:
        db_session: SQLAlchemy session used for runs, steps and status checks
        dispatcher: ActionDispatcher (its collaborators also serve lead reads)
        dry_run: describe actions instead of performing them (test runs);
            delays and wait-until nodes are recorded and passed through
        step_budget: max node visits per run (env WORKFLOW_STEP_BUDGET)
        lead_snapshots: fixed snapshots served instead of LeadStore reads,
            used by the test harness for synthetic leads
        clock: returns "now" as naive UTC
    """

    def __init__(
        self,
        db_session: Session,
        dispatcher: ActionDispatcher,
        dry_run: bool = False,
        step_budget: Optional[int] = None,
        lead_snapshots: Optional[Dict[str, LeadSnapshot]] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.db_session = db_session
        self.store = RunStore(db_session)
        self.dispatcher = dispatcher
        self.dry_run = dry_run
        self.step_budget = step_budget or int(os.getenv("WORKFLOW_STEP_BUDGET", DEFAULT_STEP_BUDGET))
        self.lead_snapshots = lead_snapshots or {}
        self.clock = clock
        logger.debug(f"WorkflowEngine initialized (dry_run={dry_run}, step_budget={self.step_budget})")

    @property
    def collaborators(self):
        return self.dispatcher.collaborators

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def start_run(
        self,
        graph: WorkflowGraph,
        entry_node_id: str,
        lead_id: str,
        trigger_kind: Optional[str] = None,
        trigger_data: Optional[Dict[str, Any]] = None,
        is_test: bool = False,
    ) -> Dict[str, Any]:
        """
        Create a run and step it until it succeeds, fails or suspends.

        Returns:
            Execution result with:
            - status: "succeeded", "failed" or "suspended"
            - run_id: database id of the run
            - execution_trace: metadata of every node visited in this slot
            - nodes_executed: len(execution_trace)
            - failure_reason / error: set when failed
            - wake_at / resume_node_id: set when suspended
        """
        if graph.workflow_id is None:
            raise ValueError("Workflow must be persisted before it can run")

        run = self.store.create_run(
            workflow_id=graph.workflow_id,
            lead_id=lead_id,
            trigger_kind=trigger_kind or ("test" if is_test else None),
            entry_node_id=entry_node_id,
            is_test=is_test,
        )
        state = {
            "steps": 0,
            "loop_frames": [],
            "target_lead_id": None,
            "loop_item": None,
            "trigger": trigger_data or {},
        }

        with run_context(run.id, graph.workflow_id, lead_id):
            self.store.mark_running(run)
            logger.info(f"Starting run {run.id}: workflow {graph.workflow_id} at {entry_node_id} for lead {lead_id}")
            try:
                validate_or_raise(graph)
                entry = graph.nodes.get(entry_node_id)
                if entry is None or entry.type not in TRIGGER_TYPES:
                    raise StructuralError(f"Entry node '{entry_node_id}' is not a trigger of this workflow")
            except StructuralError as e:
                return self._fail(run, state, [], e)
            return await self._drive(run, graph, entry_node_id, state)

    async def resume_run(self, run_id: int, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Continue a suspended run from its resume node.

        The run must either be claimed already (status "running" with
        claimed_at set, as done by the scheduler sweep) or still be
        "suspended" and due, in which case it is claimed here. A run that is
        neither is left untouched and reported with resumed=False.

        The workflow status is re-read from the database: if it is no longer
        active the run fails with failure_reason="workflow_deactivated".
        """
        now = now or self.clock()
        run = self.store.get_run(run_id)
        if run is None:
            raise LookupError(f"Run {run_id} not found")

        if run.status == "suspended":
            if not self.store.claim(run_id, now):
                return {"status": run.status, "run_id": run_id, "resumed": False}
        elif not (run.status == "running" and run.claimed_at is not None):
            logger.warning(f"Run {run_id} is {run.status}; nothing to resume")
            return {"status": run.status, "run_id": run_id, "resumed": False}

        state = dict(run.state or {})
        state.setdefault("steps", 0)
        state.setdefault("loop_frames", [])

        with run_context(run.id, run.workflow_id, run.lead_id):
            workflow = self.store.get_workflow(run.workflow_id, fresh=True)
            if workflow is None or workflow.status != "active":
                status = workflow.status if workflow is not None else "deleted"
                error = WorkflowDeactivated(
                    f"Workflow {run.workflow_id} is {status}; suspended run cannot resume",
                    workflow_id=run.workflow_id,
                    status=status,
                )
                return self._fail(run, state, [], error)

            try:
                graph = WorkflowGraph.from_row(workflow)
            except StructuralError as e:
                return self._fail(run, state, [], e)

            resume_node_id = run.resume_node_id
            logger.info(f"Resuming run {run.id} at {resume_node_id or '<end>'}")
            run.claimed_at = None
            if resume_node_id is None:
                self.store.finish(run, "succeeded", state=state)
                return self._result(run, [])
            return await self._drive(run, graph, resume_node_id, state)

    # ------------------------------------------------------------------
    # Stepping
    # ------------------------------------------------------------------

    async def _drive(
        self,
        run,
        graph: WorkflowGraph,
        node_id: Optional[str],
        state: Dict[str, Any],
    ) -> Dict[str, Any]:
        execution_trace: List[Dict[str, Any]] = []
        context = {
            "workflow_id": graph.workflow_id,
            "workflow_name": graph.name,
            "run_id": run.id,
            "trigger": state.get("trigger", {}),
        }

        # Node about to run; cleared once its step is recorded
        pending_id: Optional[str] = None
        current: Optional[BaseNode] = None
        try:
            while node_id is not None:
                pending_id = node_id
                current = graph.nodes.get(node_id)

                state["steps"] = state.get("steps", 0) + 1
                if state["steps"] > self.step_budget:
                    raise BudgetExceeded(
                        f"Run exceeded step budget of {self.step_budget} node visits",
                        budget="steps",
                        limit=self.step_budget,
                    )
                if current is None:
                    raise StructuralError(f"Edge leads to unknown node '{node_id}'")

                metadata, node_id = await self._execute_node(current, graph, run, state, context)
                execution_trace.append(metadata)
                self.store.record_step(run, metadata)
                pending_id = None

        except _Suspend as suspend:
            execution_trace.append(suspend.metadata)
            self.store.record_step(run, suspend.metadata)
            self.store.suspend(run, suspend.resume_node_id, suspend.wake_at, state)
            return self._result(run, execution_trace)

        except Exception as e:
            if pending_id is not None:
                failed_metadata = {
                    "node_id": pending_id,
                    "node_type": current.type if current is not None else "unknown",
                    "status": "failed",
                    "action_name": current.type if current is not None and current.is_action else None,
                    "error_message": str(e),
                    "target_lead_id": self._target_lead(run, state),
                    "execution_time": 0,
                }
                execution_trace.append(failed_metadata)
                self.store.record_step(run, failed_metadata)
            return self._fail(run, state, execution_trace, e)

        self.store.finish(run, "succeeded", state=state)
        return self._result(run, execution_trace)

    async def _execute_node(
        self,
        node: BaseNode,
        graph: WorkflowGraph,
        run,
        state: Dict[str, Any],
        context: Dict[str, Any],
    ) -> Tuple[Dict[str, Any], Optional[str]]:
        """
        Execute a single node.

        Returns:
            (metadata, next_node_id); next_node_id None ends the run

        Raises:
            _Suspend: delay / wait-until reached with a future wake time
            LeadflowException: structural, action or budget failure
        """
        start_time = time.time()
        target_lead_id = self._target_lead(run, state)
        metadata: Dict[str, Any] = {
            "node_id": node.id,
            "node_type": node.type,
            "status": "success",
            "action_name": None,
            "output": None,
            "error_message": None,
            "decision_result": None,
            "path_taken": None,
            "target_lead_id": target_lead_id,
        }

        logger.info(f"Executing node: {node.id} ({node.type})")
        next_node_id: Optional[str]

        if node.type in TRIGGER_TYPES:
            next_node_id = self._continue(graph, node.id, state)

        elif node.is_action:
            metadata["action_name"] = node.type
            action_context = dict(context)
            if state.get("loop_item") is not None:
                action_context["loop_item"] = state["loop_item"]
            result = await self.dispatcher.perform(
                node.type, node.config, target_lead_id, dry_run=self.dry_run, context=action_context
            )
            metadata["output"] = {"description": result.description, **result.output}
            next_node_id = self._continue(graph, node.id, state)
            if result.suspend_until is not None:
                self._maybe_suspend(metadata, result.suspend_until, next_node_id, start_time)

        elif node.type == "condition":
            config = node.config
            snapshot = await self._read_lead(target_lead_id)
            outcome = evaluate_condition(snapshot.data, config.field, config.operator, config.value, config.case_sensitive)
            label = "true" if outcome else "false"
            next_node_id = graph.successor(node.id, label)
            if next_node_id is None:
                raise StructuralError(f"Condition node '{node.id}' has no '{label}' edge")
            metadata["decision_result"] = label
            metadata["output"] = {"field": config.field, "operator": config.operator, "expected": config.value}

        elif node.type == "delay":
            config = node.config
            now = self.clock()
            if config.delay_until is not None:
                wake_at = _naive_utc(config.delay_until)
            else:
                wake_at = now + timedelta(seconds=config.delay_seconds)
            next_node_id = self._continue(graph, node.id, state)
            metadata["output"] = {"wake_at": wake_at.isoformat()}
            self._maybe_suspend(metadata, wake_at, next_node_id, start_time)

        elif node.type == "loop":
            next_node_id = await self._visit_loop(node, graph, run, state, metadata)

        elif node.type == "end":
            next_node_id = self._continue(graph, node.id, state)

        else:
            raise StructuralError(f"Unknown node type: {node.type}")

        metadata["path_taken"] = next_node_id
        metadata["execution_time"] = time.time() - start_time
        logger.info(f"Node {node.id} completed in {metadata['execution_time']:.3f}s -> {next_node_id or '<end>'}")
        return metadata, next_node_id

    def _maybe_suspend(
        self,
        metadata: Dict[str, Any],
        wake_at: datetime,
        resume_node_id: Optional[str],
        start_time: float,
    ) -> None:
        """Suspend when wake_at is in the future; dry runs record and pass through."""
        wake_at = _naive_utc(wake_at)
        if wake_at <= self.clock():
            return
        if self.dry_run:
            metadata["output"] = {**(metadata["output"] or {}), "would_wait_until": wake_at.isoformat()}
            return

        metadata["status"] = "suspended"
        metadata["path_taken"] = resume_node_id
        metadata["execution_time"] = time.time() - start_time
        raise _Suspend(wake_at, resume_node_id, metadata)

    # ------------------------------------------------------------------
    # Loops
    # ------------------------------------------------------------------

    async def _visit_loop(
        self,
        node: BaseNode,
        graph: WorkflowGraph,
        run,
        state: Dict[str, Any],
        metadata: Dict[str, Any],
    ) -> Optional[str]:
        """
        Enter, advance or leave a loop.

        Frames live in state["loop_frames"] (innermost last) so they survive
        suspension. Arriving at a loop node that already has a frame means a
        body iteration finished; any inner frames above it are abandoned.
        """
        config = node.config
        frames: List[Dict[str, Any]] = state["loop_frames"]
        position = next(
            (index for index in range(len(frames) - 1, -1, -1) if frames[index]["loop_node_id"] == node.id),
            None,
        )

        if position is None:
            items = await self._loop_items(node)
            kept = items[:config.max_iterations]
            skipped = items[config.max_iterations:]
            if skipped:
                logger.warning(f"Loop {node.id}: {len(skipped)} item(s) beyond max_iterations={config.max_iterations} skipped")
            frames.append({
                "loop_node_id": node.id,
                "items": kept,
                "index": 0,
                "outer_target_lead_id": state.get("target_lead_id"),
                "outer_loop_item": state.get("loop_item"),
            })
            metadata["output"] = {
                "loop_type": config.loop_type,
                "total_items": len(items),
                "skipped_items": skipped,
            }
        elif position < len(frames) - 1:
            abandoned = frames[position + 1]
            state["target_lead_id"] = abandoned["outer_target_lead_id"]
            state["loop_item"] = abandoned["outer_loop_item"]
            del frames[position + 1:]

        frame = frames[-1]
        if frame["index"] < len(frame["items"]):
            # Items were capped on entry; a frame restored after the bound was lowered can still exceed it
            if frame["index"] >= config.max_iterations:
                raise BudgetExceeded(
                    f"Loop node '{node.id}' reached max_iterations={config.max_iterations} for this entry",
                    budget="loop_iterations",
                    limit=config.max_iterations,
                )
            item = frame["items"][frame["index"]]
            frame["index"] += 1
            state["loop_item"] = item
            if config.loop_type in ("leads", "audience"):
                state["target_lead_id"] = str(item)

            body = graph.successor(node.id, "body")
            if body is None:
                raise StructuralError(f"Loop node '{node.id}' has no 'body' edge")
            metadata["decision_result"] = "body"
            metadata["output"] = {**(metadata["output"] or {}), "iteration": frame["index"], "item": item}
            return body

        frames.pop()
        state["target_lead_id"] = frame["outer_target_lead_id"]
        state["loop_item"] = frame["outer_loop_item"]
        metadata["decision_result"] = "done"
        metadata["output"] = {**(metadata["output"] or {}), "iterations": frame["index"]}
        return self._continue(graph, node.id, state, "done")

    async def _loop_items(self, node: BaseNode) -> List[Any]:
        config = node.config
        if config.loop_type != "audience":
            return list(config.loop_list)
        if self.collaborators is None:
            logger.warning(f"Loop {node.id}: no audience store available, iterating nothing")
            return []
        try:
            return [str(member) for member in await self.collaborators.audiences.members(config.audience_id)]
        except Exception as e:
            raise ActionError(f"Reading audience {config.audience_id} failed: {e}", "loop") from e

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _continue(
        self,
        graph: WorkflowGraph,
        node_id: str,
        state: Dict[str, Any],
        label: Optional[str] = None,
    ) -> Optional[str]:
        """
        Next node after `node_id`.

        Where the path ends (end node or dangling node), control returns to the
        innermost active loop, or the run finishes when there is none.
        """
        next_node_id = graph.successor(node_id, label)
        if next_node_id is None and state["loop_frames"]:
            return state["loop_frames"][-1]["loop_node_id"]
        return next_node_id

    @staticmethod
    def _target_lead(run, state: Dict[str, Any]) -> str:
        return state.get("target_lead_id") or run.lead_id

    async def _read_lead(self, lead_id: str) -> LeadSnapshot:
        if lead_id in self.lead_snapshots:
            return self.lead_snapshots[lead_id]
        if self.collaborators is None:
            raise ActionError(f"Cannot read lead {lead_id}: no lead store configured", "condition")
        try:
            return await self.collaborators.leads.get(lead_id)
        except Exception as e:
            raise ActionError(f"Reading lead {lead_id} failed: {e}", "condition") from e

    def _fail(self, run, state: Dict[str, Any], execution_trace: List[Dict[str, Any]], error: Exception) -> Dict[str, Any]:
        if isinstance(error, LeadflowException):
            failure_reason = error.reason_code
            message = error.message
        else:
            failure_reason = "internal_error"
            message = f"{type(error).__name__}: {error}"
        logger.error(f"Run {run.id} failed ({failure_reason}): {message}")
        self.store.finish(run, "failed", error=message, failure_reason=failure_reason, state=state)
        return self._result(run, execution_trace)

    @staticmethod
    def _result(run, execution_trace: List[Dict[str, Any]]) -> Dict[str, Any]:
        return {
            "status": run.status,
            "run_id": run.id,
            "is_test": bool(run.is_test),
            "execution_trace": execution_trace,
            "nodes_executed": len(execution_trace),
            "failure_reason": run.failure_reason,
            "error": run.error,
            "wake_at": run.wake_at,
            "resume_node_id": run.resume_node_id,
        }
