"""
Workflow Repository

Engine-side persistence for workflow definitions: loading graphs, status
transitions (activation is gated by structural validation), cloning and
template instantiation.
"""

import logging
from typing import List, Optional

from sqlalchemy.orm import Session

from ..models import Workflow
from ..models.workflow import default_stats
from .exceptions import StructuralError
from .graph import WorkflowGraph, clone_workflow, instantiate_template, validate_or_raise

logger = logging.getLogger(__name__)

WORKFLOW_STATUSES = ("draft", "active", "paused", "archived")


class WorkflowRepository:

    def __init__(self, db_session: Session):
        self.db = db_session

    def get(self, workflow_id: int) -> Optional[Workflow]:
        return self.db.query(Workflow).filter(Workflow.id == workflow_id).first()

    def load_graph(self, workflow_id: int) -> Optional[WorkflowGraph]:
        workflow = self.get(workflow_id)
        return WorkflowGraph.from_row(workflow) if workflow else None

    def list_active(self, workspace_id: Optional[str] = None) -> List[Workflow]:
        query = self.db.query(Workflow).filter(Workflow.status == "active", Workflow.is_template.is_(False))
        if workspace_id is not None:
            query = query.filter(Workflow.workspace_id == workspace_id)
        return query.order_by(Workflow.id).all()

    def save(self, graph: WorkflowGraph) -> Workflow:
        """Insert a new workflow row from a graph (status taken from the graph)."""
        workflow = Workflow(
            workspace_id=graph.workspace_id,
            name=graph.name,
            description=graph.description,
            status=graph.status,
            created_by_id=graph.created_by_id,
            is_template=graph.is_template,
            graph_definition=graph.to_definition(),
            stats=default_stats(),
        )
        self.db.add(workflow)
        self.db.commit()
        graph.workflow_id = workflow.id
        logger.info(f"Saved workflow {workflow.id} '{workflow.name}' ({workflow.status})")
        return workflow

    def set_status(self, workflow_id: int, status: str) -> Workflow:
        """
        Change a workflow's status.

        Activation validates the graph first and raises StructuralError with
        every issue if it is not runnable. Pausing/archiving does not cancel
        in-flight runs; it blocks new triggers and resumptions.
        """
        if status not in WORKFLOW_STATUSES:
            raise ValueError(f"Unknown workflow status '{status}'. Valid: {list(WORKFLOW_STATUSES)}")

        workflow = self.get(workflow_id)
        if workflow is None:
            raise LookupError(f"Workflow {workflow_id} not found")

        if status == "active":
            if workflow.is_template:
                raise StructuralError("Templates cannot be activated; instantiate them first")
            validate_or_raise(WorkflowGraph.from_row(workflow))

        previous = workflow.status
        workflow.status = status
        self.db.commit()
        logger.info(f"Workflow {workflow_id}: {previous} -> {status}")
        return workflow

    def activate(self, workflow_id: int) -> Workflow:
        return self.set_status(workflow_id, "active")

    def clone(
        self,
        workflow_id: int,
        target_workspace_id: str,
        name: Optional[str] = None,
        description: Optional[str] = None,
        created_by_id: Optional[str] = None,
    ) -> Workflow:
        source = self.load_graph(workflow_id)
        if source is None:
            raise LookupError(f"Workflow {workflow_id} not found")
        copy = clone_workflow(source, target_workspace_id, name, description, created_by_id)
        return self.save(copy)

    def instantiate_template(
        self,
        template_id: int,
        workspace_id: str,
        name: str,
        created_by_id: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Workflow:
        template_row = self.get(template_id)
        if template_row is None:
            raise LookupError(f"Template {template_id} not found")

        template = WorkflowGraph.from_row(template_row)
        workflow = self.save(instantiate_template(template, workspace_id, name, created_by_id, description))

        stats = dict(template_row.stats or {})
        stats["uses"] = stats.get("uses", 0) + 1
        template_row.stats = stats
        self.db.commit()
        return workflow
