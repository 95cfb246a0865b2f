"""
Workflow Test Harness

Runs a workflow end to end without side effects, for the editor's
"test run" button:

1. Validate the graph (StructuralError lists every problem)
2. Execute it with a dry-run dispatcher: every action returns a description
   of what it *would* do and no collaborator is called
3. Record the run flagged is_test so it stays out of listings and stats

Delays and wait-until nodes are recorded and passed through, so a test run
always finishes in one go.
"""

import logging
import uuid
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from .actions import ActionDispatcher
from .collaborators import Collaborators, LeadSnapshot
from .engine import WorkflowEngine
from .exceptions import StructuralError
from .graph import WorkflowGraph, validate_or_raise

logger = logging.getLogger(__name__)


def build_mock_lead(workspace_id: Optional[str] = None, overrides: Optional[Dict[str, Any]] = None) -> LeadSnapshot:
    """Synthetic lead used when no test lead is chosen."""
    data = {
        "full_name": "Test Lead",
        "email": "test.lead@example.com",
        "phone": "+10000000000",
        "company": "Example Inc",
        "headline": "Head of Testing",
        "industry": "Software",
        "location": "Remote",
        "score": 50,
        "status": "new",
        "stage_id": None,
        "platform": "linkedin",
        "tags": [],
        "custom_fields": {},
    }
    data.update(overrides or {})
    return LeadSnapshot(
        id=f"test_lead_{uuid.uuid4().hex[:8]}",
        workspace_id=workspace_id,
        version=0,
        data=data,
    )


class WorkflowTestHarness:

    def __init__(self, db_session: Session, collaborators: Optional[Collaborators] = None):
        """
        Args:
            db_session: session for the run record
            collaborators: used only for reads (test lead, audience members);
                the dry-run dispatcher never calls them
        """
        self.db_session = db_session
        self.collaborators = collaborators

    async def run_test(
        self,
        graph: WorkflowGraph,
        test_lead_id: Optional[str] = None,
        entry_node_id: Optional[str] = None,
        mock_lead_data: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Validate and dry-run a workflow.

        Args:
            graph: persisted workflow graph (any status, drafts included)
            test_lead_id: lead to evaluate conditions against; None uses a synthetic lead
            entry_node_id: trigger to start from (default: first trigger)
            mock_lead_data: field overrides for the synthetic lead

        Returns:
            The engine result dict, plus "validation" (warnings) and "test_lead_id"

        Raises:
            StructuralError: graph is invalid (nothing is recorded)
        """
        validation = validate_or_raise(graph)

        if entry_node_id is None:
            entry_node_id = graph.trigger_nodes()[0].id
        elif entry_node_id not in graph.nodes:
            raise StructuralError(f"Entry node '{entry_node_id}' does not exist")

        lead_snapshots: Dict[str, LeadSnapshot] = {}
        if test_lead_id is None:
            mock = build_mock_lead(graph.workspace_id, mock_lead_data)
            lead_snapshots[mock.id] = mock
            test_lead_id = mock.id
            logger.info(f"Test run for workflow {graph.workflow_id} uses synthetic lead {mock.id}")

        engine = WorkflowEngine(
            self.db_session,
            ActionDispatcher(self.collaborators),
            dry_run=True,
            lead_snapshots=lead_snapshots,
        )
        result = await engine.start_run(
            graph,
            entry_node_id=entry_node_id,
            lead_id=test_lead_id,
            trigger_kind="test",
            is_test=True,
        )
        result["test_lead_id"] = test_lead_id
        result["validation"] = {"warnings": [warning.model_dump() for warning in validation.warnings]}
        return result
