"""
Workflow Run Models
Database models for run records and their per-node audit trail
"""

from sqlalchemy import Column, Integer, String, Text, JSON, DateTime, Float, Boolean, ForeignKey
from sqlalchemy.orm import relationship
from datetime import datetime
from . import Base


class WorkflowRun(Base):
    """
    WorkflowRun Model

    One execution of a workflow against one lead.

    Status: pending -> running -> succeeded | failed | suspended.
    A suspended run goes back to running only through resumption (same id).

    Once terminal the record is immutable: editing the workflow afterwards
    does not touch it.
    """
    __tablename__ = "workflow_runs"

    id = Column(Integer, primary_key=True, index=True)
    workflow_id = Column(Integer, ForeignKey("workflows.id"), nullable=False, index=True)
    lead_id = Column(String(64), nullable=False, index=True)

    # Test runs use the dry-run dispatcher and are excluded from listings/stats
    is_test = Column(Boolean, nullable=False, default=False, index=True)

    status = Column(String(20), nullable=False, default="pending", index=True)

    # What started it: stage_entry, score_change, field_change, time_reached, webhook_received, manual, test
    trigger_kind = Column(String(50), nullable=True)
    entry_node_id = Column(String(255), nullable=True)

    # Suspension bookkeeping
    resume_node_id = Column(String(255), nullable=True)
    wake_at = Column(DateTime, nullable=True, index=True)
    claimed_at = Column(DateTime, nullable=True)

    # Engine state carried across suspensions:
    # {"steps": 12, "loop_frames": [...], "target_lead_id": ..., "loop_item": ...}
    state = Column(JSON, nullable=True)

    error = Column(Text, nullable=True)
    # structural_error, action_error, budget_exceeded, workflow_deactivated
    failure_reason = Column(String(50), nullable=True)

    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    workflow = relationship("Workflow", back_populates="runs")
    steps = relationship(
        "RunStep",
        back_populates="run",
        cascade="all, delete-orphan",
        order_by="RunStep.sequence"
    )

    @property
    def test_lead_id(self):
        return self.lead_id if self.is_test else None

    @property
    def is_terminal(self) -> bool:
        return self.status in ("succeeded", "failed")

    def __repr__(self):
        return f"<WorkflowRun(id={self.id}, workflow_id={self.workflow_id}, status='{self.status}')>"


class RunStep(Base):
    """
    RunStep Model

    Audit trail of each node visited by a run, in order.
    """
    __tablename__ = "run_steps"

    id = Column(Integer, primary_key=True, index=True)
    run_id = Column(Integer, ForeignKey("workflow_runs.id"), nullable=False, index=True)
    sequence = Column(Integer, nullable=False)

    node_id = Column(String(255), nullable=False, index=True)
    node_type = Column(String(50), nullable=False)

    # Status: success, failed, skipped, suspended
    status = Column(String(20), nullable=False, default="success")

    # Action node type for action steps, e.g. "action_add_tag"
    action_name = Column(String(50), nullable=True)

    # Handler output or dry-run description
    output = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)

    # Condition nodes: "true"/"false". Loop nodes: "body"/"done"
    decision_result = Column(String(10), nullable=True)
    # Next node id chosen after this step
    path_taken = Column(String(255), nullable=True)

    # Lead the step acted on (differs from the run lead inside lead loops)
    target_lead_id = Column(String(64), nullable=True)

    execution_time = Column(Float, nullable=True)  # seconds
    timestamp = Column(DateTime, default=datetime.utcnow, nullable=False)

    run = relationship("WorkflowRun", back_populates="steps")

    def __repr__(self):
        return f"<RunStep(run_id={self.run_id}, seq={self.sequence}, node_id='{self.node_id}', status='{self.status}')>"
