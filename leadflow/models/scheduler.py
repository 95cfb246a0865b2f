"""
Scheduler Models
Bookkeeping that makes the periodic sweep safe to repeat
"""

from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, UniqueConstraint
from datetime import datetime
from . import Base


class SweepCursor(Base):
    """
    How far a scheduler window has been swept.

    The next sweep starts where the last one ended, so a duplicate tick sees
    an empty window and a late tick covers the gap it left.
    """
    __tablename__ = "sweep_cursors"

    name = Column(String(50), primary_key=True)
    swept_until = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<SweepCursor(name='{self.name}', swept_until={self.swept_until})>"


class TriggerFiring(Base):
    """
    One time-based trigger fired for one lead.

    The unique key is the claim: whichever sweep inserts the row starts the
    run, any other sweep seeing the same (workflow, node, time, lead) skips it.
    """
    __tablename__ = "trigger_firings"
    __table_args__ = (
        UniqueConstraint("workflow_id", "node_id", "scheduled_at", "lead_id", name="uq_trigger_firing"),
    )

    id = Column(Integer, primary_key=True, index=True)
    workflow_id = Column(Integer, ForeignKey("workflows.id"), nullable=False, index=True)
    node_id = Column(String(255), nullable=False)
    scheduled_at = Column(DateTime, nullable=False)
    lead_id = Column(String(64), nullable=False)

    run_id = Column(Integer, ForeignKey("workflow_runs.id"), nullable=True)
    fired_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return (
            f"<TriggerFiring(workflow_id={self.workflow_id}, node_id='{self.node_id}', "
            f"scheduled_at={self.scheduled_at}, lead_id='{self.lead_id}')>"
        )
