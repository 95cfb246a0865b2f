"""
Workflow Model
Database model for workflow definitions
"""

from sqlalchemy import Column, Integer, String, Text, JSON, DateTime, Boolean
from sqlalchemy.orm import relationship
from datetime import datetime
from . import Base


def default_stats():
    return {"runs": 0, "success": 0, "failed": 0}


class Workflow(Base):
    """
    Workflow Model

    Stores automation workflows as directed graphs, one workspace each.
    Status: draft, active, paused, archived. Only active workflows are
    matched by triggers or resumed after a delay.
    """
    __tablename__ = "workflows"

    id = Column(Integer, primary_key=True, index=True)
    workspace_id = Column(String(64), nullable=False, index=True)
    name = Column(String(255), nullable=False, index=True)
    description = Column(Text, nullable=True)

    status = Column(String(20), nullable=False, default="draft", index=True)
    created_by_id = Column(String(64), nullable=True)
    is_template = Column(Boolean, nullable=False, default=False)

    # JSON structure:
    # {
    #   "nodes": [
    #     {"id": "t1", "type": "trigger_lead_stage_entry", "config": {"stage_id": "qualified"}},
    #     {"id": "c1", "type": "condition", "config": {"field": "score", "operator": "gte", "value": 80}},
    #     {"id": "a1", "type": "action_send_message", "config": {"platform": "linkedin", "content": "Hi"}},
    #     {"id": "a2", "type": "action_increment_score", "config": {"amount": 5}}
    #   ],
    #   "edges": [
    #     {"id": "e1", "source": "t1", "target": "c1"},
    #     {"id": "e2", "source": "c1", "target": "a1", "condition": "true"},
    #     {"id": "e3", "source": "c1", "target": "a2", "condition": "false"}
    #   ]
    # }
    graph_definition = Column(JSON, nullable=False)

    # Counters for non-test runs: {"runs": 0, "success": 0, "failed": 0}
    # Templates also track {"uses": n}
    stats = Column(JSON, nullable=False, default=default_stats)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    runs = relationship("WorkflowRun", back_populates="workflow", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<Workflow(id={self.id}, name='{self.name}', status='{self.status}')>"
