"""
Models module - SQLAlchemy database models
"""

from sqlalchemy.orm import declarative_base

Base = declarative_base()

# Import models after Base is defined to avoid circular imports
from .workflow import Workflow
from .run import WorkflowRun, RunStep
from .scheduler import SweepCursor, TriggerFiring

__all__ = ["Base", "Workflow", "WorkflowRun", "RunStep", "SweepCursor", "TriggerFiring"]
