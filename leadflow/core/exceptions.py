"""
Custom Exceptions for Leadflow

This module defines the exception types raised by the workflow automation engine.

Exception Hierarchy:
- LeadflowException (base)
  - WorkflowError
    - StructuralError (don't retry - fix the graph)
    - MatchError (don't retry - trigger config is malformed)
    - BudgetExceeded (don't retry - workflow bug)
    - WorkflowDeactivated (don't retry - operator paused/archived it)
  - ActionError (collaborator call failed, halts only that run)
  - VersionConflict (concurrent lead mutation, retried once by the dispatcher)

Errors that halt a run carry a `reason_code`, stored in WorkflowRun.failure_reason
so operators can tell "bug in workflow" from "external call failed".
"""

from typing import Any, Dict, List, Optional


class LeadflowException(Exception):
    """Base exception for all Leadflow errors"""

    reason_code = "error"

    def __init__(self, message: str, retry_allowed: bool = True):
        super().__init__(message)
        self.message = message
        self.retry_allowed = retry_allowed


# ============================================================================
# WORKFLOW ERRORS
# ============================================================================

class WorkflowError(LeadflowException):
    """Base class for workflow-related errors"""
    pass


class StructuralError(WorkflowError):
    """
    Workflow graph is invalid (missing trigger, bad edges, unbounded cycles...).

    Carries every issue found, not just the first one, so the editor can
    surface all problems at once.
    """

    reason_code = "structural_error"

    def __init__(self, message: str, issues: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message, retry_allowed=False)
        self.issues = issues or []

    @property
    def reasons(self) -> List[str]:
        return [issue["message"] for issue in self.issues] or [self.message]


class MatchError(WorkflowError):
    """
    Trigger configuration could not be evaluated against an event.
    Logged and skipped; other workflows keep matching.
    """

    reason_code = "match_error"

    def __init__(self, message: str, workflow_id: Optional[int] = None, node_id: Optional[str] = None):
        super().__init__(message, retry_allowed=False)
        self.workflow_id = workflow_id
        self.node_id = node_id


class BudgetExceeded(WorkflowError):
    """
    Step budget or loop-iteration ceiling hit.
    Distinct from ActionError so a runaway workflow is not mistaken for an outage.
    """

    reason_code = "budget_exceeded"

    def __init__(self, message: str, budget: str = "steps", limit: Optional[int] = None):
        super().__init__(message, retry_allowed=False)
        self.budget = budget
        self.limit = limit


class WorkflowDeactivated(WorkflowError):
    """A suspended run tried to resume on a workflow that is no longer active"""

    reason_code = "workflow_deactivated"

    def __init__(self, message: str, workflow_id: Optional[int] = None, status: Optional[str] = None):
        super().__init__(message, retry_allowed=False)
        self.workflow_id = workflow_id
        self.status = status


# ============================================================================
# ACTION ERRORS
# ============================================================================

class ActionError(LeadflowException):
    """
    An action's collaborator call failed (message queue, tag store, webhook...).
    Halts only the run it happened in. Re-triggering is an explicit operator action.
    """

    reason_code = "action_error"

    def __init__(self, message: str, action_type: Optional[str] = None):
        super().__init__(message, retry_allowed=False)
        self.action_type = action_type


class VersionConflict(LeadflowException):
    """
    Lead store rejected a write because the lead changed since it was read.
    The dispatcher retries the read-modify-write exactly once.
    """

    reason_code = "version_conflict"

    def __init__(self, message: str, lead_id: Optional[str] = None, expected_version: Optional[int] = None):
        super().__init__(message, retry_allowed=True)
        self.lead_id = lead_id
        self.expected_version = expected_version
