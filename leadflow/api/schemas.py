"""
Pydantic schemas for API request/response validation
"""

from pydantic import BaseModel, Field
from typing import Optional, Dict, Any, List
from datetime import datetime


# ============================================================================
# WORKFLOW SCHEMAS
# ============================================================================

class WorkflowResponse(BaseModel):
    """Schema for workflow response"""
    id: int
    workspace_id: str
    name: str
    description: Optional[str]
    status: str
    is_template: bool
    created_by_id: Optional[str]
    graph_definition: Dict[str, Any]
    stats: Optional[Dict[str, Any]]
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class CloneWorkflowRequest(BaseModel):
    """Schema for cloning a workflow into another workspace"""
    target_workspace_id: str = Field(..., min_length=1)
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    created_by_id: Optional[str] = None


class InstantiateTemplateRequest(BaseModel):
    """Schema for creating a workflow from a template"""
    workspace_id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    created_by_id: Optional[str] = None


class ValidationIssueResponse(BaseModel):
    code: str
    message: str
    node_id: Optional[str] = None
    edge_id: Optional[str] = None


class ValidationResponse(BaseModel):
    """Result of structural validation"""
    is_valid: bool
    errors: List[ValidationIssueResponse]
    warnings: List[ValidationIssueResponse]


# ============================================================================
# EXECUTION SCHEMAS
# ============================================================================

class TestRunRequest(BaseModel):
    """Schema for a dry-run of a workflow"""
    test_lead_id: Optional[str] = Field(None, description="Lead to test against (default: synthetic lead)")
    entry_node_id: Optional[str] = Field(None, description="Trigger node to start from (default: first trigger)")

    class Config:
        json_schema_extra = {
            "example": {"test_lead_id": "lead_42"}
        }


class TaskQueuedResponse(BaseModel):
    """Returned by endpoints that hand work to a Celery worker"""
    task_id: str
    status: str = "queued"
    message: str


class RunStepResponse(BaseModel):
    """One node visited by a run"""
    sequence: int
    node_id: str
    node_type: str
    status: str
    action_name: Optional[str] = None
    output: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    decision_result: Optional[str] = None
    path_taken: Optional[str] = None
    target_lead_id: Optional[str] = None
    execution_time: Optional[float] = None
    timestamp: datetime

    class Config:
        from_attributes = True


class RunResponse(BaseModel):
    """Schema for workflow run response"""
    id: int
    workflow_id: int
    lead_id: str
    is_test: bool
    test_lead_id: Optional[str] = None
    status: str
    trigger_kind: Optional[str] = None
    entry_node_id: Optional[str] = None
    resume_node_id: Optional[str] = None
    wake_at: Optional[datetime] = None
    error: Optional[str] = None
    failure_reason: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True


class RunDetailResponse(RunResponse):
    """Run plus its full per-node trace"""
    steps: List[RunStepResponse]


class RunListResponse(BaseModel):
    """Schema for list of runs"""
    runs: List[RunResponse]
    total: int
