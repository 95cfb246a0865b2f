"""
Pytest fixtures for Leadflow tests

This module provides shared fixtures for all tests:
- Database session fixtures
- In-memory collaborators (lead store, tags, messages, scoring...)
- Workflow definitions for the reference scenarios
- Helper to persist a workflow and get its graph back
"""

import os

# leadflow.database and the Celery app read these at import time
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/0")

import pytest
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import sessionmaker

from leadflow.database import build_engine
from leadflow.models import Base
from leadflow.core.collaborators import (
    AgentQueue,
    AudienceStore,
    Collaborators,
    LeadSnapshot,
    LeadStore,
    MessageQueue,
    ScoringService,
    TagStore,
    WebhookTransport,
)
from leadflow.core.exceptions import VersionConflict
from leadflow.core.graph import WorkflowGraph
from leadflow.core.repository import WorkflowRepository


# ============================================================================
# DATABASE FIXTURES
# ============================================================================

@pytest.fixture(scope="function")
def db_session():
    """
    Create an in-memory SQLite database for testing.
    Each test gets a fresh database that's torn down after the test.
    """
    engine = build_engine("sqlite://")
    Base.metadata.create_all(engine)

    SessionLocal = sessionmaker(bind=engine)
    session = SessionLocal()

    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture
def make_workflow(db_session):
    """
    Persist a workflow definition and return its WorkflowGraph (with id).

    Usage:
        graph = make_workflow(definition, status="active")
    """
    def _make(
        definition: Dict[str, Any],
        status: str = "active",
        workspace_id: str = "ws_1",
        name: str = "Test Workflow",
        is_template: bool = False,
    ) -> WorkflowGraph:
        repository = WorkflowRepository(db_session)
        graph = WorkflowGraph.from_definition(
            definition,
            workspace_id=workspace_id,
            name=name,
            status=status,
            is_template=is_template,
            created_by_id="user_1",
        )
        workflow = repository.save(graph)
        return repository.load_graph(workflow.id)

    return _make


# ============================================================================
# IN-MEMORY COLLABORATORS
# ============================================================================

class InMemoryLeadStore(LeadStore):
    """
    Versioned lead store.

    `force_conflicts` makes the next N updates fail with VersionConflict, the
    way a concurrent writer would (the stored version moves on).
    """

    def __init__(self, leads: Optional[Dict[str, Dict[str, Any]]] = None, workspace_id: str = "ws_1"):
        self.leads: Dict[str, LeadSnapshot] = {
            lead_id: LeadSnapshot(id=lead_id, workspace_id=workspace_id, version=1, data=data)
            for lead_id, data in (leads or {}).items()
        }
        self.force_conflicts = 0
        self.get_calls: List[str] = []
        self.writes: List[Dict[str, Any]] = []

    async def get(self, lead_id: str) -> LeadSnapshot:
        self.get_calls.append(lead_id)
        if lead_id not in self.leads:
            raise KeyError(f"Lead {lead_id} not found")
        return self.leads[lead_id]

    async def update(self, lead_id: str, fields: Dict[str, Any], expected_version: int) -> LeadSnapshot:
        current = self.leads[lead_id]
        if self.force_conflicts:
            self.force_conflicts -= 1
            self.leads[lead_id] = current.model_copy(update={"version": current.version + 1})
            raise VersionConflict("Lead changed", lead_id=lead_id, expected_version=expected_version)
        if current.version != expected_version:
            raise VersionConflict("Lead changed", lead_id=lead_id, expected_version=expected_version)
        updated = LeadSnapshot(
            id=lead_id,
            workspace_id=current.workspace_id,
            version=current.version + 1,
            data={**current.data, **fields},
        )
        self.leads[lead_id] = updated
        self.writes.append({"lead_id": lead_id, "fields": fields})
        return updated


class RecordingMessageQueue(MessageQueue):
    def __init__(self):
        self.calls: List[Dict[str, Any]] = []

    async def enqueue(self, lead_id, platform, message_type, content, priority=0, scheduled_at=None, template_id=None):
        self.calls.append({
            "lead_id": lead_id,
            "platform": platform,
            "message_type": message_type,
            "content": content,
            "priority": priority,
            "scheduled_at": scheduled_at,
            "template_id": template_id,
        })
        return f"msg_{len(self.calls)}"


class RecordingTagStore(TagStore):
    def __init__(self):
        self.attached: List[tuple] = []
        self.detached: List[tuple] = []

    async def attach(self, lead_id, tag_id):
        self.attached.append((lead_id, tag_id))

    async def detach(self, lead_id, tag_id):
        self.detached.append((lead_id, tag_id))


class LeadScoring(ScoringService):
    """Adjusts the `score` field directly on the lead store."""

    def __init__(self, leads: InMemoryLeadStore):
        self.leads = leads
        self.calls: List[tuple] = []

    async def adjust(self, lead_id, delta):
        self.calls.append((lead_id, delta))
        current = self.leads.leads[lead_id]
        new_score = current.data.get("score", 0) + delta
        self.leads.leads[lead_id] = current.model_copy(
            update={"version": current.version + 1, "data": {**current.data, "score": new_score}}
        )
        return new_score


class InMemoryAudienceStore(AudienceStore):
    def __init__(self, audiences: Optional[Dict[str, List[str]]] = None):
        self.audiences = {key: list(value) for key, value in (audiences or {}).items()}
        self.calls: List[tuple] = []

    async def add(self, audience_id, lead_id):
        self.calls.append(("add", audience_id, lead_id))
        members = self.audiences.setdefault(audience_id, [])
        if lead_id not in members:
            members.append(lead_id)

    async def remove(self, audience_id, lead_id):
        self.calls.append(("remove", audience_id, lead_id))
        if lead_id in self.audiences.get(audience_id, []):
            self.audiences[audience_id].remove(lead_id)

    async def members(self, audience_id):
        return list(self.audiences.get(audience_id, []))


class RecordingAgentQueue(AgentQueue):
    def __init__(self):
        self.calls: List[tuple] = []

    async def enqueue(self, lead_id, agent_task, payload):
        self.calls.append((lead_id, agent_task, payload))
        return f"agent_task_{len(self.calls)}"


class RecordingWebhookTransport(WebhookTransport):
    def __init__(self, status_code: int = 200):
        self.status_code = status_code
        self.calls: List[Dict[str, Any]] = []

    async def post(self, url, signed_payload, timeout):
        self.calls.append({"url": url, "payload": signed_payload, "timeout": timeout})
        return self.status_code


def build_collaborators(leads: Optional[Dict[str, Dict[str, Any]]] = None, audiences=None) -> Collaborators:
    lead_store = InMemoryLeadStore(leads)
    return Collaborators(
        leads=lead_store,
        messages=RecordingMessageQueue(),
        tags=RecordingTagStore(),
        scoring=LeadScoring(lead_store),
        audiences=InMemoryAudienceStore(audiences),
        agents=RecordingAgentQueue(),
        webhooks=RecordingWebhookTransport(),
    )


def collaborator_calls(collaborators: Collaborators) -> int:
    """Total number of effectful calls recorded across every fake."""
    return (
        len(collaborators.leads.writes)
        + len(collaborators.messages.calls)
        + len(collaborators.tags.attached)
        + len(collaborators.tags.detached)
        + len(collaborators.scoring.calls)
        + len(collaborators.audiences.calls)
        + len(collaborators.agents.calls)
        + len(collaborators.webhooks.calls)
    )


@pytest.fixture
def collaborators():
    """Collaborators with two leads in workspace ws_1 and one audience."""
    return build_collaborators(
        leads={
            "lead_1": {"full_name": "Ada Lovelace", "score": 85, "stage_id": "new", "email": "ada@example.com"},
            "lead_2": {"full_name": "Alan Turing", "score": 40, "stage_id": "new", "email": ""},
            "A": {"score": 10},
            "B": {"score": 20},
            "C": {"score": 30},
        },
        audiences={"aud_vip": ["A", "B"]},
    )


# ============================================================================
# WORKFLOW DEFINITION FIXTURES
# ============================================================================

@pytest.fixture
def tag_on_stage_entry():
    """
    Scenario A: stage_entry(Qualified) -> add_tag(Hot) -> end
    """
    return {
        "nodes": [
            {"id": "t1", "type": "trigger_lead_stage_entry", "config": {"stage_id": "qualified"}},
            {"id": "a1", "type": "action_add_tag", "config": {"tag_id": "hot"}},
            {"id": "end", "type": "end"},
        ],
        "edges": [
            {"id": "e1", "source": "t1", "target": "a1"},
            {"id": "e2", "source": "a1", "target": "end"},
        ],
    }


@pytest.fixture
def score_branch_workflow():
    """
    Scenario B: condition(score >= 80) -> send_message (true) / increment_score(+5) (false)
    """
    return {
        "nodes": [
            {"id": "t1", "type": "trigger_manual"},
            {"id": "c1", "type": "condition", "config": {"field": "score", "operator": "gte", "value": 80}},
            {"id": "msg", "type": "action_send_message", "config": {"platform": "linkedin", "content": "Hi!"}},
            {"id": "inc", "type": "action_increment_score", "config": {"amount": 5}},
            {"id": "end", "type": "end"},
        ],
        "edges": [
            {"id": "e1", "source": "t1", "target": "c1"},
            {"id": "e2", "source": "c1", "target": "msg", "condition": "true"},
            {"id": "e3", "source": "c1", "target": "inc", "condition": "false"},
            {"id": "e4", "source": "msg", "target": "end"},
            {"id": "e5", "source": "inc", "target": "end"},
        ],
    }


@pytest.fixture
def delayed_stage_change():
    """
    Scenario C: delay(3600s) -> change_stage(contacted) -> end
    """
    return {
        "nodes": [
            {"id": "t1", "type": "trigger_manual"},
            {"id": "d1", "type": "delay", "config": {"delay_seconds": 3600}},
            {"id": "s1", "type": "action_change_stage", "config": {"target_stage_id": "contacted"}},
            {"id": "end", "type": "end"},
        ],
        "edges": [
            {"id": "e1", "source": "t1", "target": "d1"},
            {"id": "e2", "source": "d1", "target": "s1"},
            {"id": "e3", "source": "s1", "target": "end"},
        ],
    }


@pytest.fixture
def bounded_loop_workflow():
    """
    Scenario D: loop(leads=[A, B, C], max_iterations=2) around add_tag
    """
    return {
        "nodes": [
            {"id": "t1", "type": "trigger_manual"},
            {
                "id": "l1",
                "type": "loop",
                "config": {"loop_type": "leads", "loop_list": ["A", "B", "C"], "max_iterations": 2},
            },
            {"id": "tag", "type": "action_add_tag", "config": {"tag_id": "batch"}},
            {"id": "end", "type": "end"},
        ],
        "edges": [
            {"id": "e1", "source": "t1", "target": "l1"},
            {"id": "e2", "source": "l1", "target": "tag", "condition": "body"},
            {"id": "e3", "source": "l1", "target": "end", "condition": "done"},
        ],
    }


@pytest.fixture
def fixed_now():
    return datetime(2026, 1, 15, 12, 0, 0)


@pytest.fixture
def count_calls():
    """Function counting effectful collaborator calls (see collaborator_calls)."""
    return collaborator_calls
