"""
Trigger Matcher

Turns an external event into the list of (workflow, entry node, lead) pairs
that should start a run.

- Lead events (stage entry, score change, field change) scan the active
  workflows of the lead's workspace.
- time_reached scans every active workflow for time-based triggers whose
  scheduled time fell inside the sweep window (since, now].
- Manual and webhook events target one workflow directly.

`match_event` is pure: it reads graphs and returns matches, nothing else.
A trigger that cannot be evaluated raises MatchError internally; it is logged
and skipped so the remaining workflows still match.
"""

import logging
from datetime import datetime
from typing import Annotated, Any, Dict, Iterable, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter

from .exceptions import MatchError, StructuralError
from .graph import WorkflowGraph, nodes_by_type

logger = logging.getLogger(__name__)


# ============================================================================
# EVENTS
# ============================================================================

class StageEntryEvent(BaseModel):
    kind: Literal["stage_entry"] = "stage_entry"
    lead_id: str
    workspace_id: str
    stage_id: str


class ScoreChangeEvent(BaseModel):
    kind: Literal["score_change"] = "score_change"
    lead_id: str
    workspace_id: str
    old_score: int
    new_score: int


class FieldChangeEvent(BaseModel):
    kind: Literal["field_change"] = "field_change"
    lead_id: str
    workspace_id: str
    field: str
    old_value: Optional[Any] = None
    new_value: Optional[Any] = None


class TimeReachedEvent(BaseModel):
    kind: Literal["time_reached"] = "time_reached"
    now: datetime
    since: datetime


class WebhookReceivedEvent(BaseModel):
    kind: Literal["webhook_received"] = "webhook_received"
    workflow_id: int
    payload: Dict[str, Any] = Field(default_factory=dict)
    lead_id: Optional[str] = None


class ManualEvent(BaseModel):
    kind: Literal["manual"] = "manual"
    workflow_id: int
    lead_id: str


Event = Annotated[
    Union[
        StageEntryEvent, ScoreChangeEvent, FieldChangeEvent,
        TimeReachedEvent, WebhookReceivedEvent, ManualEvent,
    ],
    Field(discriminator="kind"),
]

_event_adapter = TypeAdapter(Event)


def parse_event(data: Dict[str, Any]):
    """Build the typed event for a {"kind": ..., ...} dict (raises pydantic.ValidationError)."""
    return _event_adapter.validate_python(data)


# Event kind -> trigger node type it wakes up
TRIGGER_TYPE_FOR_EVENT = {
    "stage_entry": "trigger_lead_stage_entry",
    "score_change": "trigger_lead_score_change",
    "field_change": "trigger_lead_field_change",
    "time_reached": "trigger_time_based",
    "webhook_received": "trigger_webhook",
    "manual": "trigger_manual",
}


class TriggerMatch(BaseModel):
    workflow: WorkflowGraph
    entry_node_id: str
    lead_id: str
    trigger_kind: str
    trigger_data: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        arbitrary_types_allowed = True

    @property
    def workflow_id(self) -> Optional[int]:
        return self.workflow.workflow_id


# ============================================================================
# PREDICATES
# ============================================================================

def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return (value - value.utcoffset()).replace(tzinfo=None)
    return value


def score_crossed(threshold: int, old_score: int, new_score: int, direction: str) -> bool:
    """
    up:   old < threshold <= new
    down: old >= threshold > new
    any:  either of the above
    """
    went_up = old_score < threshold <= new_score
    went_down = old_score >= threshold > new_score
    if direction == "up":
        return went_up
    if direction == "down":
        return went_down
    return went_up or went_down


def _lead_for_webhook(event: WebhookReceivedEvent) -> str:
    lead_id = event.lead_id or event.payload.get("lead_id")
    if not lead_id:
        raise MatchError(
            f"Webhook for workflow {event.workflow_id} carries no lead_id",
            workflow_id=event.workflow_id,
        )
    return str(lead_id)


def _matches_for_workflow(event, graph: WorkflowGraph) -> List[TriggerMatch]:
    trigger_type = TRIGGER_TYPE_FOR_EVENT[event.kind]
    matches: List[TriggerMatch] = []

    for node in nodes_by_type(graph, trigger_type):
        config = node.config

        if event.kind == "stage_entry":
            if config.stage_id is None or config.stage_id == event.stage_id:
                matches.append(TriggerMatch(
                    workflow=graph, entry_node_id=node.id, lead_id=event.lead_id,
                    trigger_kind=event.kind, trigger_data={"stage_id": event.stage_id},
                ))

        elif event.kind == "score_change":
            if score_crossed(config.threshold, event.old_score, event.new_score, config.direction):
                matches.append(TriggerMatch(
                    workflow=graph, entry_node_id=node.id, lead_id=event.lead_id,
                    trigger_kind=event.kind,
                    trigger_data={"old_score": event.old_score, "new_score": event.new_score},
                ))

        elif event.kind == "field_change":
            if config.field_name != event.field:
                continue
            if config.field_value is not None and config.field_value != event.new_value:
                continue
            matches.append(TriggerMatch(
                workflow=graph, entry_node_id=node.id, lead_id=event.lead_id,
                trigger_kind=event.kind,
                trigger_data={"field": event.field, "old_value": event.old_value, "new_value": event.new_value},
            ))

        elif event.kind == "time_reached":
            scheduled_at = _naive_utc(config.scheduled_at)
            if _naive_utc(event.since) < scheduled_at <= _naive_utc(event.now):
                for lead_id in config.lead_ids:
                    matches.append(TriggerMatch(
                        workflow=graph, entry_node_id=node.id, lead_id=lead_id,
                        trigger_kind=event.kind, trigger_data={"scheduled_at": scheduled_at.isoformat()},
                    ))

        elif event.kind == "webhook_received":
            if config.event_name and event.payload.get("event") != config.event_name:
                continue
            matches.append(TriggerMatch(
                workflow=graph, entry_node_id=node.id, lead_id=_lead_for_webhook(event),
                trigger_kind=event.kind, trigger_data={"payload": event.payload},
            ))

        elif event.kind == "manual":
            matches.append(TriggerMatch(
                workflow=graph, entry_node_id=node.id, lead_id=event.lead_id, trigger_kind=event.kind,
            ))

    return matches


def match_event(event, workflows: Iterable[WorkflowGraph]) -> List[TriggerMatch]:
    """
    Match one event against candidate workflow graphs.

    Only `active` workflows match. Lead events only match workflows of the
    event's workspace; manual/webhook events only their target workflow.

    Returns:
        One TriggerMatch per (workflow, trigger node, lead). A lead may match
        zero, one or many workflows.
    """
    matches: List[TriggerMatch] = []
    for graph in workflows:
        if graph.status != "active" or graph.is_template:
            continue
        if event.kind in ("manual", "webhook_received") and graph.workflow_id != event.workflow_id:
            continue
        if hasattr(event, "workspace_id") and graph.workspace_id != event.workspace_id:
            continue
        try:
            matches.extend(_matches_for_workflow(event, graph))
        except MatchError as e:
            logger.warning(f"Skipping workflow {graph.workflow_id} for {event.kind} event: {e.message}")
    return matches


class TriggerMatcher:
    """
    Loads candidate workflows through the repository, then runs `match_event`.

    A workflow whose stored definition no longer parses is logged and skipped.
    """

    def __init__(self, repository):
        self.repository = repository

    def _candidate_rows(self, event):
        if event.kind in ("manual", "webhook_received"):
            row = self.repository.get(event.workflow_id)
            return [row] if row is not None else []
        workspace_id = getattr(event, "workspace_id", None)
        return self.repository.list_active(workspace_id)

    def match(self, event) -> List[TriggerMatch]:
        graphs: List[WorkflowGraph] = []
        for row in self._candidate_rows(event):
            try:
                graphs.append(WorkflowGraph.from_row(row))
            except StructuralError as e:
                error = MatchError(f"Workflow {row.id} definition is invalid: {e.message}", workflow_id=row.id)
                logger.error(f"{error.message} ({len(e.issues)} issue(s))")
        matches = match_event(event, graphs)
        logger.info(f"{event.kind} event matched {len(matches)} trigger(s) across {len(graphs)} workflow(s)")
        return matches
