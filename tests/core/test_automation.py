"""
Integration Tests for AutomationService

Tests cover:
- Event -> matching workflows -> one run each
- Failures contained per run
- Scheduler sweep: due runs resumed exactly once, time triggers fired once
- A crashed resumption fails its run instead of leaving it claimed
"""

import pytest
from unittest.mock import patch
from datetime import timedelta

from sqlalchemy.exc import OperationalError

from leadflow.core.automation import AutomationService
from leadflow.core.run_store import RunStore
from leadflow.core.triggers import ManualEvent, StageEntryEvent
from leadflow.models import TriggerFiring


@pytest.fixture
def service(db_session, collaborators):
    return AutomationService(db_session, collaborators)


@pytest.mark.integration
@pytest.mark.asyncio
async def test_stage_entry_event_runs_matching_workflow(db_session, service, collaborators, make_workflow, tag_on_stage_entry):
    graph = make_workflow(tag_on_stage_entry)
    make_workflow(tag_on_stage_entry, status="draft")
    make_workflow(tag_on_stage_entry, workspace_id="ws_other")

    results = await service.handle_event(StageEntryEvent(lead_id="lead_1", workspace_id="ws_1", stage_id="qualified"))

    assert [result["status"] for result in results] == ["succeeded"]
    assert collaborators.tags.attached == [("lead_1", "hot")]
    runs = RunStore(db_session).list_runs(graph.workflow_id)
    assert [(run.lead_id, run.trigger_kind) for run in runs] == [("lead_1", "stage_entry")]


@pytest.mark.integration
@pytest.mark.asyncio
async def test_other_stage_matches_nothing(service, collaborators, make_workflow, tag_on_stage_entry):
    make_workflow(tag_on_stage_entry)

    results = await service.handle_event(StageEntryEvent(lead_id="lead_1", workspace_id="ws_1", stage_id="lost"))

    assert results == []
    assert collaborators.tags.attached == []


@pytest.mark.integration
@pytest.mark.asyncio
async def test_failing_run_does_not_block_others(service, collaborators, make_workflow):
    def workflow(action):
        return {
            "nodes": [{"id": "t1", "type": "trigger_lead_stage_entry"}, action],
            "edges": [{"id": "e1", "source": "t1", "target": action["id"]}],
        }

    make_workflow(workflow({"id": "hook", "type": "action_send_webhook", "config": {"url": "https://down.example.com"}}))
    make_workflow(workflow({"id": "tag", "type": "action_add_tag", "config": {"tag_id": "ok"}}))
    collaborators.webhooks.status_code = 503

    results = await service.handle_event(StageEntryEvent(lead_id="lead_1", workspace_id="ws_1", stage_id="s"))

    assert sorted(result["status"] for result in results) == ["failed", "succeeded"]
    assert collaborators.tags.attached == [("lead_1", "ok")]


@pytest.mark.integration
@pytest.mark.asyncio
async def test_manual_event(service, collaborators, make_workflow, score_branch_workflow):
    graph = make_workflow(score_branch_workflow)

    results = await service.handle_event(ManualEvent(workflow_id=graph.workflow_id, lead_id="lead_2"))

    assert results[0]["status"] == "succeeded"
    assert collaborators.leads.leads["lead_2"].data["score"] == 45


@pytest.mark.integration
@pytest.mark.asyncio
async def test_sweep_resumes_due_runs_once(db_session, service, collaborators, make_workflow, delayed_stage_change):
    graph = make_workflow(delayed_stage_change)
    started = await service.handle_event(ManualEvent(workflow_id=graph.workflow_id, lead_id="lead_1"))
    run_id = started[0]["run_id"]
    wake_at = started[0]["wake_at"]

    not_yet = await service.sweep(now=wake_at - timedelta(seconds=1))
    first = await service.sweep(now=wake_at)
    second = await service.sweep(now=wake_at + timedelta(minutes=1))

    assert not_yet["resumed"] == []
    assert first["resumed"] == [run_id]
    assert second["resumed"] == []
    assert RunStore(db_session).get_run(run_id).status == "succeeded"
    assert collaborators.leads.leads["lead_1"].data["stage_id"] == "contacted"
    assert len(collaborators.leads.writes) == 1


@pytest.mark.integration
@pytest.mark.asyncio
async def test_sweep_fires_time_triggers(service, collaborators, make_workflow, fixed_now):
    make_workflow({
        "nodes": [
            {
                "id": "t1", "type": "trigger_time_based",
                "config": {"scheduled_at": fixed_now.isoformat(), "lead_ids": ["lead_1", "lead_2"]},
            },
            {"id": "tag", "type": "action_add_tag", "config": {"tag_id": "scheduled"}},
        ],
        "edges": [{"id": "e1", "source": "t1", "target": "tag"}],
    })

    summary = await service.sweep(now=fixed_now + timedelta(seconds=30), since=fixed_now - timedelta(seconds=30))
    later = await service.sweep(now=fixed_now + timedelta(seconds=90), since=fixed_now + timedelta(seconds=30))

    assert summary["time_triggered"] == 2
    assert later["time_triggered"] == 0
    assert sorted(collaborators.tags.attached) == [("lead_1", "scheduled"), ("lead_2", "scheduled")]


@pytest.mark.integration
@pytest.mark.asyncio
async def test_overlapping_sweeps_fire_time_trigger_once(db_session, service, collaborators, make_workflow, fixed_now):
    make_workflow({
        "nodes": [
            {
                "id": "t1", "type": "trigger_time_based",
                "config": {"scheduled_at": fixed_now.isoformat(), "lead_ids": ["lead_1", "lead_2"]},
            },
            {"id": "tag", "type": "action_add_tag", "config": {"tag_id": "scheduled"}},
        ],
        "edges": [{"id": "e1", "source": "t1", "target": "tag"}],
    })
    other = AutomationService(db_session, collaborators)
    window_start = fixed_now - timedelta(seconds=60)

    # Two schedulers that read the same window start before either advanced it
    first = await service.sweep(now=fixed_now + timedelta(seconds=1), since=window_start)
    second = await other.sweep(now=fixed_now + timedelta(seconds=2), since=window_start)

    assert first["time_triggered"] == 2
    assert second["time_triggered"] == 0
    assert sorted(collaborators.tags.attached) == [("lead_1", "scheduled"), ("lead_2", "scheduled")]
    firings = db_session.query(TriggerFiring).order_by(TriggerFiring.lead_id).all()
    assert [(firing.lead_id, firing.scheduled_at) for firing in firings] == [
        ("lead_1", fixed_now), ("lead_2", fixed_now),
    ]
    assert all(firing.run_id is not None for firing in firings)


@pytest.mark.integration
@pytest.mark.asyncio
async def test_sweep_fails_run_when_resumption_crashes(db_session, service, make_workflow, delayed_stage_change):
    graph = make_workflow(delayed_stage_change)
    started = await service.handle_event(ManualEvent(workflow_id=graph.workflow_id, lead_id="lead_1"))
    run_id = started[0]["run_id"]
    wake_at = started[0]["wake_at"]

    disk_error = OperationalError("INSERT INTO run_steps", {}, Exception("disk I/O error"))
    with patch.object(RunStore, "record_step", side_effect=disk_error):
        crashed = await service.sweep(now=wake_at)
    later = await service.sweep(now=wake_at + timedelta(minutes=5))

    assert crashed["resumed"] == []
    assert later["resumed"] == []
    run = RunStore(db_session).get_run(run_id)
    db_session.refresh(run)
    assert run.status == "failed"
    assert run.failure_reason == "internal_error"
    assert "disk I/O error" in run.error
    assert run.claimed_at is None
