"""
Unit Tests for WorkflowRepository (status transitions, cloning, templates)
"""

import copy

import pytest

from leadflow.core.exceptions import StructuralError
from leadflow.core.graph import WorkflowGraph
from leadflow.core.repository import WorkflowRepository


@pytest.mark.unit
def test_activation_validates(db_session, make_workflow, tag_on_stage_entry):
    definition = copy.deepcopy(tag_on_stage_entry)
    definition["nodes"] = [node for node in definition["nodes"] if node["id"] != "t1"]
    definition["edges"] = [edge for edge in definition["edges"] if edge["source"] != "t1"]
    graph = make_workflow(definition, status="draft")
    repository = WorkflowRepository(db_session)

    with pytest.raises(StructuralError) as exc_info:
        repository.activate(graph.workflow_id)

    assert [issue["code"] for issue in exc_info.value.issues] == ["missing_trigger"]
    assert repository.get(graph.workflow_id).status == "draft"


@pytest.mark.unit
def test_status_transitions(db_session, make_workflow, tag_on_stage_entry):
    graph = make_workflow(tag_on_stage_entry, status="draft")
    repository = WorkflowRepository(db_session)

    assert repository.activate(graph.workflow_id).status == "active"
    assert [row.id for row in repository.list_active("ws_1")] == [graph.workflow_id]
    assert repository.set_status(graph.workflow_id, "paused").status == "paused"
    assert repository.list_active("ws_1") == []

    with pytest.raises(ValueError, match="Unknown workflow status"):
        repository.set_status(graph.workflow_id, "deleted")
    with pytest.raises(LookupError):
        repository.set_status(12345, "paused")


@pytest.mark.unit
def test_templates_cannot_be_activated(db_session, make_workflow, tag_on_stage_entry):
    template = make_workflow(tag_on_stage_entry, status="draft", is_template=True)

    with pytest.raises(StructuralError, match="Templates cannot be activated"):
        WorkflowRepository(db_session).activate(template.workflow_id)


@pytest.mark.unit
def test_clone_across_workspaces(db_session, make_workflow, score_branch_workflow):
    source = make_workflow(score_branch_workflow, name="Nurture")
    repository = WorkflowRepository(db_session)

    row = repository.clone(source.workflow_id, "ws_2", created_by_id="user_2")

    assert row.id != source.workflow_id
    assert row.workspace_id == "ws_2"
    assert row.status == "draft"
    assert row.name == "Nurture (Copy)"
    assert row.created_by_id == "user_2"
    clone = WorkflowGraph.from_row(row)
    assert len(clone.nodes) == len(source.nodes)
    assert len(clone.edges) == len(source.edges)


@pytest.mark.unit
def test_clone_missing_workflow(db_session):
    with pytest.raises(LookupError):
        WorkflowRepository(db_session).clone(999, "ws_2")


@pytest.mark.unit
def test_instantiate_template_counts_uses(db_session, make_workflow, tag_on_stage_entry):
    template = make_workflow(tag_on_stage_entry, status="draft", is_template=True, name="Hot leads")
    repository = WorkflowRepository(db_session)

    first = repository.instantiate_template(template.workflow_id, "ws_5", "Hot leads for ws_5")
    repository.instantiate_template(template.workflow_id, "ws_6", "Hot leads for ws_6")

    assert first.status == "draft"
    assert first.is_template is False
    assert first.workspace_id == "ws_5"
    assert repository.get(template.workflow_id).stats["uses"] == 2


@pytest.mark.unit
def test_instantiate_non_template(db_session, make_workflow, tag_on_stage_entry):
    plain = make_workflow(tag_on_stage_entry)

    with pytest.raises(StructuralError, match="not a template"):
        WorkflowRepository(db_session).instantiate_template(plain.workflow_id, "ws_5", "Copy")
