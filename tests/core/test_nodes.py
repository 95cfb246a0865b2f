"""
Tests for Node System

Tests cover:
- Tagged-union parsing (type selects the config variant)
- Config validation per node type
- Immutability (frozen nodes)
- Factory function (create_node_from_dict)
"""

import pytest
from datetime import datetime
from pydantic import ValidationError

from leadflow.core.nodes import (
    ALL_NODE_TYPES,
    AudienceAction,
    ConditionNode,
    DelayConfig,
    EndNode,
    LoopConfig,
    ManualTrigger,
    ScoreAdjustAction,
    StageEntryTrigger,
    TagAction,
    create_node_from_dict,
)


# =============================================================================
# Factory Tests
# =============================================================================

@pytest.mark.unit
def test_node_type_counts():
    """Six triggers, thirteen actions, four flow nodes"""
    assert len(ALL_NODE_TYPES) == 23
    assert len(set(ALL_NODE_TYPES)) == 23


@pytest.mark.unit
def test_create_trigger_from_dict():
    node = create_node_from_dict({
        "id": "t1",
        "type": "trigger_lead_stage_entry",
        "config": {"stage_id": "qualified"},
    })
    assert isinstance(node, StageEntryTrigger)
    assert node.config.stage_id == "qualified"
    assert node.is_trigger
    assert not node.is_action


@pytest.mark.unit
def test_shared_variant_keeps_type():
    """add/remove tag share one node class; the type decides the behaviour"""
    add = create_node_from_dict({"id": "a", "type": "action_add_tag", "config": {"tag_id": "hot"}})
    remove = create_node_from_dict({"id": "r", "type": "action_remove_tag", "config": {"tag_id": "hot"}})
    assert isinstance(add, TagAction) and isinstance(remove, TagAction)
    assert add.type == "action_add_tag"
    assert remove.type == "action_remove_tag"
    assert add.is_action


@pytest.mark.unit
def test_null_config_uses_default():
    node = create_node_from_dict({"id": "m", "type": "trigger_manual", "config": None})
    assert isinstance(node, ManualTrigger)
    end = create_node_from_dict({"id": "end", "type": "end"})
    assert isinstance(end, EndNode)


@pytest.mark.unit
def test_position_is_accepted_and_ignored():
    node = create_node_from_dict({
        "id": "end", "type": "end", "position": {"x": 120.0, "y": 40.5},
    })
    assert node.position == {"x": 120.0, "y": 40.5}


@pytest.mark.unit
def test_unknown_type_rejected():
    with pytest.raises(ValueError, match="Unknown node type"):
        create_node_from_dict({"id": "x", "type": "action_launch_rocket"})


@pytest.mark.unit
def test_config_from_other_variant_rejected():
    """A tag node cannot carry message fields"""
    with pytest.raises(ValueError, match="Failed to create action_add_tag"):
        create_node_from_dict({
            "id": "a1",
            "type": "action_add_tag",
            "config": {"tag_id": "hot", "platform": "linkedin"},
        })


@pytest.mark.unit
def test_missing_required_config_rejected():
    with pytest.raises(ValueError):
        create_node_from_dict({"id": "s", "type": "trigger_lead_score_change", "config": {}})


# =============================================================================
# Config Validation Tests
# =============================================================================

@pytest.mark.unit
def test_condition_operator_must_be_known():
    node = ConditionNode(id="c", type="condition", config={"field": "score", "operator": "gte", "value": 80})
    assert node.config.case_sensitive is False

    with pytest.raises(ValidationError):
        ConditionNode(id="c", type="condition", config={"field": "score", "operator": "between"})


@pytest.mark.unit
def test_delay_needs_exactly_one_source():
    assert DelayConfig(delay_seconds=0).delay_seconds == 0
    assert DelayConfig(delay_until=datetime(2030, 1, 1)).delay_until.year == 2030

    with pytest.raises(ValidationError, match="exactly one"):
        DelayConfig()
    with pytest.raises(ValidationError, match="exactly one"):
        DelayConfig(delay_seconds=10, delay_until=datetime(2030, 1, 1))


@pytest.mark.unit
def test_delay_seconds_bounds():
    with pytest.raises(ValidationError):
        DelayConfig(delay_seconds=-1)
    with pytest.raises(ValidationError):
        DelayConfig(delay_seconds=86401)


@pytest.mark.unit
def test_loop_defaults_to_bounded():
    config = LoopConfig(loop_type="custom_list", loop_list=[1, 2, 3])
    assert config.max_iterations == 100


@pytest.mark.unit
def test_loop_rejects_unbounded_or_invalid_sources():
    with pytest.raises(ValidationError):
        LoopConfig(loop_type="custom_list", max_iterations=0)
    with pytest.raises(ValidationError):
        LoopConfig(loop_type="custom_list", max_iterations=1001)
    with pytest.raises(ValidationError, match="audience_id"):
        LoopConfig(loop_type="audience")
    with pytest.raises(ValidationError, match="lead ids"):
        LoopConfig(loop_type="leads", loop_list=["A", 7])


@pytest.mark.unit
def test_webhook_url_scheme():
    ok = create_node_from_dict({
        "id": "w", "type": "action_send_webhook",
        "config": {"url": "https://hooks.example.com/in", "secret": "s3cret"},
    })
    assert ok.config.timeout_seconds == 10

    with pytest.raises(ValueError):
        create_node_from_dict({
            "id": "w", "type": "action_send_webhook", "config": {"url": "ftp://example.com"},
        })


@pytest.mark.unit
def test_update_lead_field_needs_fields():
    with pytest.raises(ValueError):
        create_node_from_dict({"id": "u", "type": "action_update_lead_field", "config": {"fields": {}}})


@pytest.mark.unit
def test_score_amount_positive():
    node = ScoreAdjustAction(id="s", type="action_decrement_score", config={"amount": 3})
    assert node.config.amount == 3
    with pytest.raises(ValidationError):
        ScoreAdjustAction(id="s", type="action_increment_score", config={"amount": 0})


# =============================================================================
# Immutability / Base Validation Tests
# =============================================================================

@pytest.mark.unit
def test_node_immutable():
    node = AudienceAction(id="aud", type="action_add_to_audience", config={"audience_id": "vip"})
    with pytest.raises(ValidationError):
        node.id = "modified"


@pytest.mark.unit
def test_whitespace_id_rejected():
    with pytest.raises(ValidationError, match="Node ID cannot be empty"):
        EndNode(id="   ", type="end")


@pytest.mark.unit
def test_extra_node_fields_rejected():
    with pytest.raises(ValueError):
        create_node_from_dict({"id": "end", "type": "end", "code": "print(1)"})
