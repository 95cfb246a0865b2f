"""
Node System for Leadflow Workflow Engine

This module defines the node types that compose automation workflows:
- Trigger nodes: where a run enters the graph (stage entry, score change, ...)
- Action nodes: effectful steps dispatched to external collaborators
- Flow control: condition (true/false branch), delay, loop, end

Every node carries a type-specific `config`. Configs form a tagged union keyed
by the node `type`: each variant only accepts its own fields, unknown fields are
rejected, and invalid combinations fail at parse time.

All nodes are immutable (frozen) Pydantic models with validation.
"""

from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, field_validator, model_validator


# ============================================================================
# NODE TYPE NAMES
# ============================================================================

TRIGGER_TYPES = (
    "trigger_lead_stage_entry",
    "trigger_lead_score_change",
    "trigger_lead_field_change",
    "trigger_time_based",
    "trigger_webhook",
    "trigger_manual",
)

ACTION_TYPES = (
    "action_send_message",
    "action_add_tag",
    "action_remove_tag",
    "action_assign_user",
    "action_change_stage",
    "action_update_lead_field",
    "action_enqueue_agent",
    "action_send_webhook",
    "action_add_to_audience",
    "action_remove_from_audience",
    "action_wait_until_time",
    "action_increment_score",
    "action_decrement_score",
)

FLOW_TYPES = ("condition", "delay", "loop", "end")

ALL_NODE_TYPES = TRIGGER_TYPES + ACTION_TYPES + FLOW_TYPES

CONDITION_OPERATORS = (
    "eq", "ne", "gt", "gte", "lt", "lte",
    "contains", "not_contains", "is_empty", "is_not_empty",
)

MAX_DELAY_SECONDS = 86400
MAX_LOOP_ITERATIONS = 1000


# ============================================================================
# CONFIG VARIANTS
# ============================================================================

class NodeConfig(BaseModel):
    """Base for every config variant. Unknown fields are rejected."""

    class Config:
        frozen = True
        extra = "forbid"


class EmptyConfig(NodeConfig):
    """Manual trigger and end node carry no configuration."""
    pass


class StageEntryConfig(NodeConfig):
    stage_id: Optional[str] = Field(None, description="Stage to match (None = any stage)")


class ScoreChangeConfig(NodeConfig):
    threshold: int = Field(..., description="Score threshold that must be crossed")
    direction: Literal["up", "down", "any"] = "up"


class FieldChangeConfig(NodeConfig):
    field_name: str = Field(..., min_length=1)
    field_value: Optional[Any] = Field(None, description="Only match when the new value equals this")


class TimeBasedConfig(NodeConfig):
    scheduled_at: datetime
    lead_ids: List[str] = Field(default_factory=list)


class WebhookTriggerConfig(NodeConfig):
    event_name: Optional[str] = Field(None, description="Only match payloads with this 'event'")
    secret: Optional[str] = Field(None, description="Shared secret used to verify inbound signatures")


class SendMessageConfig(NodeConfig):
    platform: str = Field(..., min_length=1)
    message_type: str = "text"
    content: str = Field(..., min_length=1)
    template_id: Optional[str] = None
    priority: int = 0
    scheduled_at: Optional[datetime] = None


class TagConfig(NodeConfig):
    tag_id: str = Field(..., min_length=1)


class AssignUserConfig(NodeConfig):
    user_id: str = Field(..., min_length=1)


class ChangeStageConfig(NodeConfig):
    target_stage_id: str = Field(..., min_length=1)


class UpdateLeadFieldConfig(NodeConfig):
    fields: Dict[str, Any]

    @field_validator("fields")
    @classmethod
    def validate_fields_not_empty(cls, v: Dict[str, Any]) -> Dict[str, Any]:
        if not v:
            raise ValueError("fields must contain at least one entry")
        return v


class EnqueueAgentConfig(NodeConfig):
    agent_task: str = Field(..., min_length=1)
    payload: Dict[str, Any] = Field(default_factory=dict)


class SendWebhookConfig(NodeConfig):
    url: str
    secret: Optional[str] = None
    timeout_seconds: int = Field(10, ge=1, le=60)
    payload: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("url")
    @classmethod
    def validate_url_scheme(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("Webhook url must start with http:// or https://")
        return v


class AudienceConfig(NodeConfig):
    audience_id: str = Field(..., min_length=1)


class WaitUntilConfig(NodeConfig):
    wait_until: datetime


class ScoreAdjustConfig(NodeConfig):
    amount: int = Field(..., ge=1)


class ConditionConfig(NodeConfig):
    field: str = Field(..., min_length=1, description="Dotted path into the lead snapshot")
    operator: Literal[
        "eq", "ne", "gt", "gte", "lt", "lte",
        "contains", "not_contains", "is_empty", "is_not_empty",
    ]
    value: Optional[Any] = None
    case_sensitive: bool = False


class DelayConfig(NodeConfig):
    delay_seconds: Optional[int] = Field(None, ge=0, le=MAX_DELAY_SECONDS)
    delay_until: Optional[datetime] = None

    @model_validator(mode="after")
    def validate_exactly_one(self) -> "DelayConfig":
        if (self.delay_seconds is None) == (self.delay_until is None):
            raise ValueError("Delay needs exactly one of delay_seconds or delay_until")
        return self


class LoopConfig(NodeConfig):
    loop_type: Literal["leads", "audience", "custom_list"]
    loop_list: List[Any] = Field(default_factory=list)
    audience_id: Optional[str] = None
    max_iterations: int = Field(100, ge=1, le=MAX_LOOP_ITERATIONS)

    @model_validator(mode="after")
    def validate_source(self) -> "LoopConfig":
        if self.loop_type == "audience" and not self.audience_id:
            raise ValueError("Loop over an audience requires audience_id")
        if self.loop_type == "leads":
            for item in self.loop_list:
                if not isinstance(item, str) or not item:
                    raise ValueError("Loop over leads requires a list of lead ids")
        return self


# ============================================================================
# NODES
# ============================================================================

class BaseNode(BaseModel):
    """
    Base class for all workflow nodes.

    All nodes have:
    - id: Unique identifier (unique within the workflow)
    - type: Node type, the discriminator for `config`
    - label: Optional human-readable label
    - position: Editor layout hint, ignored by execution

    Nodes are immutable (frozen=True) for safety.
    """

    id: str = Field(..., min_length=1, description="Unique node identifier")
    label: Optional[str] = Field(None, description="Human-readable label")
    position: Optional[Dict[str, float]] = Field(None, description="Cosmetic editor position")

    class Config:
        frozen = True
        extra = "forbid"

    @field_validator("id")
    @classmethod
    def validate_id_not_empty(cls, v: str) -> str:
        """Ensure ID is not empty or whitespace"""
        if not v.strip():
            raise ValueError("Node ID cannot be empty")
        return v

    @property
    def is_trigger(self) -> bool:
        return self.type in TRIGGER_TYPES

    @property
    def is_action(self) -> bool:
        return self.type in ACTION_TYPES


class StageEntryTrigger(BaseNode):
    type: Literal["trigger_lead_stage_entry"]
    config: StageEntryConfig = Field(default_factory=StageEntryConfig)


class ScoreChangeTrigger(BaseNode):
    type: Literal["trigger_lead_score_change"]
    config: ScoreChangeConfig


class FieldChangeTrigger(BaseNode):
    type: Literal["trigger_lead_field_change"]
    config: FieldChangeConfig


class TimeBasedTrigger(BaseNode):
    type: Literal["trigger_time_based"]
    config: TimeBasedConfig


class WebhookTrigger(BaseNode):
    type: Literal["trigger_webhook"]
    config: WebhookTriggerConfig = Field(default_factory=WebhookTriggerConfig)


class ManualTrigger(BaseNode):
    type: Literal["trigger_manual"]
    config: EmptyConfig = Field(default_factory=EmptyConfig)


class SendMessageAction(BaseNode):
    type: Literal["action_send_message"]
    config: SendMessageConfig


class TagAction(BaseNode):
    type: Literal["action_add_tag", "action_remove_tag"]
    config: TagConfig


class AssignUserAction(BaseNode):
    type: Literal["action_assign_user"]
    config: AssignUserConfig


class ChangeStageAction(BaseNode):
    type: Literal["action_change_stage"]
    config: ChangeStageConfig


class UpdateLeadFieldAction(BaseNode):
    type: Literal["action_update_lead_field"]
    config: UpdateLeadFieldConfig


class EnqueueAgentAction(BaseNode):
    type: Literal["action_enqueue_agent"]
    config: EnqueueAgentConfig


class SendWebhookAction(BaseNode):
    type: Literal["action_send_webhook"]
    config: SendWebhookConfig


class AudienceAction(BaseNode):
    type: Literal["action_add_to_audience", "action_remove_from_audience"]
    config: AudienceConfig


class WaitUntilAction(BaseNode):
    type: Literal["action_wait_until_time"]
    config: WaitUntilConfig


class ScoreAdjustAction(BaseNode):
    type: Literal["action_increment_score", "action_decrement_score"]
    config: ScoreAdjustConfig


class ConditionNode(BaseNode):
    """
    Evaluates (field, operator, value) against a fresh lead snapshot.

    Must have exactly one outgoing edge labelled "true" and one labelled "false".
    """

    type: Literal["condition"]
    config: ConditionConfig


class DelayNode(BaseNode):
    """
    Suspends the run until a wake time.

    Either a relative delay (delay_seconds, 0 passes straight through) or an
    absolute timestamp (delay_until, a past timestamp passes straight through).
    """

    type: Literal["delay"]
    config: DelayConfig


class LoopNode(BaseNode):
    """
    Runs the sub-graph behind its "body" edge once per item, bounded by
    max_iterations. Continues along its "done" edge (if any) afterwards.
    """

    type: Literal["loop"]
    config: LoopConfig


class EndNode(BaseNode):
    type: Literal["end"]
    config: EmptyConfig = Field(default_factory=EmptyConfig)


# Type alias for any node type
Node = Annotated[
    Union[
        StageEntryTrigger, ScoreChangeTrigger, FieldChangeTrigger,
        TimeBasedTrigger, WebhookTrigger, ManualTrigger,
        SendMessageAction, TagAction, AssignUserAction, ChangeStageAction,
        UpdateLeadFieldAction, EnqueueAgentAction, SendWebhookAction,
        AudienceAction, WaitUntilAction, ScoreAdjustAction,
        ConditionNode, DelayNode, LoopNode, EndNode,
    ],
    Field(discriminator="type"),
]

_node_adapter = TypeAdapter(Node)


def create_node_from_dict(node_data: Dict[str, Any]) -> BaseNode:
    """
    Factory function: Creates the appropriate node type from a dictionary.

    This is used by WorkflowGraph when loading workflows from the database.

    Args:
        node_data: Dictionary with node fields (must include 'type')

    Returns:
        Node instance of the appropriate type

    Raises:
        ValueError: If node type is unknown or validation fails

    Example:
        >>> node = create_node_from_dict({
        ...     "id": "tag_hot",
        ...     "type": "action_add_tag",
        ...     "config": {"tag_id": "hot"},
        ... })
        >>> isinstance(node, TagAction)
        True
    """
    node_type = node_data.get("type")
    if node_type not in ALL_NODE_TYPES:
        raise ValueError(
            f"Unknown node type: '{node_type}'. "
            f"Valid types: {list(ALL_NODE_TYPES)}"
        )

    data = dict(node_data)
    if data.get("config") is None:
        data.pop("config", None)

    try:
        return _node_adapter.validate_python(data)
    except Exception as e:
        raise ValueError(f"Failed to create {node_type} node '{node_data.get('id')}': {e}")
