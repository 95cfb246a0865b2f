"""
Action Dispatcher

Single entry point for every effectful node:

    result = await dispatcher.perform("action_add_tag", {"tag_id": "hot"}, lead_id)

Each action kind is one handler class registered in ACTION_HANDLERS, keyed by
node type. Adding an action kind means adding a handler and a registry entry.

With dry_run=True a handler is asked to *describe* what it would do and no
collaborator is called. This backs workflow test runs.

Failures surface as ActionError. There is no automatic retry; the only
re-attempt is the single fresh-read retry after a lead VersionConflict.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Type

from pydantic import BaseModel, Field, ValidationError

from .collaborators import Collaborators, LeadSnapshot
from .exceptions import ActionError, VersionConflict
from .lead_locks import LeadLocks
from .nodes import (
    AssignUserConfig,
    AudienceConfig,
    ChangeStageConfig,
    EnqueueAgentConfig,
    NodeConfig,
    ScoreAdjustConfig,
    SendMessageConfig,
    SendWebhookConfig,
    TagConfig,
    UpdateLeadFieldConfig,
    WaitUntilConfig,
)
from .signing import sign_payload

logger = logging.getLogger(__name__)


class ActionResult(BaseModel):
    """
    Outcome of one action invocation.

    - description: what was done (or, for dry runs, what would be done)
    - output: JSON-friendly details stored on the run step
    - suspend_until: set by wait-until; the engine suspends the run
    """

    action_type: str
    success: bool = True
    dry_run: bool = False
    description: str
    output: Dict[str, Any] = Field(default_factory=dict)
    suspend_until: Optional[datetime] = None


def _utc(value: datetime) -> datetime:
    """Naive UTC, the representation used for every stored timestamp."""
    if value.tzinfo is not None:
        return (value - value.utcoffset()).replace(tzinfo=None)
    return value


# ============================================================================
# HANDLERS
# ============================================================================

class ActionHandler(ABC):
    """
    Abstract interface for all action handlers.

    - config_model: Pydantic config the handler accepts
    - describe(): human-readable summary, used for dry runs and logs
    - perform(): the real effect, through the dispatcher's collaborators
    """

    config_model: Type[NodeConfig]

    def __init__(self, action_type: str):
        self.action_type = action_type

    @abstractmethod
    def describe(self, config: Any, lead_id: str) -> str:
        pass

    @abstractmethod
    async def perform(
        self,
        dispatcher: "ActionDispatcher",
        config: Any,
        lead_id: str,
        context: Dict[str, Any],
    ) -> Dict[str, Any]:
        """Run the action and return the step output."""
        pass

    def suspend_until(self, config: Any) -> Optional[datetime]:
        return None


class SendMessageHandler(ActionHandler):
    config_model = SendMessageConfig

    def describe(self, config: SendMessageConfig, lead_id: str) -> str:
        return f"enqueue {config.message_type} message on {config.platform} for lead {lead_id} (priority {config.priority})"

    async def perform(self, dispatcher, config: SendMessageConfig, lead_id, context):
        message_id = await dispatcher.collaborators.messages.enqueue(
            lead_id=lead_id,
            platform=config.platform,
            message_type=config.message_type,
            content=config.content,
            priority=config.priority,
            scheduled_at=config.scheduled_at,
            template_id=config.template_id,
        )
        return {"message_id": message_id, "platform": config.platform}


class TagHandler(ActionHandler):
    config_model = TagConfig

    @property
    def attaching(self) -> bool:
        return self.action_type == "action_add_tag"

    def describe(self, config: TagConfig, lead_id: str) -> str:
        verb = "attach tag" if self.attaching else "detach tag"
        return f"{verb} {config.tag_id} {'to' if self.attaching else 'from'} lead {lead_id}"

    async def perform(self, dispatcher, config: TagConfig, lead_id, context):
        tags = dispatcher.collaborators.tags
        if self.attaching:
            await tags.attach(lead_id, config.tag_id)
        else:
            await tags.detach(lead_id, config.tag_id)
        return {"tag_id": config.tag_id}


class AssignUserHandler(ActionHandler):
    config_model = AssignUserConfig

    def describe(self, config: AssignUserConfig, lead_id: str) -> str:
        return f"assign lead {lead_id} to user {config.user_id}"

    async def perform(self, dispatcher, config: AssignUserConfig, lead_id, context):
        lead = await dispatcher.mutate_lead(lead_id, lambda snapshot: {"assigned_to_id": config.user_id}, self.action_type)
        return {"assigned_to_id": config.user_id, "lead_version": lead.version}


class ChangeStageHandler(ActionHandler):
    config_model = ChangeStageConfig

    def describe(self, config: ChangeStageConfig, lead_id: str) -> str:
        return f"move lead {lead_id} to stage {config.target_stage_id}"

    async def perform(self, dispatcher, config: ChangeStageConfig, lead_id, context):
        previous = {}

        def compute(snapshot: LeadSnapshot) -> Dict[str, Any]:
            previous["stage_id"] = snapshot.data.get("stage_id")
            return {"stage_id": config.target_stage_id}

        lead = await dispatcher.mutate_lead(lead_id, compute, self.action_type)
        return {
            "previous_stage_id": previous.get("stage_id"),
            "stage_id": config.target_stage_id,
            "lead_version": lead.version,
        }


class UpdateLeadFieldHandler(ActionHandler):
    config_model = UpdateLeadFieldConfig

    def describe(self, config: UpdateLeadFieldConfig, lead_id: str) -> str:
        return f"update fields {sorted(config.fields)} on lead {lead_id}"

    async def perform(self, dispatcher, config: UpdateLeadFieldConfig, lead_id, context):
        lead = await dispatcher.mutate_lead(lead_id, lambda snapshot: dict(config.fields), self.action_type)
        return {"fields": sorted(config.fields), "lead_version": lead.version}


class EnqueueAgentHandler(ActionHandler):
    config_model = EnqueueAgentConfig

    def describe(self, config: EnqueueAgentConfig, lead_id: str) -> str:
        return f"hand agent task '{config.agent_task}' for lead {lead_id} to the agent queue"

    async def perform(self, dispatcher, config: EnqueueAgentConfig, lead_id, context):
        task_id = await dispatcher.collaborators.agents.enqueue(lead_id, config.agent_task, dict(config.payload))
        return {"agent_task_id": task_id, "agent_task": config.agent_task}


class SendWebhookHandler(ActionHandler):
    config_model = SendWebhookConfig

    def describe(self, config: SendWebhookConfig, lead_id: str) -> str:
        signed = "signed" if config.secret else "unsigned"
        return f"POST {signed} webhook for lead {lead_id} to {config.url}"

    async def perform(self, dispatcher, config: SendWebhookConfig, lead_id, context):
        lead = await dispatcher.collaborators.leads.get(lead_id)
        body = {
            "lead": {"id": lead.id, **lead.data},
            "workflow": {
                "id": context.get("workflow_id"),
                "name": context.get("workflow_name"),
            },
            "run_id": context.get("run_id"),
            "payload": dict(config.payload),
            "timestamp": datetime.utcnow().isoformat() + "Z",
        }
        if "loop_item" in context:
            body["loop_item"] = context["loop_item"]

        signed_payload = sign_payload(body, config.secret)
        status_code = await dispatcher.collaborators.webhooks.post(config.url, signed_payload, config.timeout_seconds)
        if not 200 <= status_code < 300:
            raise ActionError(f"Webhook {config.url} responded with HTTP {status_code}", self.action_type)
        return {"url": config.url, "status_code": status_code}


class AudienceHandler(ActionHandler):
    config_model = AudienceConfig

    @property
    def adding(self) -> bool:
        return self.action_type == "action_add_to_audience"

    def describe(self, config: AudienceConfig, lead_id: str) -> str:
        if self.adding:
            return f"add lead {lead_id} to audience {config.audience_id}"
        return f"remove lead {lead_id} from audience {config.audience_id}"

    async def perform(self, dispatcher, config: AudienceConfig, lead_id, context):
        audiences = dispatcher.collaborators.audiences
        if self.adding:
            await audiences.add(config.audience_id, lead_id)
        else:
            await audiences.remove(config.audience_id, lead_id)
        return {"audience_id": config.audience_id}


class WaitUntilHandler(ActionHandler):
    """Calls nothing; the engine suspends the run until `wait_until`."""

    config_model = WaitUntilConfig

    def describe(self, config: WaitUntilConfig, lead_id: str) -> str:
        return f"wait until {_utc(config.wait_until).isoformat()}Z"

    async def perform(self, dispatcher, config: WaitUntilConfig, lead_id, context):
        return {"wait_until": _utc(config.wait_until).isoformat()}

    def suspend_until(self, config: WaitUntilConfig) -> Optional[datetime]:
        return _utc(config.wait_until)


class ScoreAdjustHandler(ActionHandler):
    config_model = ScoreAdjustConfig

    def delta(self, config: ScoreAdjustConfig) -> int:
        return config.amount if self.action_type == "action_increment_score" else -config.amount

    def describe(self, config: ScoreAdjustConfig, lead_id: str) -> str:
        return f"adjust score of lead {lead_id} by {self.delta(config):+d}"

    async def perform(self, dispatcher, config: ScoreAdjustConfig, lead_id, context):
        new_score = await dispatcher.collaborators.scoring.adjust(lead_id, self.delta(config))
        return {"delta": self.delta(config), "new_score": new_score}


# Mapping: node type -> handler class
ACTION_HANDLERS: Dict[str, Type[ActionHandler]] = {
    "action_send_message": SendMessageHandler,
    "action_add_tag": TagHandler,
    "action_remove_tag": TagHandler,
    "action_assign_user": AssignUserHandler,
    "action_change_stage": ChangeStageHandler,
    "action_update_lead_field": UpdateLeadFieldHandler,
    "action_enqueue_agent": EnqueueAgentHandler,
    "action_send_webhook": SendWebhookHandler,
    "action_add_to_audience": AudienceHandler,
    "action_remove_from_audience": AudienceHandler,
    "action_wait_until_time": WaitUntilHandler,
    "action_increment_score": ScoreAdjustHandler,
    "action_decrement_score": ScoreAdjustHandler,
}


def get_handler(action_type: str) -> ActionHandler:
    """
    Factory function: Creates the handler registered for an action type.

    Raises:
        ActionError: If the action type is unknown
    """
    handler_class = ACTION_HANDLERS.get(action_type)
    if not handler_class:
        raise ActionError(
            f"Unknown action type: '{action_type}'. Valid types: {list(ACTION_HANDLERS.keys())}",
            action_type,
        )
    return handler_class(action_type)


# ============================================================================
# DISPATCHER
# ============================================================================

class ActionDispatcher:
    """
    Routes action nodes to their handlers.

    Lead-mutating handlers go through `mutate_lead`, which holds the per-lead
    lock for the read-modify-write and retries once on VersionConflict.
    """

    def __init__(self, collaborators: Optional[Collaborators], locks: Optional[LeadLocks] = None):
        self.collaborators = collaborators
        self.locks = locks or LeadLocks()

    async def perform(
        self,
        action_type: str,
        config: Any,
        lead_id: str,
        dry_run: bool = False,
        context: Optional[Dict[str, Any]] = None,
    ) -> ActionResult:
        """
        Invoke one action.

        Args:
            action_type: node type, e.g. "action_send_message"
            config: the node's config model, or a plain dict to validate
            lead_id: lead the action applies to
            dry_run: describe instead of doing; no collaborator is called
            context: run details (workflow_id, run_id, loop_item...) for handlers that embed them

        Raises:
            ActionError: unknown type, bad config, or the collaborator failed
        """
        handler = get_handler(action_type)
        config = self._coerce_config(handler, config)
        context = context or {}
        description = handler.describe(config, lead_id)

        if dry_run:
            logger.info(f"[dry-run] {action_type}: would {description}")
            return ActionResult(
                action_type=action_type,
                dry_run=True,
                description=f"Would {description}",
                output={"would": description},
                suspend_until=handler.suspend_until(config),
            )

        if self.collaborators is None:
            raise ActionError("No collaborators configured for live actions", action_type)

        logger.info(f"Performing {action_type}: {description}")
        try:
            output = await handler.perform(self, config, lead_id, context)
        except ActionError:
            raise
        except Exception as e:
            logger.error(f"Action {action_type} failed for lead {lead_id}: {e}")
            raise ActionError(f"{action_type} failed: {e}", action_type) from e

        return ActionResult(
            action_type=action_type,
            description=description,
            output=output,
            suspend_until=handler.suspend_until(config),
        )

    @staticmethod
    def _coerce_config(handler: ActionHandler, config: Any) -> Any:
        if isinstance(config, handler.config_model):
            return config
        if isinstance(config, BaseModel):
            config = config.model_dump()
        try:
            return handler.config_model(**(config or {}))
        except ValidationError as e:
            raise ActionError(f"Invalid config for {handler.action_type}: {e}", handler.action_type) from e

    async def mutate_lead(
        self,
        lead_id: str,
        compute: Callable[[LeadSnapshot], Dict[str, Any]],
        action_type: str,
    ) -> LeadSnapshot:
        """
        Read-modify-write a lead under its lock with an optimistic version check.

        `compute` receives the fresh snapshot and returns the fields to write.
        A VersionConflict is retried once with a new read, then becomes ActionError.
        """
        leads = self.collaborators.leads
        async with self.locks.hold(lead_id):
            for attempt in (1, 2):
                snapshot = await leads.get(lead_id)
                try:
                    return await leads.update(lead_id, compute(snapshot), snapshot.version)
                except VersionConflict as e:
                    if attempt == 2:
                        raise ActionError(
                            f"Lead {lead_id} changed concurrently twice; giving up ({e.message})",
                            action_type,
                        ) from e
                    logger.warning(f"Version conflict on lead {lead_id} (v{snapshot.version}), retrying once")
