"""
External Collaborators

The CRUD side of the product (leads, tags, messages, scoring, audiences, agent
tasks) lives outside this package. The engine only talks to it through the
async interfaces below; the host application supplies implementations.

Wiring:
    LEADFLOW_COLLABORATORS="myapp.automation:build_collaborators"

points at a zero-argument callable returning a `Collaborators` bundle. Only the
webhook transport ships with a concrete implementation (httpx).
"""

import importlib
import logging
import os
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx
from pydantic import BaseModel, Field

from .signing import SignedPayload

logger = logging.getLogger(__name__)


class LeadSnapshot(BaseModel):
    """
    Point-in-time read of a lead.

    `version` increases on every write; updates must present the version they
    read (optimistic concurrency).
    """

    id: str
    workspace_id: Optional[str] = None
    version: int = 0
    data: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        frozen = True


class LeadStore(ABC):
    @abstractmethod
    async def get(self, lead_id: str) -> LeadSnapshot:
        """Read the current lead. Raises KeyError if it does not exist."""

    @abstractmethod
    async def update(self, lead_id: str, fields: Dict[str, Any], expected_version: int) -> LeadSnapshot:
        """
        Write `fields` if the lead is still at `expected_version`.

        Raises:
            VersionConflict: the lead was modified since it was read
        """


class MessageQueue(ABC):
    @abstractmethod
    async def enqueue(
        self,
        lead_id: str,
        platform: str,
        message_type: str,
        content: str,
        priority: int = 0,
        scheduled_at: Optional[datetime] = None,
        template_id: Optional[str] = None,
    ) -> str:
        """Queue an outbound message and return its message id."""


class TagStore(ABC):
    @abstractmethod
    async def attach(self, lead_id: str, tag_id: str) -> None: ...

    @abstractmethod
    async def detach(self, lead_id: str, tag_id: str) -> None: ...


class ScoringService(ABC):
    @abstractmethod
    async def adjust(self, lead_id: str, delta: int) -> int:
        """Add `delta` to the lead score and return the new score."""


class AudienceStore(ABC):
    @abstractmethod
    async def add(self, audience_id: str, lead_id: str) -> None: ...

    @abstractmethod
    async def remove(self, audience_id: str, lead_id: str) -> None: ...

    @abstractmethod
    async def members(self, audience_id: str) -> List[str]:
        """Lead ids currently in the audience."""


class AgentQueue(ABC):
    @abstractmethod
    async def enqueue(self, lead_id: str, agent_task: str, payload: Dict[str, Any]) -> str:
        """Hand a task to the agent subsystem and return its task id."""


class WebhookTransport(ABC):
    @abstractmethod
    async def post(self, url: str, signed_payload: SignedPayload, timeout: float) -> int:
        """POST the signed body and return the HTTP status code."""


class HttpxWebhookTransport(WebhookTransport):
    """
    Webhook transport backed by httpx.AsyncClient.

    Network failures propagate as httpx.HTTPError; the dispatcher turns them
    into ActionError.
    """

    def __init__(self, client: Optional[httpx.AsyncClient] = None):
        self.client = client or httpx.AsyncClient(follow_redirects=False)

    async def post(self, url: str, signed_payload: SignedPayload, timeout: float) -> int:
        response = await self.client.post(
            url,
            content=signed_payload.body,
            headers=signed_payload.headers,
            timeout=timeout,
        )
        logger.info(f"Webhook POST {url} -> {response.status_code}")
        return response.status_code

    async def close(self):
        await self.client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()


class Collaborators(BaseModel):
    """Bundle of every external collaborator the engine calls."""

    leads: LeadStore
    messages: MessageQueue
    tags: TagStore
    scoring: ScoringService
    audiences: AudienceStore
    agents: AgentQueue
    webhooks: WebhookTransport

    class Config:
        arbitrary_types_allowed = True


def load_collaborators(factory_path: Optional[str] = None) -> Collaborators:
    """
    Import and call the factory named by LEADFLOW_COLLABORATORS ("module:callable").

    Raises:
        RuntimeError: variable not set, or the target is not importable
    """
    factory_path = factory_path or os.getenv("LEADFLOW_COLLABORATORS")
    if not factory_path:
        raise RuntimeError(
            "LEADFLOW_COLLABORATORS environment variable not set. "
            "Set it to 'module:callable' returning a Collaborators bundle."
        )

    module_name, _, attr = factory_path.partition(":")
    if not module_name or not attr:
        raise RuntimeError(f"LEADFLOW_COLLABORATORS must look like 'module:callable' (got '{factory_path}')")

    try:
        factory = getattr(importlib.import_module(module_name), attr)
    except (ImportError, AttributeError) as e:
        raise RuntimeError(f"Cannot load collaborators from '{factory_path}': {e}") from e

    collaborators = factory()
    if not isinstance(collaborators, Collaborators):
        raise RuntimeError(f"'{factory_path}' returned {type(collaborators).__name__}, expected Collaborators")

    logger.info(f"Collaborators loaded from {factory_path}")
    return collaborators
