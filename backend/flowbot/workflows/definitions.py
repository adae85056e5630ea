# /flowbot/workflows/definitions.py

"""
Node handler contract.

Every node variant is a member of the closed `NodeType` enum and has one
async handler with the signature

    handler(node, session, event, flow, ctx) -> NodeResult

Handlers never write the session themselves: they describe the transition
(next node, variable updates, terminal / parked / failed) and the executor
applies and persists it.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from flowbot.models.events import InboundEvent
from flowbot.models.execution import Session
from flowbot.models.flow import Flow, FlowNode


class NodeType(str, Enum):
    # Trigger anchors
    ON_MESSAGE = "on_message"
    TRIGGER = "trigger"
    # Outbound messages
    SEND_MESSAGE = "send_message"
    SEND_TEMPLATE = "send_template"
    SEND_BUTTON = "send_button"
    SEND_LIST = "send_list"
    SEND_MEDIA = "send_media"
    SEND_CTA = "send_cta"
    CTA_URL = "cta_url"
    SEND_PRODUCT = "send_product"
    SEND_LOCATION = "send_location"
    REQUEST_LOCATION = "request_location"
    SEND_FLOW = "send_flow"
    # Pauses
    ASK_QUESTION = "ask_question"
    WAIT_FOR_REPLY = "wait_for_reply"
    DELAY = "delay"
    # Logic and integrations
    CONDITION = "condition"
    AI_AGENT = "ai_agent"
    HTTP = "http"
    GOOGLE_SHEETS = "google_sheets"
    UPDATE_COLUMNS = "update_columns"
    STOP_CHATBOT = "stop_chatbot"
    # Webhook entry nodes
    WEBHOOK = "webhook"
    CATCH_WEBHOOK = "catch_webhook"


@dataclass
class NodeResult:
    next_node_id: Optional[str] = None
    variable_updates: Dict[str, Any] = field(default_factory=dict)
    terminal: bool = False
    side_effect_error: Optional[Exception] = None
    awaiting_reply: bool = False
    resume_at: Optional[datetime] = None
    # Stay on this node; next_node_id is ignored
    parked: bool = False
    output: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def advance(cls, next_node_id: Optional[str], updates: Optional[Dict[str, Any]] = None, **output: Any) -> "NodeResult":
        return cls(next_node_id=next_node_id, variable_updates=updates or {}, output=output)

    @classmethod
    def park(cls, awaiting_reply: bool = True, resume_at: Optional[datetime] = None,
             updates: Optional[Dict[str, Any]] = None, **output: Any) -> "NodeResult":
        return cls(parked=True, awaiting_reply=awaiting_reply, resume_at=resume_at, variable_updates=updates or {}, output=output)

    @classmethod
    def fail(cls, error: Exception, updates: Optional[Dict[str, Any]] = None, **output: Any) -> "NodeResult":
        return cls(side_effect_error=error, variable_updates=updates or {}, output=output)


@dataclass
class Collaborators:
    """Outbound services handlers may call. Built once with the app context."""
    messaging: Any
    ai: Any
    http: Any
    sheets: Any
    http_timeout_ms: int = 10000


@dataclass
class NodeContext:
    collaborators: Collaborators
    # True only for the first node of a pass when the session was parked on
    # it waiting for this inbound message
    resuming: bool = False
    now: Optional[datetime] = None


NodeHandler = Callable[[FlowNode, Session, InboundEvent, Flow, NodeContext], Awaitable[NodeResult]]
