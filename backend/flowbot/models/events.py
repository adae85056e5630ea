# /flowbot/models/events.py

from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class SourceKind(str, Enum):
    WHATSAPP = "whatsapp"
    FLOW_WEBHOOK = "flow_webhook"
    GLOBAL_WEBHOOK = "global_webhook"
    SIMULATOR = "simulator"
    SCHEDULER = "scheduler"


class MessageContent(BaseModel):
    """Normalized view of one inbound chat message."""
    type: str = Field(default="unknown", description="text, interactive_button, interactive_list, interactive_flow, location, image, ...")
    text: str = ""
    id: Optional[str] = Field(default=None, description="Reply id for button and list replies")
    title: Optional[str] = None
    media_id: Optional[str] = None
    caption: Optional[str] = None
    location: Optional[Dict[str, Any]] = None
    raw: Dict[str, Any] = Field(default_factory=dict)


class InboundEvent(BaseModel):
    """Canonical shape every entry point is normalized into."""
    source_kind: SourceKind
    end_user_address: Optional[str] = None
    contact_name: Optional[str] = None
    message: Optional[MessageContent] = None
    payload: Any = None
    raw_headers: Dict[str, str] = Field(default_factory=dict)
    raw_query: Dict[str, str] = Field(default_factory=dict)
    raw_body: Any = None
    method: str = "POST"
    webhook_record_id: Optional[str] = None

    @property
    def is_chat_message(self) -> bool:
        return self.message is not None

    @property
    def text(self) -> str:
        return self.message.text if self.message else ""
