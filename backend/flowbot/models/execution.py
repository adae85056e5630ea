# /flowbot/models/execution.py

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


class SessionStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"


class WebhookRecordStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class Session(BaseModel):
    """One traversal of a flow for one end-user address (a "flow execution")."""
    id: str = Field(default_factory=new_id)
    flow_id: str
    user_phone: str = Field(..., description="End-user address (phone number or webhook:<record id>)")
    status: SessionStatus = SessionStatus.RUNNING
    current_node: Optional[str] = None
    variables: Dict[str, Any] = Field(default_factory=dict)
    awaiting_reply: bool = Field(default=False, description="Parked on a node that consumes the next inbound message")
    resume_at: Optional[datetime] = Field(default=None, description="Set while parked on a delay node")
    trigger_message: Optional[str] = None
    hops: int = 0
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    started_at: datetime = Field(default_factory=_now_utc)
    updated_at: datetime = Field(default_factory=_now_utc)
    completed_at: Optional[datetime] = None

    @property
    def is_running(self) -> bool:
        return self.status == SessionStatus.RUNNING

    def merge_variables(self, updates: Dict[str, Any]) -> None:
        # Keys are appended or overwritten, never removed
        self.variables.update(updates)


class WebhookRequestData(BaseModel):
    method: str
    headers: Dict[str, str] = Field(default_factory=dict)
    query: Dict[str, str] = Field(default_factory=dict)
    body: Any = None

    def to_variables(self) -> Dict[str, Any]:
        """Flattens the captured request into `webhook.*` session variables."""
        variables: Dict[str, Any] = {"webhook.method": self.method}
        if isinstance(self.body, dict):
            for key, value in self.body.items():
                variables[f"webhook.body.{key}"] = value
        elif self.body is not None:
            variables["webhook.body"] = self.body
        for key, value in self.query.items():
            variables[f"webhook.query.{key}"] = value
        for key, value in self.headers.items():
            variables[f"webhook.header.{key}"] = value
        return variables


class WebhookExecutionRecord(BaseModel):
    """A captured webhook call waiting to be consumed by the executor."""
    id: str = Field(default_factory=new_id)
    flow_id: str
    node_id: str
    webhook_id: Optional[str] = None
    request_data: WebhookRequestData
    status: WebhookRecordStatus = WebhookRecordStatus.PENDING
    attempts: int = 0
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=_now_utc)
    processed_at: Optional[datetime] = None


class AuditLogEntry(BaseModel):
    """One row per inbound HTTP event. Outcome fields are appended later."""
    id: str = Field(default_factory=new_id)
    source: str
    method: str
    payload: Any = None
    user_phone: Optional[str] = None
    message_type: Optional[str] = None
    webhook_id: Optional[str] = None
    session_found: bool = False
    flow_matched: Optional[bool] = None
    flow_id: Optional[str] = None
    current_node: Optional[str] = None
    execution_id: Optional[str] = None
    message_sent: Optional[bool] = None
    status_code: Optional[int] = None
    error_message: Optional[str] = None
    processing_time_ms: Optional[int] = None
    created_at: datetime = Field(default_factory=_now_utc)
