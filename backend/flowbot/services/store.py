# /flowbot/services/store.py

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from flowbot.models.execution import AuditLogEntry, Session, WebhookExecutionRecord
from flowbot.models.flow import Flow, FlowStatus
from flowbot.utils.errors import ConfigError, FlowDefinitionError

# Persistence interface consumed by the executor, the ingress routes and the
# scheduler jobs. Filters use a small Mongo-style predicate language so that
# MongoStore can pass them straight through and InMemoryStore (and the
# Google Sheets lookup) can evaluate them locally.

logger = logging.getLogger(__name__)

FILTER_OPERATORS = ("$eq", "$ne", "$gt", "$gte", "$lt", "$lte", "$in")

# Friendly operator names accepted by build_filter (node configs use these)
_OPERATOR_ALIASES = {
    "eq": "$eq", "=": "$eq", "==": "$eq", "equals": "$eq",
    "ne": "$ne", "!=": "$ne", "not_equals": "$ne",
    "gt": "$gt", ">": "$gt",
    "gte": "$gte", ">=": "$gte",
    "lt": "$lt", "<": "$lt",
    "lte": "$lte", "<=": "$lte",
    "in": "$in",
}


def build_filter(conditions: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Turns a list of `{column, operator, value}` conditions into a filter
    predicate. Conditions on the same column are combined.

    Args:
        conditions: Condition dicts; `operator` defaults to equality.

    Returns:
        A Mongo-style filter, e.g. {"age": {"$gte": 18}}.

    Raises:
        ConfigError: If an operator is not supported.
    """
    predicate: Dict[str, Any] = {}
    for condition in conditions:
        column = condition.get("column") or condition.get("field")
        if not column:
            raise ConfigError("Filter condition is missing a column", {"condition": condition})
        raw_op = str(condition.get("operator") or "eq").lower()
        op = raw_op if raw_op in FILTER_OPERATORS else _OPERATOR_ALIASES.get(raw_op)
        if op is None:
            raise ConfigError(f"Unsupported filter operator '{raw_op}'")
        clause = predicate.setdefault(column, {})
        clause[op] = condition.get("value")
    return predicate


def _lookup(doc: Dict[str, Any], path: str) -> Any:
    if path in doc:
        return doc[path]
    current: Any = doc
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return None
        current = current[part]
    return current


def _compare(actual: Any, op: str, expected: Any) -> bool:
    if op == "$eq":
        return actual == expected
    if op == "$ne":
        return actual != expected
    if op == "$in":
        return actual in (expected or [])
    if actual is None or expected is None:
        return False
    try:
        if op == "$gt":
            return actual > expected
        if op == "$gte":
            return actual >= expected
        if op == "$lt":
            return actual < expected
        if op == "$lte":
            return actual <= expected
    except TypeError:
        return False
    raise ConfigError(f"Unsupported filter operator '{op}'")


def matches_filter(doc: Dict[str, Any], predicate: Dict[str, Any]) -> bool:
    """Evaluates a filter predicate against a plain dict."""
    for field, condition in predicate.items():
        actual = _lookup(doc, field)
        if isinstance(condition, dict) and condition and all(k.startswith("$") for k in condition):
            if not all(_compare(actual, op, expected) for op, expected in condition.items()):
                return False
        elif actual != condition:
            return False
    return True


class FlowStore(ABC):
    """CRUD over flows, sessions, webhook execution records and the audit log."""

    # ---- Flows ----

    @abstractmethod
    async def get_flow_document(self, flow_id: str) -> Optional[Dict[str, Any]]: ...

    @abstractmethod
    async def list_flow_documents(self, predicate: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]: ...

    @abstractmethod
    async def save_flow_document(self, doc: Dict[str, Any]) -> None: ...

    async def get_flow(self, flow_id: str) -> Optional[Flow]:
        """Raises FlowDefinitionError when the stored graph is inconsistent."""
        doc = await self.get_flow_document(flow_id)
        return Flow.from_document(doc) if doc else None

    async def list_flows(self, status: Optional[FlowStatus] = None) -> List[Flow]:
        """
        Flows in stored order. Flows whose graph fails to load are skipped so
        that one broken definition cannot block matching for everyone else.
        """
        predicate = {"status": status.value} if status else None
        flows = []
        for doc in await self.list_flow_documents(predicate):
            try:
                flows.append(Flow.from_document(doc))
            except (FlowDefinitionError, ValueError) as e:
                logger.error(f"Skipping flow {doc.get('id') or doc.get('_id')} with invalid definition: {e}")
        return flows

    async def list_active_flows(self) -> List[Flow]:
        return await self.list_flows(FlowStatus.ACTIVE)

    # ---- Sessions ----

    @abstractmethod
    async def find_sessions(self, predicate: Dict[str, Any], sort_desc: str = "started_at", limit: int = 100) -> List[Session]: ...

    @abstractmethod
    async def get_session(self, session_id: str) -> Optional[Session]: ...

    @abstractmethod
    async def save_session(self, session: Session) -> Session: ...

    async def list_running_sessions(self, user_phone: str) -> List[Session]:
        """Running sessions for an address, most recent first."""
        return await self.find_sessions({"user_phone": user_phone, "status": "running"})

    async def find_running_session(self, user_phone: str) -> Optional[Session]:
        sessions = await self.find_sessions({"user_phone": user_phone, "status": "running"}, limit=1)
        return sessions[0] if sessions else None

    # ---- Webhook execution records ----

    @abstractmethod
    async def create_webhook_record(self, record: WebhookExecutionRecord) -> WebhookExecutionRecord: ...

    @abstractmethod
    async def get_webhook_record(self, record_id: str) -> Optional[WebhookExecutionRecord]: ...

    @abstractmethod
    async def save_webhook_record(self, record: WebhookExecutionRecord) -> WebhookExecutionRecord: ...

    @abstractmethod
    async def claim_webhook_record(self, record_id: str) -> Optional[WebhookExecutionRecord]:
        """Atomically moves a record from pending to processing. None if it was not pending."""

    @abstractmethod
    async def find_webhook_records(self, predicate: Dict[str, Any], limit: int = 100) -> List[WebhookExecutionRecord]: ...

    # ---- Audit log ----

    @abstractmethod
    async def insert_audit_entry(self, entry: AuditLogEntry) -> None: ...

    @abstractmethod
    async def update_audit_entry(self, entry_id: str, fields: Dict[str, Any]) -> None: ...

    @abstractmethod
    async def get_audit_entry(self, entry_id: str) -> Optional[AuditLogEntry]: ...

    # ---- Lifecycle ----

    async def create_indexes(self) -> None:
        return None

    async def close(self) -> None:
        return None


def sessions_due_predicate(now: datetime) -> Dict[str, Any]:
    return {"status": "running", "resume_at": {"$lte": now}}
