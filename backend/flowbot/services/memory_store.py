# /flowbot/services/memory_store.py

import copy
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from flowbot.models.execution import AuditLogEntry, Session, WebhookExecutionRecord, WebhookRecordStatus
from flowbot.services.store import FlowStore, matches_filter

# Process-local store used by the test-suite and by `STORE_BACKEND=memory`
# development runs. Documents are deep-copied in and out so callers never
# share state with the "database", which keeps round-trip behaviour the
# same as MongoStore.


class InMemoryStore(FlowStore):
    def __init__(self):
        self.flows: Dict[str, Dict[str, Any]] = {}
        self.sessions: Dict[str, Dict[str, Any]] = {}
        self.webhook_records: Dict[str, Dict[str, Any]] = {}
        self.audit_log: Dict[str, Dict[str, Any]] = {}

    # ---- Flows ----

    async def get_flow_document(self, flow_id: str) -> Optional[Dict[str, Any]]:
        doc = self.flows.get(flow_id)
        return copy.deepcopy(doc) if doc else None

    async def list_flow_documents(self, predicate: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        return [copy.deepcopy(doc) for doc in self.flows.values() if matches_filter(doc, predicate or {})]

    async def save_flow_document(self, doc: Dict[str, Any]) -> None:
        doc = copy.deepcopy(doc)
        flow_id = str(doc.get("id") or doc.get("_id"))
        doc["id"] = flow_id
        doc.pop("_id", None)
        self.flows[flow_id] = doc

    # ---- Sessions ----

    async def find_sessions(self, predicate: Dict[str, Any], sort_desc: str = "started_at", limit: int = 100) -> List[Session]:
        matched = [doc for doc in self.sessions.values() if matches_filter(doc, predicate)]
        matched.sort(key=lambda d: d.get(sort_desc) or datetime.min.replace(tzinfo=timezone.utc), reverse=True)
        return [Session.model_validate(copy.deepcopy(doc)) for doc in matched[:limit]]

    async def get_session(self, session_id: str) -> Optional[Session]:
        doc = self.sessions.get(session_id)
        return Session.model_validate(copy.deepcopy(doc)) if doc else None

    async def save_session(self, session: Session) -> Session:
        session.updated_at = datetime.now(timezone.utc)
        self.sessions[session.id] = session.model_dump(mode="python")
        # Enums are stored by value, as they are in Mongo
        self.sessions[session.id]["status"] = session.status.value
        return session

    # ---- Webhook execution records ----

    def _dump_record(self, record: WebhookExecutionRecord) -> Dict[str, Any]:
        doc = record.model_dump(mode="python")
        doc["status"] = record.status.value
        return doc

    async def create_webhook_record(self, record: WebhookExecutionRecord) -> WebhookExecutionRecord:
        self.webhook_records[record.id] = self._dump_record(record)
        return record

    async def get_webhook_record(self, record_id: str) -> Optional[WebhookExecutionRecord]:
        doc = self.webhook_records.get(record_id)
        return WebhookExecutionRecord.model_validate(copy.deepcopy(doc)) if doc else None

    async def save_webhook_record(self, record: WebhookExecutionRecord) -> WebhookExecutionRecord:
        self.webhook_records[record.id] = self._dump_record(record)
        return record

    async def claim_webhook_record(self, record_id: str) -> Optional[WebhookExecutionRecord]:
        doc = self.webhook_records.get(record_id)
        if not doc or doc["status"] != WebhookRecordStatus.PENDING.value:
            return None
        doc["status"] = WebhookRecordStatus.PROCESSING.value
        doc["attempts"] = doc.get("attempts", 0) + 1
        return WebhookExecutionRecord.model_validate(copy.deepcopy(doc))

    async def find_webhook_records(self, predicate: Dict[str, Any], limit: int = 100) -> List[WebhookExecutionRecord]:
        matched = [doc for doc in self.webhook_records.values() if matches_filter(doc, predicate)]
        matched.sort(key=lambda d: d["created_at"])
        return [WebhookExecutionRecord.model_validate(copy.deepcopy(doc)) for doc in matched[:limit]]

    # ---- Audit log ----

    async def insert_audit_entry(self, entry: AuditLogEntry) -> None:
        self.audit_log[entry.id] = entry.model_dump(mode="python")

    async def update_audit_entry(self, entry_id: str, fields: Dict[str, Any]) -> None:
        if entry_id in self.audit_log:
            self.audit_log[entry_id].update(copy.deepcopy(fields))

    async def get_audit_entry(self, entry_id: str) -> Optional[AuditLogEntry]:
        doc = self.audit_log.get(entry_id)
        return AuditLogEntry.model_validate(copy.deepcopy(doc)) if doc else None
