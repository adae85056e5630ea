# /flowbot/services/db_service.py

import logging
from enum import Enum
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ASCENDING, DESCENDING, ReturnDocument

from flowbot.config.settings import Settings
from flowbot.models.execution import AuditLogEntry, Session, WebhookExecutionRecord, WebhookRecordStatus
from flowbot.services.store import FlowStore
from flowbot.utils.metrics import database_operations_counter

logger = logging.getLogger(__name__)

# Collection names
FLOWS = "flows"
SESSIONS = "flow_executions"
WEBHOOK_RECORDS = "webhook_executions"
AUDIT_LOG = "webhook_logs"


def _to_document(data: Dict[str, Any]) -> Dict[str, Any]:
    """Model dump -> Mongo document: `id` becomes `_id`, enums are stored by value."""
    doc = {k: (v.value if isinstance(v, Enum) else v) for k, v in data.items()}
    if "id" in doc:
        doc["_id"] = doc.pop("id")
    return doc


def _from_document(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if doc is None:
        return None
    doc = dict(doc)
    if "_id" in doc:
        doc["id"] = str(doc.pop("_id"))
    return doc


class MongoStore(FlowStore):
    """
    Motor-backed persistence for flows, sessions (flow_executions), webhook
    execution records and the webhook audit log.
    """

    def __init__(self, settings: Settings):
        try:
            self.client = AsyncIOMotorClient(
                settings.mongo_uri,
                maxPoolSize=settings.max_pool_size,
                minPoolSize=settings.min_pool_size,
                tls=settings.mongo_ssl,
                tz_aware=True,
                serverSelectionTimeoutMS=5000,
                connectTimeoutMS=10000
            )
            self.db = self.client.get_default_database()
            logger.info("MongoDB client initialized successfully.")
        except Exception as e:
            logger.error(f"Error initializing MongoDB client: {e}")
            raise

    async def _safe_db_operation(self, operation: str, coro):
        """Runs a database coroutine, recording success/failure metrics."""
        try:
            result = await coro
            database_operations_counter.labels(operation=operation, status="success").inc()
            return result
        except Exception as e:
            database_operations_counter.labels(operation=operation, status="error").inc()
            logger.error(f"Database operation '{operation}' failed: {e}")
            raise

    # ==================== Flows ====================

    async def get_flow_document(self, flow_id: str) -> Optional[Dict[str, Any]]:
        doc = await self._safe_db_operation("get_flow", self.db[FLOWS].find_one({"_id": flow_id}))
        return _from_document(doc)

    async def list_flow_documents(self, predicate: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        cursor = self.db[FLOWS].find(predicate or {}).sort("created_at", ASCENDING)
        docs = await self._safe_db_operation("list_flows", cursor.to_list(length=None))
        return [_from_document(doc) for doc in docs]

    async def save_flow_document(self, doc: Dict[str, Any]) -> None:
        doc = _to_document(doc)
        doc.setdefault("created_at", datetime.now(timezone.utc))
        doc["updated_at"] = datetime.now(timezone.utc)
        await self._safe_db_operation(
            "save_flow", self.db[FLOWS].replace_one({"_id": doc["_id"]}, doc, upsert=True)
        )

    # ==================== Sessions ====================

    async def find_sessions(self, predicate: Dict[str, Any], sort_desc: str = "started_at", limit: int = 100) -> List[Session]:
        cursor = self.db[SESSIONS].find(predicate).sort(sort_desc, DESCENDING).limit(limit)
        docs = await self._safe_db_operation("find_sessions", cursor.to_list(length=limit))
        return [Session.model_validate(_from_document(doc)) for doc in docs]

    async def get_session(self, session_id: str) -> Optional[Session]:
        doc = await self._safe_db_operation("get_session", self.db[SESSIONS].find_one({"_id": session_id}))
        return Session.model_validate(_from_document(doc)) if doc else None

    async def save_session(self, session: Session) -> Session:
        session.updated_at = datetime.now(timezone.utc)
        doc = _to_document(session.model_dump(mode="python"))
        await self._safe_db_operation(
            "save_session", self.db[SESSIONS].replace_one({"_id": session.id}, doc, upsert=True)
        )
        return session

    # ==================== Webhook Execution Records ====================

    async def create_webhook_record(self, record: WebhookExecutionRecord) -> WebhookExecutionRecord:
        doc = _to_document(record.model_dump(mode="python"))
        await self._safe_db_operation("create_webhook_record", self.db[WEBHOOK_RECORDS].insert_one(doc))
        return record

    async def get_webhook_record(self, record_id: str) -> Optional[WebhookExecutionRecord]:
        doc = await self._safe_db_operation("get_webhook_record", self.db[WEBHOOK_RECORDS].find_one({"_id": record_id}))
        return WebhookExecutionRecord.model_validate(_from_document(doc)) if doc else None

    async def save_webhook_record(self, record: WebhookExecutionRecord) -> WebhookExecutionRecord:
        doc = _to_document(record.model_dump(mode="python"))
        await self._safe_db_operation(
            "save_webhook_record", self.db[WEBHOOK_RECORDS].replace_one({"_id": record.id}, doc, upsert=True)
        )
        return record

    async def claim_webhook_record(self, record_id: str) -> Optional[WebhookExecutionRecord]:
        doc = await self._safe_db_operation(
            "claim_webhook_record",
            self.db[WEBHOOK_RECORDS].find_one_and_update(
                {"_id": record_id, "status": WebhookRecordStatus.PENDING.value},
                {"$set": {"status": WebhookRecordStatus.PROCESSING.value}, "$inc": {"attempts": 1}},
                return_document=ReturnDocument.AFTER,
            ),
        )
        return WebhookExecutionRecord.model_validate(_from_document(doc)) if doc else None

    async def find_webhook_records(self, predicate: Dict[str, Any], limit: int = 100) -> List[WebhookExecutionRecord]:
        cursor = self.db[WEBHOOK_RECORDS].find(predicate).sort("created_at", ASCENDING).limit(limit)
        docs = await self._safe_db_operation("find_webhook_records", cursor.to_list(length=limit))
        return [WebhookExecutionRecord.model_validate(_from_document(doc)) for doc in docs]

    # ==================== Audit Log ====================

    async def insert_audit_entry(self, entry: AuditLogEntry) -> None:
        doc = _to_document(entry.model_dump(mode="python"))
        await self._safe_db_operation("insert_audit_entry", self.db[AUDIT_LOG].insert_one(doc))

    async def update_audit_entry(self, entry_id: str, fields: Dict[str, Any]) -> None:
        await self._safe_db_operation(
            "update_audit_entry", self.db[AUDIT_LOG].update_one({"_id": entry_id}, {"$set": fields})
        )

    async def get_audit_entry(self, entry_id: str) -> Optional[AuditLogEntry]:
        doc = await self._safe_db_operation("get_audit_entry", self.db[AUDIT_LOG].find_one({"_id": entry_id}))
        return AuditLogEntry.model_validate(_from_document(doc)) if doc else None

    # ==================== Lifecycle ====================

    async def create_indexes(self) -> None:
        """Creates the indexes the executor's lookups rely on."""
        indexes = [
            (FLOWS, [("status", ASCENDING), ("created_at", ASCENDING)], {}),
            (SESSIONS, [("user_phone", ASCENDING), ("status", ASCENDING), ("started_at", DESCENDING)], {}),
            (SESSIONS, [("status", ASCENDING), ("resume_at", ASCENDING)], {}),
            (SESSIONS, [("status", ASCENDING), ("updated_at", ASCENDING)], {}),
            (WEBHOOK_RECORDS, [("status", ASCENDING), ("created_at", ASCENDING)], {}),
            (AUDIT_LOG, [("created_at", DESCENDING)], {}),
        ]
        for collection, keys, options in indexes:
            try:
                await self.db[collection].create_index(keys, **options)
            except Exception as e:
                logger.warning(f"Could not create index on {collection} {keys}: {e}")
        logger.info("Database indexes ensured.")

    async def close(self) -> None:
        self.client.close()
