# /flowbot/services/audit_service.py

import asyncio
import logging
from typing import Any, Dict, Optional, Tuple

from flowbot.models.execution import AuditLogEntry
from flowbot.services.store import FlowStore
from flowbot.utils.metrics import audit_writes_counter

# Fire-and-forget writer for the webhook audit log. Callers enqueue and
# return immediately; a single background worker applies writes in order so
# an entry's later outcome fields always land after its insert. A failed
# write is logged and counted, and never reaches the request path.

logger = logging.getLogger(__name__)

_Op = Tuple[str, Any, Optional[Dict[str, Any]]]


class AuditLogWriter:
    def __init__(self, store: FlowStore, max_queue: int = 10000):
        self.store = store
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue)
        self.worker: Optional[asyncio.Task] = None
        self.running = False

    def open(self, entry: AuditLogEntry) -> str:
        """Queues the insert of a new entry and returns its id."""
        self._enqueue(("insert", entry, None))
        return entry.id

    def append(self, entry_id: str, **fields: Any) -> None:
        """Queues late outcome fields for an entry opened earlier."""
        if fields:
            self._enqueue(("update", entry_id, fields))

    def _enqueue(self, op: _Op) -> None:
        try:
            self.queue.put_nowait(op)
        except asyncio.QueueFull:
            audit_writes_counter.labels(status="dropped").inc()
            logger.error("Audit log queue is full; dropping audit write.")

    async def _apply(self, op: _Op) -> None:
        action, target, fields = op
        try:
            if action == "insert":
                await self.store.insert_audit_entry(target)
            else:
                await self.store.update_audit_entry(target, fields)
            audit_writes_counter.labels(status="success").inc()
        except Exception as e:
            audit_writes_counter.labels(status="error").inc()
            logger.error(f"Audit log {action} failed: {e}", exc_info=True)
            if action == "update":
                await self._note_failure(target, e)

    async def _note_failure(self, entry_id: str, error: Exception) -> None:
        # Best effort: leave a trace on the entry itself
        try:
            await self.store.update_audit_entry(entry_id, {"audit_error": str(error)})
        except Exception as e:
            logger.error(f"Could not record audit failure on entry {entry_id}: {e}")

    async def _worker(self):
        while self.running:
            op = await self.queue.get()
            try:
                await self._apply(op)
            finally:
                self.queue.task_done()

    async def start_worker(self):
        if self.worker:
            return
        self.running = True
        self.worker = asyncio.create_task(self._worker())
        logger.info("Audit log writer started.")

    async def flush(self):
        """Applies every queued write inline."""
        while not self.queue.empty():
            op = self.queue.get_nowait()
            try:
                await self._apply(op)
            finally:
                self.queue.task_done()

    async def stop_worker(self, drain_timeout: float = 5.0):
        if self.worker:
            try:
                await asyncio.wait_for(self.queue.join(), timeout=drain_timeout)
            except asyncio.TimeoutError:
                logger.warning("Audit log writer did not drain in time; flushing inline.")
        self.running = False
        if self.worker:
            self.worker.cancel()
            await asyncio.gather(self.worker, return_exceptions=True)
            self.worker = None
        await self.flush()
