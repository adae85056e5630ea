# /flowbot/workflows/executor.py

"""
Flow executor: the per-address state machine.

    no-session --(trigger match)--> running(N) --(terminal)--> completed
                                        |   \\--(handler error)--> failed
                                        |    \\--(idle too long)--> timeout
                                        \\--(parked or no next)--> running(N), waits for
                                            the next message / delay tick /
                                            webhook record

All read-execute-write sequences for one end-user address run under the
address lock, and every transition is persisted before control returns.
"""

from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import structlog

from flowbot.models.events import InboundEvent, SourceKind
from flowbot.models.execution import (
    Session,
    SessionStatus,
    WebhookExecutionRecord,
    WebhookRecordStatus,
)
from flowbot.models.flow import Flow, FlowNode
from flowbot.services.store import FlowStore
from flowbot.utils.errors import FlowbotError, FlowDefinitionError, HopLimitExceeded, LookupFailure
from flowbot.utils.locks import AddressBusy
from flowbot.utils.metrics import flow_sessions_counter, node_executions_counter
from flowbot.workflows.action_nodes import webhook_address
from flowbot.workflows.definitions import Collaborators, NodeContext, NodeResult
from flowbot.workflows.matcher import match_flow
from flowbot.workflows.registry import resolve_handler

logger = structlog.get_logger(__name__)

SUPERSEDED = "superseded"


@dataclass
class ExecutionOutcome:
    """What one inbound event did. Copied into the audit entry by the ingress."""
    session_found: bool = False
    flow_matched: Optional[bool] = None
    flow_id: Optional[str] = None
    execution_id: Optional[str] = None
    current_node: Optional[str] = None
    status: Optional[str] = None
    error: Optional[str] = None
    message_sent: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def observe(self, session: Session) -> None:
        self.flow_id = session.flow_id
        self.execution_id = session.id
        self.current_node = session.current_node
        self.status = session.status.value
        self.error = session.error_message


class FlowExecutor:
    def __init__(self, store: FlowStore, collaborators: Collaborators, locks, max_hops: int = 50,
                 session_timeout_minutes: int = 1440):
        self.store = store
        self.collaborators = collaborators
        self.locks = locks
        self.max_hops = max_hops
        self.session_timeout = timedelta(minutes=session_timeout_minutes)

    @classmethod
    def from_settings(cls, settings, store: FlowStore, collaborators: Collaborators, locks) -> "FlowExecutor":
        return cls(store, collaborators, locks, settings.max_hops_per_event, settings.session_timeout_minutes)

    # ==================== Chat messages ====================

    async def handle_message(self, event: InboundEvent) -> ExecutionOutcome:
        """Continues the address's running session, or starts one if a trigger keyword matches."""
        address = event.end_user_address
        if not address:
            raise LookupFailure("Inbound message has no sender address")
        async with self.locks.hold(address):
            return await self._handle_message(address, event)

    async def _handle_message(self, address: str, event: InboundEvent) -> ExecutionOutcome:
        outcome = ExecutionOutcome()
        session = await self._current_session(address)

        if session is None:
            flow = match_flow(await self.store.list_active_flows(), event.text)
            outcome.flow_matched = flow is not None
            if flow is None:
                logger.info("no_flow_matched", address=address, text=event.text)
                return outcome
            session = self._new_session(flow, address, flow.entry_node_id(), event)
            if session.current_node is None:
                logger.warning("flow_has_no_entry_node", flow_id=flow.id)
                return outcome
            logger.info("session_started", session_id=session.id, flow_id=flow.id, address=address)
            flow_sessions_counter.labels(status="started").inc()
            resuming = False
        else:
            outcome.session_found = True
            flow = await self._load_flow(session)
            if flow is None:
                outcome.observe(session)
                return outcome
            resuming = session.awaiting_reply and event.is_chat_message

        session.merge_variables({"LAST_USER_MESSAGE": event.text})
        if outcome.session_found and not resuming:
            # Parked on a delay or webhook node, or idle after a node with no next edge;
            # the message is recorded but does not advance
            await self._save(session)
            logger.info("message_while_parked", session_id=session.id, node=session.current_node)
            outcome.observe(session)
            return outcome

        await self._run(session, flow, event, outcome, resuming=resuming)
        return outcome

    async def _current_session(self, address: str) -> Optional[Session]:
        """Most recent running session; any older running ones are superseded."""
        sessions = await self.store.list_running_sessions(address)
        if not sessions:
            return None
        for stale in sessions[1:]:
            logger.warning("session_superseded", session_id=stale.id, address=address, by=sessions[0].id)
            await self._finish(stale, SessionStatus.FAILED, error_kind=SUPERSEDED, error_message=SUPERSEDED)
        return sessions[0]

    def _new_session(self, flow: Flow, address: str, node_id: Optional[str], event: InboundEvent) -> Session:
        variables: Dict[str, Any] = {}
        if not address.startswith("webhook:"):
            variables["USER_PHONE"] = address
        if event.is_chat_message:
            variables["USER_NAME"] = event.contact_name or "~"
            variables["TRIGGER_MESSAGE"] = event.text
        return Session(
            flow_id=flow.id,
            user_phone=address,
            current_node=node_id,
            variables=variables,
            trigger_message=event.text if event.is_chat_message else None,
        )

    async def _load_flow(self, session: Session) -> Optional[Flow]:
        """Loads the session's flow. A missing or broken flow fails the session."""
        try:
            flow = await self.store.get_flow(session.flow_id)
            if flow is None:
                raise LookupFailure(f"Flow {session.flow_id} no longer exists")
        except (LookupFailure, FlowDefinitionError) as e:
            logger.error("session_flow_unavailable", session_id=session.id, flow_id=session.flow_id, error=str(e))
            await self._finish(session, SessionStatus.FAILED, error_kind=e.kind, error_message=str(e))
            return None
        return flow

    # ==================== Webhook records ====================

    async def consume_webhook_record(self, record_id: str) -> Optional[WebhookExecutionRecord]:
        """
        Claims a pending record and drives a session through its webhook
        node. Returns None when another worker already claimed it.

        The record always leaves `processing`: `completed` or `failed`, or
        back to `pending` when the address lock is busy so the sweeper
        retries it.
        """
        record = await self.store.claim_webhook_record(record_id)
        if record is None:
            logger.info("webhook_record_not_pending", record_id=record_id)
            return None

        try:
            await self._consume(record)
        except AddressBusy as e:
            logger.warning("webhook_record_deferred", record_id=record.id, error=str(e))
            record.status = WebhookRecordStatus.PENDING
        except FlowbotError as e:
            logger.error("webhook_record_failed", record_id=record.id, error=str(e), kind=e.kind)
            record.status = WebhookRecordStatus.FAILED
            record.error = str(e)
        except Exception as e:
            logger.exception("webhook_record_crashed", record_id=record.id)
            record.status = WebhookRecordStatus.FAILED
            record.error = f"{type(e).__name__}: {e}"
        finally:
            if record.status != WebhookRecordStatus.PENDING:
                record.processed_at = datetime.now(timezone.utc)
            await self.store.save_webhook_record(record)

        logger.info("webhook_record_processed", record_id=record.id, status=record.status.value)
        return record

    async def _consume(self, record: WebhookExecutionRecord) -> None:
        flow = await self.store.get_flow(record.flow_id)
        node = flow.get_node(record.node_id) if flow else None
        if node is None or not node.is_webhook:
            raise LookupFailure(f"Webhook node {record.flow_id}/{record.node_id} no longer exists")

        address = webhook_address(node.config, record.request_data) or f"webhook:{record.id}"
        event = InboundEvent(
            source_kind=SourceKind.GLOBAL_WEBHOOK if record.webhook_id else SourceKind.FLOW_WEBHOOK,
            end_user_address=address,
            payload=record.request_data.body,
            raw_headers=record.request_data.headers,
            raw_query=record.request_data.query,
            raw_body=record.request_data.body,
            method=record.request_data.method,
            webhook_record_id=record.id,
        )
        async with self.locks.hold(address):
            outcome = await self._run_webhook(flow, node, event)

        record.result = outcome.to_dict()
        if outcome.status == SessionStatus.FAILED.value:
            record.status = WebhookRecordStatus.FAILED
            record.error = outcome.error
        else:
            record.status = WebhookRecordStatus.COMPLETED

    async def _run_webhook(self, flow: Flow, node: FlowNode, event: InboundEvent) -> ExecutionOutcome:
        outcome = ExecutionOutcome(flow_matched=True)
        session = await self._current_session(event.end_user_address)
        if session is not None and session.flow_id == flow.id and session.current_node == node.id:
            outcome.session_found = True
        else:
            if session is not None:
                logger.warning("session_superseded", session_id=session.id, by="webhook", flow_id=flow.id)
                await self._finish(session, SessionStatus.FAILED, error_kind=SUPERSEDED, error_message=SUPERSEDED)
            session = self._new_session(flow, event.end_user_address, node.id, event)
            flow_sessions_counter.labels(status="started").inc()
        await self._run(session, flow, event, outcome)
        return outcome

    # ==================== Scheduler entry points ====================

    async def resume_delayed(self, session_id: str, now: Optional[datetime] = None) -> Optional[ExecutionOutcome]:
        """Re-enters a session parked on a delay node once its resume time has passed."""
        now = now or datetime.now(timezone.utc)
        session = await self.store.get_session(session_id)
        if session is None:
            return None
        async with self.locks.hold(session.user_phone):
            # Reload under the lock; a message may have moved it meanwhile
            session = await self.store.get_session(session_id)
            if session is None or not session.is_running or session.resume_at is None or session.resume_at > now:
                return None
            outcome = ExecutionOutcome(session_found=True)
            flow = await self._load_flow(session)
            if flow is None:
                outcome.observe(session)
                return outcome
            event = InboundEvent(source_kind=SourceKind.SCHEDULER, end_user_address=session.user_phone)
            await self._run(session, flow, event, outcome, now=now)
            return outcome

    async def expire_stale_sessions(self, now: Optional[datetime] = None, limit: int = 500) -> int:
        """Marks running sessions idle for longer than the session timeout as `timeout`."""
        now = now or datetime.now(timezone.utc)
        cutoff = now - self.session_timeout
        stale = await self.store.find_sessions({"status": "running", "updated_at": {"$lt": cutoff}}, limit=limit)
        expired = 0
        for candidate in stale:
            async with self.locks.hold(candidate.user_phone):
                session = await self.store.get_session(candidate.id)
                if session is None or not session.is_running or session.updated_at >= cutoff:
                    continue
                await self._finish(session, SessionStatus.TIMEOUT, error_kind="timeout",
                                   error_message=f"No activity for {self.session_timeout}")
                expired += 1
        if expired:
            logger.info("sessions_expired", count=expired)
        return expired

    # ==================== Run loop ====================

    async def _run(self, session: Session, flow: Flow, event: InboundEvent, outcome: ExecutionOutcome,
                   resuming: bool = False, now: Optional[datetime] = None) -> None:
        ctx = NodeContext(collaborators=self.collaborators, resuming=resuming, now=now)
        hops = 0
        try:
            while True:
                if hops >= self.max_hops:
                    raise HopLimitExceeded(
                        f"More than {self.max_hops} nodes executed for one event",
                        {"node_id": session.current_node, "max_hops": self.max_hops},
                    )
                node = flow.get_node(session.current_node)
                if node is None:
                    logger.warning("next_node_missing", session_id=session.id, node_id=session.current_node)
                    await self._finish(session, SessionStatus.COMPLETED)
                    break

                handler = resolve_handler(node.type)
                result = await handler(node, session, event, flow, ctx)
                hops += 1
                session.hops += 1
                ctx.resuming = False
                self._record_node(session, node, result, outcome)

                if result.side_effect_error is not None:
                    error = result.side_effect_error
                    logger.error("node_failed", session_id=session.id, node_id=node.id, node_type=node.type, error=str(error))
                    await self._finish(session, SessionStatus.FAILED, error_kind=getattr(error, "kind", "internal_error"),
                                       error_message=str(error))
                    break
                if result.terminal:
                    await self._finish(session, SessionStatus.COMPLETED)
                    break
                if result.parked:
                    session.awaiting_reply = result.awaiting_reply
                    session.resume_at = result.resume_at
                    await self._save(session)
                    break
                if result.next_node_id is None:
                    # Implicit wait: stays running here, no auto-advance
                    session.awaiting_reply = False
                    session.resume_at = None
                    await self._save(session)
                    logger.info("session_idle_at_node", session_id=session.id, node_id=node.id)
                    break

                session.current_node = result.next_node_id
                session.awaiting_reply = False
                session.resume_at = None
                await self._save(session)
        except FlowbotError as e:
            logger.error("session_failed", session_id=session.id, node_id=session.current_node, error=str(e), kind=e.kind)
            await self._finish(session, SessionStatus.FAILED, error_kind=e.kind, error_message=str(e))
        except Exception as e:
            # A handler bug fails this session only; the caller still gets an outcome
            logger.exception("session_crashed", session_id=session.id, node_id=session.current_node)
            await self._finish(session, SessionStatus.FAILED, error_kind="internal_error",
                               error_message=f"{type(e).__name__}: {e}")
        finally:
            outcome.observe(session)

    def _record_node(self, session: Session, node: FlowNode, result: NodeResult, outcome: ExecutionOutcome) -> None:
        session.merge_variables(result.variable_updates)
        session.merge_variables({node.id: {"nodeId": node.id, "nodeType": node.type, "executed": True, **result.output}})
        if result.output.get("sent"):
            outcome.message_sent = True

        if result.side_effect_error is not None:
            status = "failed"
        elif result.parked:
            status = "parked"
        else:
            status = "ok"
        node_executions_counter.labels(node_type=node.type, status=status).inc()

    async def _save(self, session: Session) -> None:
        # The store stamps updated_at
        await self.store.save_session(session)

    async def _finish(self, session: Session, status: SessionStatus, error_kind: Optional[str] = None,
                      error_message: Optional[str] = None) -> None:
        session.status = status
        session.awaiting_reply = False
        session.resume_at = None
        session.error_kind = error_kind
        session.error_message = error_message
        session.completed_at = datetime.now(timezone.utc)
        await self._save(session)
        flow_sessions_counter.labels(status=status.value).inc()
        logger.info("session_finished", session_id=session.id, status=status.value, error_kind=error_kind)
