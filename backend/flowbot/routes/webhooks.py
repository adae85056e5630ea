# /flowbot/routes/webhooks.py

import json
import time
from datetime import datetime, timezone
from typing import Awaitable, Callable, Iterable, Optional, Tuple

import structlog
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from flowbot.dependencies.context import AppContext, get_app_context
from flowbot.models.events import SourceKind
from flowbot.models.execution import AuditLogEntry, WebhookExecutionRecord, WebhookRequestData
from flowbot.models.flow import Flow, FlowNode
from flowbot.services.ingress_service import (
    FLOW_WEBHOOK_METHODS,
    GLOBAL_WEBHOOK_METHODS,
    build_simulated_event,
    build_whatsapp_event,
    check_access,
    parse_body,
    resolve_flow_webhook,
    resolve_global_webhook,
    verify_signature,
)
from flowbot.utils.errors import FlowbotError, MalformedPayload
from flowbot.utils.metrics import inbound_events_counter, response_time_histogram
from flowbot.workflows.executor import ExecutionOutcome

# Every way an event enters the engine: the WhatsApp Cloud API webhook, the
# simulator, per-flow webhook nodes and global webhook ids. Each call gets
# one audit entry whether it is accepted or rejected.

router = APIRouter(
    tags=["Webhooks"]
)

log = structlog.get_logger(__name__)

WEBHOOK_ROUTE_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD"]
# Never copied into the captured request or session variables
REDACTED_HEADERS = ("authorization",)


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _outcome_fields(outcome: ExecutionOutcome) -> dict:
    return {
        "session_found": outcome.session_found,
        "flow_matched": outcome.flow_matched,
        "flow_id": outcome.flow_id,
        "current_node": outcome.current_node,
        "execution_id": outcome.execution_id,
        "message_sent": outcome.message_sent,
        "error_message": outcome.error,
    }


# --- WhatsApp Webhooks ---

@router.get("/whatsapp")
async def verify_whatsapp_webhook(
    hub_mode: str = Query(None, alias="hub.mode"),
    hub_verify_token: str = Query(None, alias="hub.verify_token"),
    hub_challenge: str = Query(None, alias="hub.challenge"),
    ctx: AppContext = Depends(get_app_context),
):
    """WhatsApp webhook verification (GET request)."""
    if hub_mode == "subscribe" and hub_verify_token == ctx.settings.whatsapp_verify_token:
        log.info("whatsapp_verification_succeeded")
        return PlainTextResponse(hub_challenge or "")
    log.error("whatsapp_verification_failed", mode=hub_mode)
    raise HTTPException(status_code=403, detail="Forbidden")


@router.post("/whatsapp")
async def handle_whatsapp_webhook(request: Request, ctx: AppContext = Depends(get_app_context)):
    """
    Message delivery from the WhatsApp Cloud API. Always answers 200 once
    the signature is valid so the provider does not redeliver.
    """
    with response_time_histogram.labels(endpoint="whatsapp_webhook").time():
        started = time.monotonic()
        body = await request.body()

        if ctx.settings.whatsapp_app_secret:
            signature = request.headers.get("x-hub-signature-256", "")
            if not verify_signature(body, signature, ctx.settings.whatsapp_app_secret):
                inbound_events_counter.labels(source="whatsapp", outcome="invalid_signature").inc()
                log.error("whatsapp_signature_invalid", signature=signature[:20])
                raise HTTPException(status_code=403, detail="Invalid signature")

        try:
            payload = json.loads(body)
        except ValueError as e:
            inbound_events_counter.labels(source="whatsapp", outcome="malformed").inc()
            log.warning("whatsapp_payload_unparseable", error=str(e))
            return JSONResponse({"status": "ignored"})

        entry_id = ctx.audit.open(AuditLogEntry(source=SourceKind.WHATSAPP.value, method="POST", payload=payload))
        event = build_whatsapp_event(payload) if isinstance(payload, dict) else None
        if event is None:
            inbound_events_counter.labels(source="whatsapp", outcome="no_message").inc()
            ctx.audit.append(entry_id, status_code=200, processing_time_ms=_elapsed_ms(started))
            return JSONResponse({"status": "ok"})

        log.info("whatsapp_message_received", address=event.end_user_address, message_type=event.message.type)
        ctx.audit.append(entry_id, user_phone=event.end_user_address, message_type=event.message.type)
        try:
            outcome = await ctx.executor.handle_message(event)
            ctx.audit.append(entry_id, status_code=200, processing_time_ms=_elapsed_ms(started), **_outcome_fields(outcome))
            inbound_events_counter.labels(source="whatsapp", outcome="processed").inc()
        except FlowbotError as e:
            log.error("whatsapp_message_failed", address=event.end_user_address, error=str(e), kind=e.kind)
            ctx.audit.append(entry_id, status_code=200, error_message=str(e), processing_time_ms=_elapsed_ms(started))
            inbound_events_counter.labels(source="whatsapp", outcome=e.kind).inc()
        except Exception as e:
            log.exception("whatsapp_message_crashed", address=event.end_user_address)
            ctx.audit.append(entry_id, status_code=200, error_message=f"{type(e).__name__}: {e}",
                             processing_time_ms=_elapsed_ms(started))
            inbound_events_counter.labels(source="whatsapp", outcome="internal_error").inc()
        return JSONResponse({"status": "ok"})


@router.post("/whatsapp/simulate")
async def simulate_whatsapp_message(request: Request, ctx: AppContext = Depends(get_app_context)):
    """Runs a `{from, text, name?}` message through the executor and returns the outcome."""
    started = time.monotonic()
    try:
        payload = json.loads(await request.body())
    except ValueError:
        raise MalformedPayload("Request body is not valid JSON")
    if not isinstance(payload, dict) or not payload.get("from"):
        raise MalformedPayload("Body must be an object with a 'from' field")

    event = build_simulated_event(payload)
    entry_id = ctx.audit.open(AuditLogEntry(
        source=SourceKind.SIMULATOR.value, method="POST", payload=payload,
        user_phone=event.end_user_address, message_type="text",
    ))
    outcome = await ctx.executor.handle_message(event)
    ctx.audit.append(entry_id, status_code=200, processing_time_ms=_elapsed_ms(started), **_outcome_fields(outcome))
    inbound_events_counter.labels(source="simulator", outcome="processed").inc()
    return {"success": True, "outcome": outcome.to_dict()}


# --- Flow Webhooks ---

async def _accept_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    ctx: AppContext,
    source: SourceKind,
    resolve: Callable[[], Awaitable[Tuple[Flow, FlowNode]]],
    default_methods: Iterable[str],
    webhook_id: Optional[str] = None,
):
    started = time.monotonic()
    body = await parse_body(request)
    request_data = WebhookRequestData(
        method=request.method,
        headers={k: v for k, v in request.headers.items() if k.lower() not in REDACTED_HEADERS},
        query=dict(request.query_params),
        body=body,
    )
    entry = AuditLogEntry(source=source.value, method=request.method, payload=body, webhook_id=webhook_id)

    try:
        flow, node = await resolve()
        check_access(node, request.method, request.headers.get("authorization"), default_methods)
    except FlowbotError as e:
        log.warning("webhook_rejected", source=source.value, path=request.url.path, error=str(e), kind=e.kind)
        entry.status_code = e.status_code
        entry.error_message = str(e)
        entry.processing_time_ms = _elapsed_ms(started)
        ctx.audit.open(entry)
        inbound_events_counter.labels(source=source.value, outcome=e.kind).inc()
        raise

    record = WebhookExecutionRecord(flow_id=flow.id, node_id=node.id, webhook_id=webhook_id, request_data=request_data)
    await ctx.store.create_webhook_record(record)
    background_tasks.add_task(ctx.executor.consume_webhook_record, record.id)

    entry.flow_matched = True
    entry.flow_id = flow.id
    entry.current_node = node.id
    entry.execution_id = record.id
    entry.status_code = 200
    entry.processing_time_ms = _elapsed_ms(started)
    ctx.audit.open(entry)
    inbound_events_counter.labels(source=source.value, outcome="accepted").inc()
    log.info("webhook_accepted", flow_id=flow.id, node_id=node.id, record_id=record.id)

    variables = request_data.to_variables()
    return {
        "success": True,
        "message": "Webhook received and queued for processing",
        "flow_id": flow.id,
        "flow_name": flow.name,
        "node_id": node.id,
        "execution_id": record.id,
        "captured_data": request_data.model_dump(),
        "variables_generated": list(variables),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.api_route("/custom/{flow_identifier}/{node_id}", methods=WEBHOOK_ROUTE_METHODS)
async def receive_flow_webhook(
    flow_identifier: str,
    node_id: str,
    request: Request,
    background_tasks: BackgroundTasks,
    ctx: AppContext = Depends(get_app_context),
):
    """Webhook addressed to one node of one flow (by flow id or name slug)."""
    with response_time_histogram.labels(endpoint="flow_webhook").time():
        return await _accept_webhook(
            request, background_tasks, ctx, SourceKind.FLOW_WEBHOOK,
            lambda: resolve_flow_webhook(ctx.store, flow_identifier, node_id, request.url.path),
            FLOW_WEBHOOK_METHODS,
        )


@router.api_route("/receive/{webhook_id}", methods=WEBHOOK_ROUTE_METHODS)
async def receive_global_webhook(
    webhook_id: str,
    request: Request,
    background_tasks: BackgroundTasks,
    ctx: AppContext = Depends(get_app_context),
):
    """Webhook addressed by a `webhook_id` configured on a node of any active flow."""
    with response_time_histogram.labels(endpoint="global_webhook").time():
        return await _accept_webhook(
            request, background_tasks, ctx, SourceKind.GLOBAL_WEBHOOK,
            lambda: resolve_global_webhook(ctx.store, webhook_id, request.url.path),
            GLOBAL_WEBHOOK_METHODS,
            webhook_id=webhook_id,
        )


@router.options("/whatsapp")
@router.options("/custom/{flow_identifier}/{node_id}")
@router.options("/receive/{webhook_id}")
async def webhook_options():
    return JSONResponse({"status": "ok"})
