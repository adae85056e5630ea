# /flowbot/workflows/action_nodes.py

import base64
import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from flowbot.models.events import InboundEvent, SourceKind
from flowbot.models.execution import Session, WebhookRequestData
from flowbot.models.flow import Flow, FlowNode
from flowbot.services import whatsapp_service as wa
from flowbot.services.store import build_filter
from flowbot.utils.errors import ConfigError, FlowbotError
from flowbot.workflows.conditions import evaluate_condition
from flowbot.workflows.definitions import NodeContext, NodeResult
from flowbot.workflows.message_nodes import recipient
from flowbot.workflows.templating import first_config, render, render_value

logger = logging.getLogger(__name__)

DELAY_UNITS = {"seconds": 1, "minutes": 60, "hours": 3600}


async def passthrough(node: FlowNode, session: Session, event: InboundEvent, flow: Flow, ctx: NodeContext) -> NodeResult:
    """Trigger anchors reached mid-graph just hand over to their next node."""
    return NodeResult.advance(node.next_node_id)


async def condition(node: FlowNode, session: Session, event: InboundEvent, flow: Flow, ctx: NodeContext) -> NodeResult:
    result, error = evaluate_condition(node.config, session.variables)
    edge = "true" if result else "false"
    target = node.edge(edge) or first_config(node.config, f"{edge}_next", f"{edge}NodeId") or node.next_node_id
    updates: Dict[str, Any] = {"condition.result": result}
    if error:
        logger.warning(f"Condition node {node.id} failed to evaluate, taking 'false' edge: {error}")
        updates["condition.error"] = error
    return NodeResult.advance(target, updates, result=result, edge=edge, evaluation_error=error)


async def ai_agent(node: FlowNode, session: Session, event: InboundEvent, flow: Flow, ctx: NodeContext) -> NodeResult:
    config, variables = node.config, session.variables
    provider = str(first_config(config, "provider", "ai_provider", default="openai")).lower()
    model = first_config(config, "model")
    system_prompt = render(first_config(config, "system_prompt", "systemPrompt"), variables) or None
    user_prompt = render(first_config(config, "user_prompt", "userPrompt", "prompt", default="{{LAST_USER_MESSAGE}}"), variables)
    response_key = first_config(config, "response_variable", "responseVariable", default="ai.response")

    try:
        temperature = float(first_config(config, "temperature", default=0.7))
        max_tokens = int(first_config(config, "max_tokens", "maxTokens", default=1000))
    except (TypeError, ValueError):
        return NodeResult.fail(ConfigError(f"Node {node.id}: temperature/max_tokens must be numeric"))
    if not user_prompt:
        return NodeResult.fail(ConfigError(f"Node {node.id}: AI prompt is empty"))

    try:
        completion = await ctx.collaborators.ai.complete(provider, model, system_prompt, user_prompt, temperature, max_tokens)
    except FlowbotError as e:
        return NodeResult.fail(e, {"ai.error": str(e)}, provider=provider)

    updates = {response_key: completion.text, "ai.tokens_used": completion.tokens_used}
    output: Dict[str, Any] = {"provider": provider, "model": completion.model, "tokens_used": completion.tokens_used}

    if config.get("send_response") or config.get("sendResponse"):
        to = recipient(node, session)
        if to and completion.text:
            try:
                sent = await ctx.collaborators.messaging.send(to, wa.build_text(completion.text))
            except FlowbotError as e:
                return NodeResult.fail(e, updates, **output)
            output["sent"] = sent.delivered
    return NodeResult.advance(node.next_node_id, updates, **output)


def _http_headers(config: Dict[str, Any], variables: Dict[str, Any]) -> Dict[str, str]:
    headers: Dict[str, str] = {}
    raw = config.get("headers") or []
    pairs = raw.items() if isinstance(raw, dict) else ((h.get("key"), h.get("value")) for h in raw if isinstance(h, dict))
    for key, value in pairs:
        if key and value:
            headers[render(key, variables)] = render(value, variables)

    auth_type = config.get("auth_type")
    if auth_type == "bearer" and config.get("bearer_token"):
        headers["Authorization"] = f"Bearer {render(config['bearer_token'], variables)}"
    elif auth_type == "basic" and config.get("basic_username") and config.get("basic_password"):
        raw_credentials = f"{render(config['basic_username'], variables)}:{render(config['basic_password'], variables)}"
        headers["Authorization"] = f"Basic {base64.b64encode(raw_credentials.encode()).decode()}"
    elif auth_type == "api_key" and config.get("api_key_header") and config.get("api_key_value"):
        headers[render(config["api_key_header"], variables)] = render(config["api_key_value"], variables)
    return headers


async def http_request(node: FlowNode, session: Session, event: InboundEvent, flow: Flow, ctx: NodeContext) -> NodeResult:
    config, variables = node.config, session.variables
    url = render(config.get("url"), variables)
    method = render(config.get("method") or "GET", variables).upper()
    if not url:
        return NodeResult.fail(ConfigError(f"Node {node.id}: HTTP url is empty"))

    headers = _http_headers(config, variables)
    body: Any = None
    if config.get("body"):
        if isinstance(config["body"], (dict, list)):
            body = render_value(config["body"], variables)
        else:
            rendered = render(config["body"], variables)
            try:
                body = json.loads(rendered)
            except ValueError:
                body = rendered
        if not any(k.lower() == "content-type" for k in headers):
            headers["Content-Type"] = "application/json"
    try:
        timeout_ms = int(first_config(config, "timeout_ms", "timeoutMs", default=ctx.collaborators.http_timeout_ms))
    except (TypeError, ValueError):
        return NodeResult.fail(ConfigError(f"Node {node.id}: timeout_ms must be an integer"))

    try:
        response = await ctx.collaborators.http.call(url, method, headers, body, timeout_ms)
    except FlowbotError as e:
        return NodeResult.fail(e, {"http.error": str(e)}, url=url, method=method)

    var = first_config(config, "response_variable", "responseVariable", default="http.response")
    updates: Dict[str, Any] = {
        var: response.body,
        f"{var}.status": response.status,
        f"{var}.statusText": response.status_text,
        f"{var}.headers": response.headers,
        f"{var}.duration_ms": response.duration_ms,
    }
    if isinstance(response.body, dict):
        for key, value in response.body.items():
            updates[f"{var}.{key}"] = value
    return NodeResult.advance(node.next_node_id, updates, url=url, method=method, status=response.status)


def _delay_seconds(config: Dict[str, Any]) -> int:
    try:
        amount = int(first_config(config, "delay", "duration", "time", default=5))
    except (TypeError, ValueError):
        raise ConfigError("Delay amount must be an integer")
    unit = str(first_config(config, "unit", "timeUnit", default="seconds")).lower()
    if unit not in DELAY_UNITS:
        raise ConfigError(f"Unknown delay unit '{unit}'")
    return max(amount, 0) * DELAY_UNITS[unit]


async def delay(node: FlowNode, session: Session, event: InboundEvent, flow: Flow, ctx: NodeContext) -> NodeResult:
    """
    Never sleeps. First entry parks the session with `resume_at`; the
    scheduler tick re-enters the node and it advances once the time is due.
    """
    now = ctx.now or datetime.now(timezone.utc)
    if session.resume_at is not None and session.current_node == node.id:
        if now >= session.resume_at:
            return NodeResult.advance(node.next_node_id, delayed=True, resumed_at=now.isoformat())
        return NodeResult.park(awaiting_reply=False, resume_at=session.resume_at)

    try:
        seconds = _delay_seconds(node.config)
    except ConfigError as e:
        return NodeResult.fail(e)
    if seconds == 0:
        return NodeResult.advance(node.next_node_id, delayed=False)
    resume_at = now + timedelta(seconds=seconds)
    return NodeResult.park(awaiting_reply=False, resume_at=resume_at, delayed=True, resumes_at=resume_at.isoformat())


def _sheet_rows(config: Dict[str, Any], variables: Dict[str, Any]) -> List[List[Any]]:
    columns = config.get("columns")
    if isinstance(columns, dict) and not config.get("values"):
        return [[render(v, variables) for v in columns.values()]]
    return [[render("" if cell is None else str(cell), variables) for cell in row] for row in (config.get("values") or [])]


async def google_sheets(node: FlowNode, session: Session, event: InboundEvent, flow: Flow, ctx: NodeContext) -> NodeResult:
    config, variables = node.config, session.variables
    sheets = ctx.collaborators.sheets
    default_op = "update_columns" if node.type == "update_columns" else "append"
    operation = str(first_config(config, "operation", default=default_op)).lower()
    spreadsheet_id = render(first_config(config, "spreadsheet_id", "spreadsheetId"), variables)
    sheet_name = render(first_config(config, "sheet_name", "sheetName", default="Sheet1"), variables)
    prefix = first_config(config, "response_variable", default="sheets")

    if not spreadsheet_id:
        return NodeResult.fail(ConfigError(f"Node {node.id}: spreadsheet_id is required"))

    try:
        if operation == "append":
            count = await sheets.append(spreadsheet_id, sheet_name, _sheet_rows(config, variables))
            return NodeResult.advance(node.next_node_id, {f"{prefix}.updated_rows": count}, operation=operation)

        if operation == "update":
            cell_range = render(config.get("range") or f"{sheet_name}!A1", variables)
            count = await sheets.update(spreadsheet_id, cell_range, _sheet_rows(config, variables))
            return NodeResult.advance(node.next_node_id, {f"{prefix}.updated_rows": count}, operation=operation)

        predicate = build_filter(render_value(config.get("filters") or [], variables))
        if operation == "lookup":
            rows = await sheets.lookup(spreadsheet_id, sheet_name, predicate)
            updates = {f"{prefix}.row_found": bool(rows), f"{prefix}.rows": rows, f"{prefix}.row": rows[0] if rows else None}
            return NodeResult.advance(node.next_node_id, updates, operation=operation, matched=len(rows))

        if operation == "update_columns":
            columns = render_value(config.get("columns") or {}, variables)
            if not isinstance(columns, dict) or not columns:
                raise ConfigError(f"Node {node.id}: update_columns needs a 'columns' mapping")
            count = await sheets.update_columns(spreadsheet_id, sheet_name, predicate, columns)
            updates = {f"{prefix}.row_found": count > 0, f"{prefix}.updated_rows": count}
            return NodeResult.advance(node.next_node_id, updates, operation=operation, matched=count)

        raise ConfigError(f"Node {node.id}: unknown sheets operation '{operation}'")
    except FlowbotError as e:
        return NodeResult.fail(e, {f"{prefix}.error": str(e)}, operation=operation)


async def stop_chatbot(node: FlowNode, session: Session, event: InboundEvent, flow: Flow, ctx: NodeContext) -> NodeResult:
    message = render(first_config(node.config, "message", "text", "answer_text"), session.variables)
    to = recipient(node, session)
    output: Dict[str, Any] = {"stopped": True}
    if message and to:
        try:
            sent = await ctx.collaborators.messaging.send(to, wa.build_text(message))
            output["sent"] = sent.delivered
        except FlowbotError as e:
            logger.warning(f"Goodbye message for session {session.id} failed: {e}")
            output["sent"] = False
    return NodeResult(terminal=True, output=output)


async def webhook_entry(node: FlowNode, session: Session, event: InboundEvent, flow: Flow, ctx: NodeContext) -> NodeResult:
    """Advances only for the webhook record addressed to this node; chat messages leave it parked."""
    if event.source_kind not in (SourceKind.FLOW_WEBHOOK, SourceKind.GLOBAL_WEBHOOK) or not event.webhook_record_id:
        return NodeResult.park(awaiting_reply=False, waiting_for="webhook")

    request = WebhookRequestData(
        method=event.method, headers=event.raw_headers, query=event.raw_query, body=event.raw_body
    )
    updates = request.to_variables()
    return NodeResult.advance(node.next_node_id, updates, record_id=event.webhook_record_id,
                              variables_generated=list(updates))


def webhook_address(config: Dict[str, Any], request: WebhookRequestData) -> Optional[str]:
    """End-user address taken from the captured request (`address_field: body.phone`)."""
    field = config.get("address_field")
    if not field:
        return None
    source, _, key = str(field).partition(".")
    container = {"body": request.body, "query": request.query, "header": request.headers}.get(source)
    if isinstance(container, dict) and key:
        value = container.get(key)
        return str(value) if value not in (None, "") else None
    return None
