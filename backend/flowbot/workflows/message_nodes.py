# /flowbot/workflows/message_nodes.py

import json
import logging
from typing import Any, Dict, List, Optional

from flowbot.models.events import InboundEvent
from flowbot.models.execution import Session
from flowbot.models.flow import NEXT_EDGE, Flow, FlowNode
from flowbot.services import whatsapp_service as wa
from flowbot.utils.errors import FlowbotError
from flowbot.workflows.definitions import NodeContext, NodeResult
from flowbot.workflows.templating import first_config, render, render_value

# Handlers for nodes that talk to the end user: plain sends, interactive
# messages that may wait for a reply, and question/wait nodes.

logger = logging.getLogger(__name__)


def recipient(node: FlowNode, session: Session) -> Optional[str]:
    """Explicit `to` in config wins; webhook-started sessions have no phone."""
    explicit = render(first_config(node.config, "to", "phone", "recipient"), session.variables)
    if explicit:
        return explicit
    if session.user_phone.startswith("webhook:"):
        return None
    return session.user_phone


async def deliver(node: FlowNode, session: Session, ctx: NodeContext, content: Dict[str, Any],
                  missing: Optional[str] = None, **output: Any) -> NodeResult:
    """
    Sends `content` and advances along `next`. A missing required field or
    recipient is recorded on the node output and the flow continues; a
    transport failure fails the step.
    """
    to = recipient(node, session)
    if missing or not to:
        error = missing or "Missing recipient phone"
        logger.warning(f"Node {node.id} ({node.type}) not sent: {error}")
        return NodeResult.advance(node.next_node_id, sent=False, error=error, **output)
    try:
        result = await ctx.collaborators.messaging.send(to, content)
    except FlowbotError as e:
        return NodeResult.fail(e, sent=False, error=str(e), **output)
    return NodeResult.advance(
        node.next_node_id, sent=result.delivered, provider_message_id=result.provider_message_id,
        error=result.error, **output
    )


def _header(config: Dict[str, Any], variables: Dict[str, Any]) -> Optional[str]:
    header_type = first_config(config, "headerType", "header_type")
    text = first_config(config, "headerText", "header_text")
    if text and header_type in (None, "none", "text"):
        return render(text, variables)
    return None


def _footer(config: Dict[str, Any], variables: Dict[str, Any]) -> Optional[str]:
    text = first_config(config, "footerText", "footer_text")
    return render(text, variables) if text else None


def _save_key(config: Dict[str, Any]) -> Optional[str]:
    return first_config(config, "saveAs", "save_as", "variable", "response_variable")


def _routes_by_option(node: FlowNode) -> bool:
    return any(name != NEXT_EDGE for name in node.edges)


def route_reply(node: FlowNode, event: InboundEvent, options: List[Dict[str, Any]]) -> Optional[str]:
    """Edge for an interactive reply: by reply id, then by option title, then `next`."""
    message = event.message
    if message:
        if message.id and node.edge(message.id):
            return node.edge(message.id)
        reply = (message.title or message.text or "").strip().casefold()
        for idx, option in enumerate(options):
            title = str(option.get("text") or option.get("title") or "").strip().casefold()
            option_id = str(option.get("id") or f"btn_{idx}")
            if reply and title == reply and node.edge(option_id):
                return node.edge(option_id)
    return node.next_node_id


def _reply_updates(node: FlowNode, event: InboundEvent) -> Dict[str, Any]:
    updates: Dict[str, Any] = {}
    key = _save_key(node.config)
    if key and event.message:
        updates[key] = event.message.text
    return updates


# ==================== Plain sends ====================

async def send_message(node: FlowNode, session: Session, event: InboundEvent, flow: Flow, ctx: NodeContext) -> NodeResult:
    text = render(first_config(node.config, "answer_text", "answerText", "text", "message"), session.variables)
    return await deliver(node, session, ctx, wa.build_text(text),
                         missing=None if text else "Missing message text", message=text)


async def send_media(node: FlowNode, session: Session, event: InboundEvent, flow: Flow, ctx: NodeContext) -> NodeResult:
    config, variables = node.config, session.variables
    url = render(first_config(config, "mediaUrl", "media_url", "url"), variables)
    caption = render(config.get("caption"), variables)
    media_type = str(first_config(config, "mediaType", "media_type", "answer_type", default="Image")).lower()
    return await deliver(node, session, ctx, wa.build_media(media_type, url, caption),
                         missing=None if url else "Missing media URL",
                         media_url=url, media_type=media_type, caption=caption)


async def send_template(node: FlowNode, session: Session, event: InboundEvent, flow: Flow, ctx: NodeContext) -> NodeResult:
    config, variables = node.config, session.variables
    name = render(first_config(config, "templateName", "template_name"), variables)
    language = first_config(config, "languageCode", "language_code", default="en_US")
    components = render_value(config.get("components") or [], variables)
    return await deliver(node, session, ctx, wa.build_template(name, language, components),
                         missing=None if name else "Missing template name",
                         template_name=name, language=language)


async def send_cta(node: FlowNode, session: Session, event: InboundEvent, flow: Flow, ctx: NodeContext) -> NodeResult:
    config, variables = node.config, session.variables
    body = render(first_config(config, "bodyText", "body_text", "text"), variables)
    url = render(first_config(config, "url", "ctaUrl", "cta_url"), variables)
    display = render(first_config(config, "buttonText", "button_text", "display_text", default="Open"), variables)
    content = wa.build_cta_url(body, display, url, _header(config, variables), _footer(config, variables))
    return await deliver(node, session, ctx, content,
                         missing=None if body and url else "Missing body text or URL", url=url)


async def send_product(node: FlowNode, session: Session, event: InboundEvent, flow: Flow, ctx: NodeContext) -> NodeResult:
    config, variables = node.config, session.variables
    catalog_id = render(first_config(config, "catalogId", "catalog_id"), variables)
    product_id = render(first_config(config, "productRetailerId", "product_retailer_id", "productId", "product_id"), variables)
    body = render(first_config(config, "bodyText", "body_text", "text"), variables)
    content = wa.build_product(catalog_id, product_id, body, _footer(config, variables))
    return await deliver(node, session, ctx, content,
                         missing=None if catalog_id and product_id else "Missing catalog or product id",
                         product_retailer_id=product_id)


async def send_location(node: FlowNode, session: Session, event: InboundEvent, flow: Flow, ctx: NodeContext) -> NodeResult:
    config, variables = node.config, session.variables
    try:
        latitude = float(render(config.get("latitude"), variables))
        longitude = float(render(config.get("longitude"), variables))
    except ValueError:
        return NodeResult.advance(node.next_node_id, sent=False, error="Invalid latitude/longitude")
    name = render(first_config(config, "name", "locationName"), variables)
    address = render(first_config(config, "address", "locationAddress"), variables)
    return await deliver(node, session, ctx, wa.build_location(latitude, longitude, name, address),
                         latitude=latitude, longitude=longitude)


# ==================== Messages that wait for the user ====================

async def send_button(node: FlowNode, session: Session, event: InboundEvent, flow: Flow, ctx: NodeContext) -> NodeResult:
    config, variables = node.config, session.variables
    buttons = config.get("buttons") or []
    if ctx.resuming:
        return NodeResult.advance(route_reply(node, event, buttons), _reply_updates(node, event),
                                  selected=event.message.id if event.message else None)

    body = render(first_config(config, "bodyText", "body_text", "text"), variables)
    rendered = [{**btn, "text": render(btn.get("text") or btn.get("title"), variables)} for btn in buttons]
    content = wa.build_buttons(body, rendered, _header(config, variables), _footer(config, variables))
    result = await deliver(node, session, ctx, content,
                           missing=None if body and buttons else "Missing body text or buttons",
                           body_text=body, buttons=[b.get("id") for b in buttons])
    if result.output.get("sent") and _routes_by_option(node):
        return NodeResult.park(**result.output)
    return result


def _list_sections(config: Dict[str, Any]) -> List[Dict[str, Any]]:
    sections = config.get("sections")
    if sections:
        return sections
    rows = config.get("rows") or config.get("options") or []
    return [{"title": config.get("sectionTitle") or "Options", "rows": rows}] if rows else []


async def send_list(node: FlowNode, session: Session, event: InboundEvent, flow: Flow, ctx: NodeContext) -> NodeResult:
    config, variables = node.config, session.variables
    sections = _list_sections(config)
    if ctx.resuming:
        rows = [row for section in sections for row in (section.get("rows") or [])]
        return NodeResult.advance(route_reply(node, event, rows), _reply_updates(node, event),
                                  selected=event.message.id if event.message else None)

    body = render(first_config(config, "bodyText", "body_text", "text"), variables)
    button_text = render(first_config(config, "buttonText", "button_text", default="View Options"), variables)
    content = wa.build_list(body, button_text, render_value(sections, variables),
                            _header(config, variables), _footer(config, variables))
    result = await deliver(node, session, ctx, content,
                           missing=None if body and sections else "Missing body text or list rows", body_text=body)
    if result.output.get("sent") and _routes_by_option(node):
        return NodeResult.park(**result.output)
    return result


async def request_location(node: FlowNode, session: Session, event: InboundEvent, flow: Flow, ctx: NodeContext) -> NodeResult:
    if ctx.resuming:
        updates = _reply_updates(node, event)
        if event.message and event.message.location:
            for key, value in event.message.location.items():
                updates[f"location.{key}"] = value
        return NodeResult.advance(node.next_node_id, updates, location_received=bool(event.message and event.message.location))

    body = render(first_config(node.config, "bodyText", "body_text", "text", default="Please share your location"), session.variables)
    result = await deliver(node, session, ctx, wa.build_request_location(body))
    if result.output.get("sent"):
        return NodeResult.park(**result.output)
    return result


async def send_flow(node: FlowNode, session: Session, event: InboundEvent, flow: Flow, ctx: NodeContext) -> NodeResult:
    config, variables = node.config, session.variables
    if ctx.resuming:
        updates = _reply_updates(node, event)
        if event.message and event.message.type == "interactive_flow":
            try:
                updates["flow_response"] = json.loads(event.message.text or "{}")
            except ValueError:
                updates["flow_response"] = event.message.text
        return NodeResult.advance(node.next_node_id, updates)

    wa_flow_id = render(first_config(config, "flowId", "flow_id"), variables)
    body = render(first_config(config, "bodyText", "body_text", "text"), variables)
    cta = render(first_config(config, "flowCta", "flow_cta", "buttonText", default="Open"), variables)
    content = wa.build_flow(
        body, wa_flow_id, cta,
        flow_token=render(first_config(config, "flowToken", "flow_token", default=session.id), variables),
        header=_header(config, variables), footer=_footer(config, variables),
        screen=first_config(config, "screen", "flowScreen"),
        flow_data=render_value(config.get("flowData") or config.get("flow_data") or {}, variables),
    )
    result = await deliver(node, session, ctx, content,
                           missing=None if wa_flow_id and body else "Missing flow id or body text", flow_id=wa_flow_id)
    if result.output.get("sent"):
        return NodeResult.park(**result.output)
    return result


async def ask_question(node: FlowNode, session: Session, event: InboundEvent, flow: Flow, ctx: NodeContext) -> NodeResult:
    """Sends the prompt (if any) and parks; the next inbound message is the answer."""
    if ctx.resuming:
        if not event.is_chat_message:
            return NodeResult.park()
        return NodeResult.advance(node.next_node_id, _reply_updates(node, event), reply=event.text)

    prompt = render(first_config(node.config, "question", "text", "message", "answer_text"), session.variables)
    if not prompt:
        return NodeResult.park(sent=False)
    result = await deliver(node, session, ctx, wa.build_text(prompt), message=prompt)
    if result.side_effect_error:
        return result
    return NodeResult.park(**result.output)
