# /flowbot/services/ingress_service.py

import hashlib
import hmac
import json
from typing import Any, Dict, Iterable, List, Optional, Tuple

import structlog
from fastapi import Request
from starlette.datastructures import UploadFile

from flowbot.models.events import InboundEvent, MessageContent, SourceKind
from flowbot.models.flow import Flow, FlowNode
from flowbot.services.store import FlowStore
from flowbot.utils.errors import AuthFailure, LookupFailure, MethodNotAllowed, WebhookInactive
from flowbot.utils.metrics import webhook_routing_ambiguous_counter

# Everything the webhook routes need between "bytes arrived" and "hand an
# InboundEvent or a WebhookExecutionRecord to the executor": provider payload
# normalization, body parsing, routing-key resolution and access checks.

log = structlog.get_logger(__name__)

FLOW_WEBHOOK_METHODS = ("GET", "POST", "PUT", "DELETE")
GLOBAL_WEBHOOK_METHODS = ("GET", "POST")
MEDIA_TYPES = ("image", "video", "audio", "document", "sticker")


# ==================== WhatsApp payloads ====================

def verify_signature(body: bytes, signature: str, secret: str) -> bool:
    """Checks Meta's `X-Hub-Signature-256: sha256=<hex>` header against the app secret."""
    if not signature or not signature.startswith("sha256="):
        return False
    expected = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature[len("sha256="):])


def extract_message_content(message: Dict[str, Any]) -> MessageContent:
    """Normalizes one WhatsApp message object by its `type`."""
    msg_type = message.get("type")

    if msg_type == "text":
        return MessageContent(type="text", text=(message.get("text") or {}).get("body", "").strip(), raw=message)

    if msg_type == "interactive":
        interactive = message.get("interactive") or {}
        kind = interactive.get("type")
        if kind in ("button_reply", "list_reply"):
            reply = interactive.get(kind) or {}
            return MessageContent(
                type="interactive_button" if kind == "button_reply" else "interactive_list",
                text=reply.get("title") or reply.get("id") or "",
                id=reply.get("id"),
                title=reply.get("title"),
                raw=message,
            )
        if kind in ("nfm_reply", "flow_reply"):
            reply = interactive.get(kind) or {}
            response = reply.get("response_json") or reply.get("body") or {}
            if not isinstance(response, str):
                response = json.dumps(response)
            return MessageContent(type="interactive_flow", text=response, raw=message)

    if msg_type == "location":
        return MessageContent(type="location", text="location_shared", location=message.get("location") or {}, raw=message)

    if msg_type in MEDIA_TYPES:
        media = message.get(msg_type) or {}
        return MessageContent(
            type=msg_type, text=f"{msg_type}_received", media_id=media.get("id"), caption=media.get("caption"), raw=message
        )

    return MessageContent(type=msg_type or "unknown", text="", raw=message)


def build_whatsapp_event(payload: Dict[str, Any]) -> Optional[InboundEvent]:
    """
    First message of the first change of the first entry, as an InboundEvent.
    Status callbacks and empty deliveries return None.
    """
    try:
        value = payload["entry"][0]["changes"][0]["value"]
        message = value["messages"][0]
    except (KeyError, IndexError, TypeError):
        return None

    contacts = value.get("contacts") or [{}]
    contact_name = (contacts[0].get("profile") or {}).get("name")
    return InboundEvent(
        source_kind=SourceKind.WHATSAPP,
        end_user_address=message.get("from"),
        contact_name=contact_name,
        message=extract_message_content(message),
        payload=payload,
        raw_body=payload,
    )


def build_simulated_event(payload: Dict[str, Any]) -> InboundEvent:
    text = str(payload.get("text") or "").strip()
    return InboundEvent(
        source_kind=SourceKind.SIMULATOR,
        end_user_address=str(payload.get("from") or ""),
        contact_name=payload.get("name"),
        message=MessageContent(type="text", text=text),
        payload=payload,
        raw_body=payload,
    )


# ==================== Body parsing ====================

async def parse_body(request: Request) -> Any:
    """
    Decodes the request body by content type. JSON and form bodies become
    mappings, anything else stays text. Parse failures give None.
    """
    if request.method in ("GET", "HEAD"):
        return None
    content_type = request.headers.get("content-type", "").lower()
    try:
        if "application/json" in content_type:
            raw = await request.body()
            return json.loads(raw) if raw else None
        if "application/x-www-form-urlencoded" in content_type or "multipart/form-data" in content_type:
            form = await request.form()
            return {
                key: (value.filename if isinstance(value, UploadFile) else value)
                for key, value in form.multi_items()
            }
        raw = await request.body()
        return raw.decode("utf-8") if raw else None
    except (ValueError, UnicodeDecodeError) as e:
        log.warning("webhook_body_unparseable", content_type=content_type, error=str(e))
        return None


# ==================== Routing ====================

def _warn_ambiguous(kind: str, key: str, candidates: List[str]) -> None:
    webhook_routing_ambiguous_counter.labels(kind=kind).inc()
    log.warning("webhook_routing_ambiguous", kind=kind, key=key, candidates=candidates)


async def resolve_flow_webhook(store: FlowStore, flow_identifier: str, node_id: str, path: str) -> Tuple[Flow, FlowNode]:
    """
    Resolves `/custom/{flow_identifier}/{node_id}`. The identifier is tried
    as a primary id first, then as a name slug.

    Raises:
        LookupFailure: No such flow, or the node is missing / not a webhook node.
    """
    flow = await store.get_flow(flow_identifier)
    if flow is None:
        by_slug = [f for f in await store.list_flows() if f.slug == flow_identifier]
        if len(by_slug) > 1:
            _warn_ambiguous("slug", flow_identifier, [f.id for f in by_slug])
        flow = by_slug[0] if by_slug else None
    if flow is None:
        raise LookupFailure(
            f"Flow '{flow_identifier}' not found",
            {"received_path": path, "flow_identifier": flow_identifier, "node_id": node_id},
        )

    node = flow.get_node(node_id)
    if node is None or not node.is_webhook:
        raise LookupFailure(
            f"Webhook node '{node_id}' not found in flow '{flow.name or flow.id}'",
            {
                "received_path": path,
                "flow_identifier": flow_identifier,
                "flow_id": flow.id,
                "node_id": node_id,
                "available_nodes": [n.id for n in flow.webhook_nodes()],
            },
        )
    return flow, node


def find_webhook_nodes(flows: Iterable[Flow], webhook_id: str) -> List[Tuple[Flow, FlowNode]]:
    return [
        (flow, node)
        for flow in flows
        for node in flow.webhook_nodes()
        if node.config.get("webhook_id") == webhook_id
    ]


async def resolve_global_webhook(store: FlowStore, webhook_id: str, path: str) -> Tuple[Flow, FlowNode]:
    """Scans every active flow for a webhook node with this `webhook_id`. First match wins."""
    matches = find_webhook_nodes(await store.list_active_flows(), webhook_id)
    if not matches:
        raise LookupFailure(f"No active webhook with id '{webhook_id}'", {"received_path": path, "webhook_id": webhook_id})
    if len(matches) > 1:
        _warn_ambiguous("webhook_id", webhook_id, [f"{flow.id}/{node.id}" for flow, node in matches])
    return matches[0]


def check_access(node: FlowNode, method: str, authorization: Optional[str], default_methods: Iterable[str]) -> None:
    """
    Post-resolution checks, in order: inactive, method allow-list, secret.

    Raises:
        WebhookInactive, MethodNotAllowed, AuthFailure
    """
    config = node.config
    if str(config.get("status", "")).lower() == "inactive":
        raise WebhookInactive(f"Webhook node '{node.id}' is inactive")

    allowed = [m.upper() for m in (config.get("allowed_methods") or default_methods)]
    if method.upper() not in allowed:
        raise MethodNotAllowed(f"Method {method} not allowed", {"allowed_methods": allowed})

    if config.get("require_secret"):
        expected = config.get("secret_token") or ""
        scheme, _, token = (authorization or "").partition(" ")
        if not expected or scheme.lower() != "bearer" or token != expected:
            raise AuthFailure("Missing or invalid webhook secret")
