# /flowbot/workflows/registry.py

from typing import Dict

from flowbot.utils.errors import FlowDefinitionError
from flowbot.workflows import action_nodes, message_nodes
from flowbot.workflows.definitions import NodeHandler, NodeType

NODE_HANDLERS: Dict[NodeType, NodeHandler] = {
    NodeType.ON_MESSAGE: action_nodes.passthrough,
    NodeType.TRIGGER: action_nodes.passthrough,
    NodeType.SEND_MESSAGE: message_nodes.send_message,
    NodeType.SEND_TEMPLATE: message_nodes.send_template,
    NodeType.SEND_BUTTON: message_nodes.send_button,
    NodeType.SEND_LIST: message_nodes.send_list,
    NodeType.SEND_MEDIA: message_nodes.send_media,
    NodeType.SEND_CTA: message_nodes.send_cta,
    NodeType.CTA_URL: message_nodes.send_cta,
    NodeType.SEND_PRODUCT: message_nodes.send_product,
    NodeType.SEND_LOCATION: message_nodes.send_location,
    NodeType.REQUEST_LOCATION: message_nodes.request_location,
    NodeType.SEND_FLOW: message_nodes.send_flow,
    NodeType.ASK_QUESTION: message_nodes.ask_question,
    NodeType.WAIT_FOR_REPLY: message_nodes.ask_question,
    NodeType.DELAY: action_nodes.delay,
    NodeType.CONDITION: action_nodes.condition,
    NodeType.AI_AGENT: action_nodes.ai_agent,
    NodeType.HTTP: action_nodes.http_request,
    NodeType.GOOGLE_SHEETS: action_nodes.google_sheets,
    NodeType.UPDATE_COLUMNS: action_nodes.google_sheets,
    NodeType.STOP_CHATBOT: action_nodes.stop_chatbot,
    NodeType.WEBHOOK: action_nodes.webhook_entry,
    NodeType.CATCH_WEBHOOK: action_nodes.webhook_entry,
}

_unhandled = [member.value for member in NodeType if member not in NODE_HANDLERS]
if _unhandled:
    raise RuntimeError(f"Node types without a handler: {', '.join(_unhandled)}")


def resolve_handler(node_type: str) -> NodeHandler:
    """Handler for a stored node type tag. Unknown tags are a flow definition error."""
    try:
        return NODE_HANDLERS[NodeType(node_type)]
    except ValueError:
        raise FlowDefinitionError(f"Unknown node type '{node_type}'", {"node_type": node_type})
