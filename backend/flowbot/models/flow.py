# /flowbot/models/flow.py

import re
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from flowbot.utils.errors import FlowDefinitionError

TRIGGER_NODE_TYPES = ("on_message", "trigger")
WEBHOOK_NODE_TYPES = ("webhook", "catch_webhook")
NEXT_EDGE = "next"


class FlowStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    ARCHIVED = "archived"


def slugify(name: str) -> str:
    """URL-safe flow name: lowercase, runs of non-alphanumerics become '-'."""
    return re.sub(r"[^a-z0-9]+", "-", (name or "").lower())


class FlowNode(BaseModel):
    """A single step of a flow graph."""
    id: str
    type: str
    config: Dict[str, Any] = Field(default_factory=dict)
    edges: Dict[str, str] = Field(default_factory=dict, description="Edge name -> target node id; 'next' is the default edge")

    @property
    def next_node_id(self) -> Optional[str]:
        return self.edges.get(NEXT_EDGE)

    def edge(self, name: str) -> Optional[str]:
        return self.edges.get(name)

    @property
    def is_webhook(self) -> bool:
        return self.type in WEBHOOK_NODE_TYPES


class Flow(BaseModel):
    """Operator-authored flow definition, immutable for the duration of a run."""
    id: str
    owner_id: Optional[str] = None
    name: str = ""
    status: FlowStatus = FlowStatus.DRAFT
    trigger_keywords: List[str] = Field(default_factory=list)
    nodes: Dict[str, FlowNode] = Field(default_factory=dict)
    start_node: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def slug(self) -> str:
        return slugify(self.name)

    @property
    def is_active(self) -> bool:
        return self.status == FlowStatus.ACTIVE

    def get_node(self, node_id: Optional[str]) -> Optional[FlowNode]:
        if not node_id:
            return None
        return self.nodes.get(node_id)

    def webhook_nodes(self) -> List[FlowNode]:
        return [node for node in self.nodes.values() if node.is_webhook]

    def entry_node_id(self) -> Optional[str]:
        """
        First node a chat-started session executes. Trigger nodes only
        anchor the graph, so they are skipped along their 'next' edge.
        """
        node_id = self.start_node
        seen = set()
        while node_id and node_id not in seen:
            node = self.nodes.get(node_id)
            if node is None or node.type not in TRIGGER_NODE_TYPES:
                return node_id
            seen.add(node_id)
            node_id = node.next_node_id
        return None

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "Flow":
        """
        Builds a Flow from a stored document. The graph lives in `config`
        and may use either the keyed form or the canvas (nodes + edges) form.
        Raises FlowDefinitionError when the graph is inconsistent.
        """
        config = doc.get("config") or {}
        nodes, start_node = parse_flow_graph(config)
        keywords = doc.get("trigger_keywords")
        if keywords is None:
            keywords = config.get("trigger_keywords", config.get("triggerKeywords", []))
        if isinstance(keywords, str):
            keywords = [k for k in keywords.split(",")]

        return cls(
            id=str(doc.get("id") or doc.get("_id")),
            owner_id=doc.get("owner_id") or doc.get("user_id"),
            name=doc.get("name", ""),
            status=doc.get("status", FlowStatus.DRAFT),
            trigger_keywords=[k for k in keywords if isinstance(k, str)],
            nodes=nodes,
            start_node=start_node,
            created_at=doc.get("created_at"),
            updated_at=doc.get("updated_at"),
        )


# ==================== Graph parsing ====================

def _option_edges(config: Dict[str, Any]) -> Dict[str, str]:
    """Named edges carried by reply buttons and list rows (`nextNodeId`)."""
    edges: Dict[str, str] = {}
    for idx, button in enumerate(config.get("buttons") or []):
        if isinstance(button, dict) and button.get("nextNodeId"):
            edges[str(button.get("id") or f"btn_{idx}")] = button["nextNodeId"]

    rows = list(config.get("rows") or [])
    for section in config.get("sections") or []:
        if isinstance(section, dict):
            rows.extend(section.get("rows") or [])
    for idx, row in enumerate(rows):
        if isinstance(row, dict) and row.get("nextNodeId"):
            edges[str(row.get("id") or f"row_{idx}")] = row["nextNodeId"]
    return edges


def _parse_keyed_nodes(raw_nodes: Dict[str, Any]) -> Dict[str, FlowNode]:
    nodes: Dict[str, FlowNode] = {}
    for node_id, raw in raw_nodes.items():
        if not isinstance(raw, dict):
            raise FlowDefinitionError(f"Node '{node_id}' is not an object")
        node_config = raw.get("config") or {}
        edges = _option_edges(node_config)
        edges.update({k: v for k, v in (raw.get("edges") or {}).items() if v})

        nxt = raw.get("next")
        if isinstance(nxt, dict):
            for name, target in nxt.items():
                if target:
                    edges[NEXT_EDGE if name == "default" else name] = target
        elif nxt:
            edges[NEXT_EDGE] = nxt

        nodes[node_id] = FlowNode(id=node_id, type=raw.get("type", ""), config=node_config, edges=edges)
    return nodes


def _parse_canvas_nodes(raw_nodes: List[Any], raw_edges: List[Any]) -> Dict[str, FlowNode]:
    nodes: Dict[str, FlowNode] = {}
    for raw in raw_nodes:
        if not isinstance(raw, dict) or not raw.get("id"):
            raise FlowDefinitionError("Canvas node without an id")
        data = raw.get("data") or {}
        node_config = raw.get("config") or data.get("config") or {}
        node_type = raw.get("type") or data.get("type") or ""
        nodes[raw["id"]] = FlowNode(id=raw["id"], type=node_type, config=node_config, edges=_option_edges(node_config))

    for edge in raw_edges:
        source, target = edge.get("source"), edge.get("target")
        if source not in nodes:
            raise FlowDefinitionError(f"Edge from unknown node '{source}'", {"edge": edge})
        handle = edge.get("sourceHandle") or NEXT_EDGE
        # First edge per handle wins
        nodes[source].edges.setdefault(handle, target)
    return nodes


def parse_flow_graph(config: Dict[str, Any]) -> Tuple[Dict[str, FlowNode], Optional[str]]:
    raw_nodes = config.get("nodes") or {}
    if isinstance(raw_nodes, dict):
        nodes = _parse_keyed_nodes(raw_nodes)
    elif isinstance(raw_nodes, list):
        nodes = _parse_canvas_nodes(raw_nodes, config.get("edges") or [])
    else:
        raise FlowDefinitionError("Flow config 'nodes' must be an object or a list")

    for node in nodes.values():
        for name, target in node.edges.items():
            if target not in nodes:
                raise FlowDefinitionError(
                    f"Node '{node.id}' edge '{name}' points at unknown node '{target}'",
                    {"node_id": node.id, "edge": name, "target": target},
                )

    start_node = config.get("start_node") or config.get("startNode")
    if start_node and start_node not in nodes:
        raise FlowDefinitionError(f"Start node '{start_node}' does not exist")
    if not start_node:
        trigger = next((n.id for n in nodes.values() if n.type in TRIGGER_NODE_TYPES), None)
        start_node = trigger or next(iter(nodes), None)
    return nodes, start_node
