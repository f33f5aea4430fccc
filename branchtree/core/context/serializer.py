# file: branchtree/core/context/serializer.py
"""
Flat, order-independent representation of a conversation tree.

    {"nodes": [{id, parentId, children, type, content, timestamp,
                isFlagged, metadata}, ...],
     "rootId": str, "currentId": str}

Stored children lists are redundant with parentId. On load they are only
used to order siblings; membership always comes from parentId.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List

from branchtree.core.context.conversation_tree import ConversationTree, Node, Role
from branchtree.core.exceptions import CorruptStateError

logger = logging.getLogger(__name__)


def node_to_dict(node: Node) -> Dict[str, Any]:
    return {
        "id": node.id,
        "parentId": node.parent_id,
        "children": list(node.children),
        "type": node.role.value,
        "content": node.content,
        "timestamp": node.timestamp.isoformat(),
        "isFlagged": node.is_flagged,
        "metadata": dict(node.metadata),
    }


def to_flat(tree: ConversationTree) -> Dict[str, Any]:
    """Emits the flat representation of a live tree."""
    return {
        "nodes": [node_to_dict(node) for node in tree.iter_nodes()],
        "rootId": tree.root_id,
        "currentId": tree.current_node_id,
    }


def _parse_timestamp(value: Any, node_id: str) -> datetime:
    if not isinstance(value, str):
        raise CorruptStateError(f"Node {node_id} has a non-string timestamp")
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as e:
        raise CorruptStateError(f"Node {node_id} has an invalid timestamp {value!r}") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _node_from_dict(raw: Any, position: int) -> Node:
    if not isinstance(raw, dict):
        raise CorruptStateError(f"Node entry {position} is not an object")
    node_id = raw.get("id")
    if not isinstance(node_id, str) or not node_id:
        raise CorruptStateError(f"Node entry {position} has no valid id")
    parent_id = raw.get("parentId")
    if parent_id is not None and not isinstance(parent_id, str):
        raise CorruptStateError(f"Node {node_id} has an invalid parentId")
    content = raw.get("content")
    if not isinstance(content, str):
        raise CorruptStateError(f"Node {node_id} has no text content")
    is_flagged = raw.get("isFlagged", False)
    if not isinstance(is_flagged, bool):
        raise CorruptStateError(f"Node {node_id} has a non-boolean isFlagged")
    metadata = raw.get("metadata")
    if metadata is not None and not isinstance(metadata, dict):
        raise CorruptStateError(f"Node {node_id} has non-object metadata")

    try:
        role = Role.parse(raw.get("type", raw.get("role")))
        node = Node(
            content,
            role,
            parent_id=parent_id,
            node_id=node_id,
            timestamp=_parse_timestamp(raw.get("timestamp"), node_id),
            is_flagged=is_flagged,
            metadata=metadata,
        )
    except ValueError as e:
        raise CorruptStateError(f"Node {node_id} is invalid: {e}") from e

    stored_children = raw.get("children") or []
    if not isinstance(stored_children, list):
        raise CorruptStateError(f"Node {node_id} has a non-list children field")
    # Kept only as an ordering hint; rebuilt from parentId below
    node.children = [c for c in stored_children if isinstance(c, str)]
    return node


def from_flat(data: Dict[str, Any]) -> ConversationTree:
    """
    Rebuilds and validates a tree. Any invariant violation raises
    CorruptStateError; no partially built tree is ever returned.
    """
    if not isinstance(data, dict):
        raise CorruptStateError("Flat representation must be an object")
    raw_nodes = data.get("nodes")
    root_id = data.get("rootId")
    current_id = data.get("currentId")
    if not isinstance(raw_nodes, list) or not raw_nodes:
        raise CorruptStateError("Flat representation has no nodes")
    if not isinstance(root_id, str) or not isinstance(current_id, str):
        raise CorruptStateError("Flat representation is missing rootId or currentId")

    nodes: Dict[str, Node] = {}
    input_order: Dict[str, int] = {}
    for position, raw in enumerate(raw_nodes):
        node = _node_from_dict(raw, position)
        if node.id in nodes:
            raise CorruptStateError(f"Duplicate node id: {node.id}")
        nodes[node.id] = node
        input_order[node.id] = position

    roots = [node_id for node_id, node in nodes.items() if node.parent_id is None]
    if len(roots) != 1:
        raise CorruptStateError(f"Expected exactly one root, found {len(roots)}")
    if roots[0] != root_id:
        raise CorruptStateError(f"rootId {root_id} does not match the parentless node {roots[0]}")

    derived: Dict[str, List[str]] = {node_id: [] for node_id in nodes}
    for node in nodes.values():
        if node.parent_id is None:
            continue
        if node.parent_id not in nodes:
            raise CorruptStateError(f"Node {node.id} references missing parent {node.parent_id}")
        derived[node.parent_id].append(node.id)

    for node_id, node in nodes.items():
        hint = {c: pos for pos, c in enumerate(node.children)}
        ignored = [c for c in node.children if c not in derived[node_id]]
        if ignored:
            logger.warning(f"Ignoring stale children of node {node_id}: {ignored}")
        node.children = sorted(
            derived[node_id],
            key=lambda c: (
                hint.get(c, len(hint)),
                nodes[c].timestamp,
                input_order[c],
            ),
        )

    if current_id not in nodes:
        raise CorruptStateError(f"currentId {current_id} is not in the node set")

    tree = ConversationTree.from_nodes(nodes, root_id, current_id)
    logger.debug(f"Loaded tree with {len(nodes)} nodes (root {root_id})")
    return tree


def to_links(nodes: Iterable[Node]) -> List[Dict[str, str]]:
    """Edge list for graph views. Derived on demand, never stored."""
    return [
        {"source": node.parent_id, "target": node.id}
        for node in nodes
        if node.parent_id is not None
    ]


def dumps(tree: ConversationTree, **extra: Any) -> str:
    """Serializes a tree to JSON. Extra top-level keys (e.g. title) are included."""
    payload = to_flat(tree)
    payload.update(extra)
    return json.dumps(payload, indent=2, ensure_ascii=False)


def loads(text: str) -> ConversationTree:
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise CorruptStateError(f"Conversation data is not valid JSON: {e}") from e
    return from_flat(data)
