# file: branchtree/core/context/path_resolver.py
"""
Path and branch queries over a flat collection of nodes.

These functions work on any iterable of Node objects (for example a list
rebuilt from storage) and do not need a live ConversationTree. Children are
always re-derived from parent_id, so a stale children list on a node does
not affect the result.
"""

import logging
from typing import Dict, Iterable, List, Optional

from branchtree.core.context.conversation_tree import Node
from branchtree.core.exceptions import CorruptStateError, NodeNotFoundError

logger = logging.getLogger(__name__)


def _index(nodes: Iterable[Node]) -> Dict[str, Node]:
    index: Dict[str, Node] = {}
    for node in nodes:
        if node.id in index:
            raise CorruptStateError(f"Duplicate node id: {node.id}")
        index[node.id] = node
    return index


def _children_map(index: Dict[str, Node]) -> Dict[str, List[str]]:
    """Child ids per node, ordered like the parent's children list, then by input order."""
    derived: Dict[str, List[str]] = {node_id: [] for node_id in index}
    for node in index.values():
        if node.parent_id is not None and node.parent_id in derived:
            derived[node.parent_id].append(node.id)

    ordered: Dict[str, List[str]] = {}
    for node_id, child_ids in derived.items():
        hint = {child_id: pos for pos, child_id in enumerate(index[node_id].children)}
        ordered[node_id] = sorted(child_ids, key=lambda c: hint.get(c, len(hint)))
    return ordered


def _find_root(index: Dict[str, Node]) -> Node:
    roots = [node for node in index.values() if node.parent_id is None]
    if len(roots) != 1:
        raise CorruptStateError(f"Expected exactly one root, found {len(roots)}")
    return roots[0]


def _path_to(index: Dict[str, Node], node_id: str) -> List[Node]:
    node = index.get(node_id)
    if node is None:
        raise NodeNotFoundError(node_id)
    path: List[Node] = []
    seen = set()
    while node is not None:
        if node.id in seen:
            raise CorruptStateError(f"Cycle detected while walking up from node {node_id}")
        seen.add(node.id)
        path.append(node)
        if node.parent_id is None:
            break
        parent = index.get(node.parent_id)
        if parent is None:
            raise CorruptStateError(f"Node {node.id} references missing parent {node.parent_id}")
        node = parent
    return path[::-1]


def compute_active_path(nodes: Iterable[Node], leaf_id: Optional[str] = None) -> List[Node]:
    """
    Root-to-leaf path ending at leaf_id.

    Without leaf_id the most recently created node is used. Equal timestamps
    are broken by position in the supplied collection: the later one wins.
    """
    index = _index(nodes)
    if not index:
        return []
    if leaf_id is None:
        ordered = list(index.values())
        latest = ordered[0]
        for node in ordered[1:]:
            if node.timestamp >= latest.timestamp:
                latest = node
        leaf_id = latest.id
    return _path_to(index, leaf_id)


def find_main_path(nodes: Iterable[Node]) -> List[Node]:
    """
    The deepest root-to-leaf path.

    Computed iteratively: subtree heights are filled bottom-up from a
    post-order walk, then the path descends along the tallest child. Among
    equally tall children the earliest-created one (first in order) wins.
    """
    index = _index(nodes)
    if not index:
        return []
    root = _find_root(index)
    children = _children_map(index)

    height: Dict[str, int] = {}
    stack = [(root.id, False)]
    visited = set()
    while stack:
        node_id, expanded = stack.pop()
        if expanded:
            height[node_id] = 1 + max((height[c] for c in children[node_id]), default=0)
            continue
        if node_id in visited:
            raise CorruptStateError(f"Node {node_id} reached twice while walking the tree")
        visited.add(node_id)
        stack.append((node_id, True))
        for child_id in reversed(children[node_id]):
            stack.append((child_id, False))

    path = [root]
    current = root.id
    while children[current]:
        best = children[current][0]
        for child_id in children[current][1:]:
            if height[child_id] > height[best]:
                best = child_id
        path.append(index[best])
        current = best
    return path


def branches_at(nodes: Iterable[Node], node_id: str) -> List[Node]:
    """Children of node_id as candidate continuations, in creation order."""
    index = _index(nodes)
    if node_id not in index:
        raise NodeNotFoundError(node_id)
    return [index[c] for c in _children_map(index)[node_id]]


def is_branch_point(nodes: Iterable[Node], node_id: str) -> bool:
    return len(branches_at(nodes, node_id)) > 1


def branch_points(nodes: Iterable[Node]) -> Dict[str, int]:
    """Maps every branch point id to its number of branches."""
    index = _index(nodes)
    return {
        node_id: len(child_ids)
        for node_id, child_ids in _children_map(index).items()
        if len(child_ids) > 1
    }


def collapse_to_checkpoints(nodes: Iterable[Node]) -> List[Node]:
    """
    Reduced, display-only view of the tree.

    Keeps the root, flagged nodes and leaves. Each kept node is a copy whose
    parent is its nearest kept ancestor, so every reduced parent is a proper
    ancestor in the original tree. The result is lossy and must not be
    saved as the conversation.
    """
    index = _index(nodes)
    if not index:
        return []
    root = _find_root(index)
    children = _children_map(index)

    kept_ids = [
        node_id for node_id, node in index.items()
        if node_id == root.id or node.is_flagged or not children[node_id]
    ]
    kept = set(kept_ids)

    view: Dict[str, Node] = {}
    for node_id in kept_ids:
        clone = index[node_id].copy()
        clone.children = []
        ancestor_id = index[node_id].parent_id
        steps = 0
        while ancestor_id is not None and ancestor_id not in kept:
            steps += 1
            if steps > len(index):
                raise CorruptStateError(f"Cycle detected above node {node_id}")
            parent = index.get(ancestor_id)
            if parent is None:
                raise CorruptStateError(f"Node {node_id} has a missing ancestor {ancestor_id}")
            ancestor_id = parent.parent_id
        clone.parent_id = ancestor_id
        view[node_id] = clone

    for node_id in kept_ids:
        parent_id = view[node_id].parent_id
        if parent_id is not None:
            view[parent_id].children.append(node_id)

    logger.debug(f"Collapsed {len(index)} nodes to {len(view)} checkpoints")
    return list(view.values())
