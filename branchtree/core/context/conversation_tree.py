# file: branchtree/core/context/conversation_tree.py

import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import List, Dict, Optional, Any, Iterator, Union

from branchtree.core.exceptions import NodeNotFoundError, CorruptStateError

# JSON-like values allowed in node metadata
MetadataValue = Union[str, int, float, bool, None, List[Any], Dict[str, Any]]
Metadata = Dict[str, MetadataValue]

ROOT_CONTENT = "Start a new conversation"


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"

    @classmethod
    def parse(cls, value: Union[str, "Role"]) -> "Role":
        """Accepts enum members, lowercase values and the USER/AI wire aliases."""
        if isinstance(value, Role):
            return value
        aliases = {"ai": cls.ASSISTANT, "model": cls.ASSISTANT}
        key = str(value).lower()
        if key in aliases:
            return aliases[key]
        return cls(key)


def validate_metadata(metadata: Optional[Dict[str, Any]]) -> Metadata:
    """Returns a copy of the metadata map, rejecting non-JSON-like content."""
    if metadata is None:
        return {}
    if not isinstance(metadata, dict):
        raise ValueError(f"Metadata must be a dict, got {type(metadata).__name__}")

    def check(value: Any, where: str):
        if value is None or isinstance(value, (str, int, float, bool)):
            return
        if isinstance(value, list):
            for i, item in enumerate(value):
                check(item, f"{where}[{i}]")
            return
        if isinstance(value, dict):
            for k, v in value.items():
                if not isinstance(k, str):
                    raise ValueError(f"Metadata key at {where} must be a string: {k!r}")
                check(v, f"{where}.{k}")
            return
        raise ValueError(f"Unsupported metadata value at {where}: {type(value).__name__}")

    for key, value in metadata.items():
        if not isinstance(key, str):
            raise ValueError(f"Metadata keys must be strings: {key!r}")
        check(value, key)
    return dict(metadata)


class Node:
    """A node in the conversation tree: one message turn."""
    def __init__(
        self,
        content: str,
        role: Union[str, Role],
        parent_id: Optional[str] = None,
        node_id: Optional[str] = None,
        timestamp: Optional[datetime] = None,
        is_flagged: bool = False,
        metadata: Optional[Dict[str, Any]] = None,
    ):
        self.id: str = node_id or str(uuid.uuid4())
        self.content: str = content
        self.role: Role = Role.parse(role)
        self.parent_id: Optional[str] = parent_id
        self.children: List[str] = []
        self.timestamp: datetime = timestamp or datetime.now(timezone.utc)
        self.is_flagged: bool = is_flagged
        self.metadata: Metadata = validate_metadata(metadata)

    @property
    def is_branch_point(self) -> bool:
        return len(self.children) > 1

    def copy(self) -> "Node":
        """Detached copy with the same id; children list is duplicated."""
        clone = Node(
            self.content,
            self.role,
            parent_id=self.parent_id,
            node_id=self.id,
            timestamp=self.timestamp,
            is_flagged=self.is_flagged,
            metadata=self.metadata,
        )
        clone.children = list(self.children)
        return clone

    def to_message(self) -> Dict[str, str]:
        return {"role": self.role.value, "content": self.content}

    def __repr__(self):
        return f"Node(id={self.id}, role={self.role.value}, parent={self.parent_id})"


class ConversationTree:
    """
    Manages the conversation as a tree structure for branching.

    Nodes live in a single arena keyed by id; parent and children are id
    references into it. There is no explicit branch operation: navigating
    to an interior node and appending creates a sibling of its existing
    children.
    """

    def __init__(self, root: Optional[Node] = None):
        self.logger = logging.getLogger(self.__class__.__name__)
        if root is None:
            root = Node(ROOT_CONTENT, Role.SYSTEM)
        if root.parent_id is not None:
            raise CorruptStateError(f"Root node {root.id} must not have a parent")
        self.root_id: str = root.id
        self.current_node_id: str = root.id
        self.nodes_by_id: Dict[str, Node] = {root.id: root}
        self.logger.debug(f"ConversationTree initialized with root node {root.id}")

    @classmethod
    def from_nodes(cls, nodes: Dict[str, Node], root_id: str, current_id: str) -> "ConversationTree":
        """
        Builds a tree around an already-linked node arena, then validates it.
        Used by the serializer; raises CorruptStateError on any violation.
        """
        if root_id not in nodes:
            raise CorruptStateError(f"Root id {root_id} is not in the node set")
        tree = cls.__new__(cls)
        tree.logger = logging.getLogger(cls.__name__)
        tree.root_id = root_id
        tree.current_node_id = current_id
        tree.nodes_by_id = dict(nodes)
        tree.validate()
        return tree

    # --- Queries ---

    @property
    def root(self) -> Node:
        return self.nodes_by_id[self.root_id]

    @property
    def current_node(self) -> Node:
        return self.nodes_by_id[self.current_node_id]

    def get_node(self, node_id: str) -> Node:
        node = self.nodes_by_id.get(node_id)
        if node is None:
            raise NodeNotFoundError(node_id)
        return node

    def iter_nodes(self) -> Iterator[Node]:
        return iter(self.nodes_by_id.values())

    def __contains__(self, node_id: object) -> bool:
        return node_id in self.nodes_by_id

    def __len__(self) -> int:
        return len(self.nodes_by_id)

    # --- Mutation ---

    def append_message(self, content: str, role: Union[str, Role], metadata: Optional[Dict[str, Any]] = None) -> Node:
        """Adds a new message as a child of the current node and moves current to it."""
        return self.append_child(self.current_node_id, content, role, metadata=metadata)

    def append_child(
        self,
        parent_id: str,
        content: str,
        role: Union[str, Role],
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Node:
        """Adds a new message under an explicit parent and moves current to it."""
        parent = self.get_node(parent_id)
        new_node = Node(content, role, parent_id=parent.id, metadata=metadata)
        if new_node.id in self.nodes_by_id:
            raise CorruptStateError(f"Duplicate node id generated: {new_node.id}")
        self.nodes_by_id[new_node.id] = new_node
        parent.children.append(new_node.id)
        self.current_node_id = new_node.id
        self.logger.debug(f"Added {new_node.role.value} node {new_node.id} to parent {parent.id}")
        return new_node

    def navigate_to(self, node_id: str) -> Node:
        """
        Sets the current node to any node in the tree. The next append then
        creates a new branch if that node already has children.
        Raises NodeNotFoundError and leaves current unchanged for unknown ids.
        """
        if node_id not in self.nodes_by_id:
            self.logger.warning(f"Node ID {node_id} not found. Cannot switch context.")
            raise NodeNotFoundError(node_id)
        self.current_node_id = node_id
        self.logger.info(f"Switched context to node {node_id}")
        return self.nodes_by_id[node_id]

    def set_flag(self, node_id: str, flagged: bool = True) -> Node:
        """Marks or unmarks a node as a checkpoint."""
        return self.update_node(node_id, is_flagged=flagged)

    def update_node(
        self,
        node_id: str,
        content: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        is_flagged: Optional[bool] = None,
    ) -> Node:
        """
        Edits the mutable fields of a node. Parent and children are never
        touched. Supplied metadata replaces the previous map.
        """
        if content is None and metadata is None and is_flagged is None:
            raise ValueError("No fields to update")
        node = self.get_node(node_id)
        if metadata is not None:
            node.metadata = validate_metadata(metadata)
        if content is not None:
            node.content = content
        if is_flagged is not None:
            node.is_flagged = bool(is_flagged)
        self.logger.debug(f"Updated node {node_id}")
        return node

    # --- Paths ---

    def get_path_to(self, node_id: str) -> List[Node]:
        """
        Walks parent links from node_id back to the root.
        Returns nodes ordered root -> node_id.
        """
        node = self.get_node(node_id)
        path: List[Node] = []
        seen = set()
        while True:
            if node.id in seen or len(path) > len(self.nodes_by_id):
                raise CorruptStateError(f"Cycle detected while walking up from node {node_id}")
            seen.add(node.id)
            path.append(node)
            if node.parent_id is None:
                break
            parent = self.nodes_by_id.get(node.parent_id)
            if parent is None:
                raise CorruptStateError(
                    f"Node {node.id} references missing parent {node.parent_id}"
                )
            node = parent
        if path[-1].id != self.root_id:
            raise CorruptStateError(f"Path from {node_id} ends at {path[-1].id}, not at the root")
        return path[::-1]

    def get_current_path(self) -> List[Node]:
        return self.get_path_to(self.current_node_id)

    def get_messages_for_generation(self) -> List[Dict[str, str]]:
        """
        The current path without system nodes, as role/content pairs in
        root-to-leaf order. This is exactly what the generator receives.
        """
        return [
            node.to_message()
            for node in self.get_current_path()
            if node.role is not Role.SYSTEM
        ]

    def branches_at(self, node_id: str) -> List[Node]:
        """Children of a node as candidate continuations, in creation order."""
        node = self.get_node(node_id)
        return [self.nodes_by_id[child_id] for child_id in node.children]

    # --- Integrity ---

    def validate(self):
        """Checks every tree invariant. Raises CorruptStateError on the first violation."""
        roots = [n.id for n in self.nodes_by_id.values() if n.parent_id is None]
        if len(roots) != 1:
            raise CorruptStateError(f"Expected exactly one root, found {len(roots)}")
        if roots[0] != self.root_id:
            raise CorruptStateError(f"Root id {self.root_id} does not match parentless node {roots[0]}")
        if self.current_node_id not in self.nodes_by_id:
            raise CorruptStateError(f"Current node {self.current_node_id} is not in the tree")

        expected: Dict[str, List[str]] = {node_id: [] for node_id in self.nodes_by_id}
        for node_id, node in self.nodes_by_id.items():
            if node.id != node_id:
                raise CorruptStateError(f"Node stored under {node_id} carries id {node.id}")
            if node.parent_id is not None:
                if node.parent_id not in self.nodes_by_id:
                    raise CorruptStateError(
                        f"Node {node.id} references missing parent {node.parent_id}"
                    )
                expected[node.parent_id].append(node.id)

        for node_id, node in self.nodes_by_id.items():
            if sorted(node.children) != sorted(expected[node_id]) or len(set(node.children)) != len(node.children):
                raise CorruptStateError(f"Children of node {node_id} disagree with parent links")

        # Reachability: every node must reach the root without revisiting a node.
        reaches_root = {self.root_id}
        for node_id in self.nodes_by_id:
            chain: List[str] = []
            in_chain = set()
            current = node_id
            while current not in reaches_root:
                if current in in_chain:
                    raise CorruptStateError(f"Cycle detected involving node {current}")
                chain.append(current)
                in_chain.add(current)
                current = self.nodes_by_id[current].parent_id
                if current is None:
                    raise CorruptStateError(f"Node {node_id} is not reachable from the root")
            reaches_root.update(chain)

    def __repr__(self):
        return f"ConversationTree(nodes={len(self.nodes_by_id)}, current={self.current_node_id})"
