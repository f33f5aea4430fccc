# file: branchtree/__init__.py
"""Branching conversation trees: fork any earlier message without losing the other branches."""

from branchtree.core.context.conversation_tree import ConversationTree, Node, Role
from branchtree.core.session import ConversationSession

__all__ = ["ConversationTree", "Node", "Role", "ConversationSession"]
