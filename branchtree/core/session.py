# file: branchtree/core/session.py

import asyncio
import logging
import uuid
from typing import Any, Dict, List, Optional, Tuple, Union

from branchtree.core.api_manager import Completion
from branchtree.core.context.context_pruner import ContextPruner
from branchtree.core.context.conversation_tree import ConversationTree, Node, Role
from branchtree.core.context import path_resolver, serializer
from branchtree.core.context.labeler import label_for
from branchtree.core.event_dispatcher import EventDispatcher
from branchtree.core.exceptions import (
    APITimeoutError,
    EmptyResponseError,
    GenerationError,
    InvalidNodeError,
    NodeNotFoundError,
    PersistenceError,
)
from branchtree.core.tree_store import TreeStore
from branchtree.utils.config_loader import ConfigLoader


class ConversationSession:
    """
    One open conversation: a ConversationTree plus its collaborators.

    The in-memory tree is authoritative. Every mutation is applied locally
    first and then saved; a failed save never rolls the tree back, and the
    next successful save writes the full tree again (last writer wins, no
    reload after save). All calls on one session are expected to come from
    one logical user session, one at a time.
    """

    def __init__(self, locator, conversation_id: Optional[str] = None, tree: Optional[ConversationTree] = None, title: Optional[str] = None):
        self.locator = locator
        self.logger = logging.getLogger(self.__class__.__name__)

        self.config: ConfigLoader = self.locator.resolve("config_loader")
        self.events: EventDispatcher = self.locator.resolve("event_dispatcher")
        self.store: TreeStore = self.locator.resolve("tree_store")
        self.generator = self.locator.resolve("api_manager")

        self.conversation_id: str = conversation_id or uuid.uuid4().hex
        self.tree: ConversationTree = tree or ConversationTree()
        self.title: Optional[str] = title
        # True while local changes have not been confirmed by the store
        self.dirty: bool = tree is None

        self.pruner = ContextPruner({})
        self._load_config()

    def _load_config(self):
        context_config = self.config.get_config("context_config.json")
        self.pruner.update_config(context_config)
        self.generation_timeout = context_config.get("generation_timeout_sec", 180)
        self.auto_title = context_config.get("auto_title", True)

    # --- Loading / saving ---

    @classmethod
    async def load(cls, locator, conversation_id: str) -> "ConversationSession":
        """
        Opens a stored conversation. Raises ConversationNotFoundError,
        CorruptStateError or PersistenceError; never returns a partial tree.
        """
        store: TreeStore = locator.resolve("tree_store")
        flat = await store.load_tree(conversation_id)
        tree = serializer.from_flat(flat)
        session = cls(locator, conversation_id, tree=tree, title=flat.get("title"))
        session.logger.info(f"Loaded conversation {conversation_id} ({len(tree)} nodes)")
        return session

    def to_flat(self) -> Dict[str, Any]:
        flat = serializer.to_flat(self.tree)
        if self.title:
            flat["title"] = self.title
        return flat

    async def save(self):
        """
        Writes the whole tree. Raises PersistenceError on failure; the
        in-memory tree stays valid and usable either way.
        """
        try:
            await self.store.save_tree(self.conversation_id, self.to_flat())
        except PersistenceError as e:
            self.dirty = True
            self.logger.error(f"Saving conversation {self.conversation_id} failed: {e}")
            await self.events.publish(
                "STORAGE_EVENT.SAVE_FAILED",
                conversation_id=self.conversation_id,
                error=str(e),
            )
            raise
        self.dirty = False

    async def _save_best_effort(self) -> bool:
        """Saves, but keeps going on failure. The change is still visible locally."""
        try:
            await self.save()
            return True
        except PersistenceError:
            self.logger.warning("Continuing with unsaved local changes.")
            return False

    # --- Presentation-facing queries ---

    def current_path(self) -> List[Node]:
        return self.tree.get_current_path()

    def branches_at(self, node_id: str) -> List[Node]:
        return self.tree.branches_at(node_id)

    def links(self) -> List[Dict[str, str]]:
        return serializer.to_links(self.tree.iter_nodes())

    def main_path(self) -> List[Node]:
        return path_resolver.find_main_path(self.tree.iter_nodes())

    def checkpoint_view(self) -> List[Node]:
        """Root, flagged and leaf nodes only. Display-only; never saved."""
        return path_resolver.collapse_to_checkpoints(self.tree.iter_nodes())

    def labels(self) -> Dict[str, str]:
        return {node.id: label_for(node.content) for node in self.tree.iter_nodes()}

    def generation_context(self) -> List[Dict[str, str]]:
        return self.pruner.prune(self.tree.get_messages_for_generation())

    # --- Mutations ---

    async def navigate_to(self, node_id: str) -> bool:
        """
        Moves the current pointer and saves it (best effort). Unknown ids
        leave the view unchanged and return False.
        """
        try:
            self.tree.navigate_to(node_id)
        except NodeNotFoundError:
            await self.events.publish(
                "TREE_EVENT.NAVIGATION_FAILED",
                conversation_id=self.conversation_id,
                node_id=node_id,
            )
            return False
        self.dirty = True
        await self.events.publish(
            "TREE_EVENT.BRANCH_CHANGED",
            conversation_id=self.conversation_id,
            current_node_id=node_id,
        )
        await self._save_best_effort()
        return True

    async def append_message(self, content: str, role: Union[str, Role] = Role.USER, metadata: Optional[Dict[str, Any]] = None) -> Node:
        """Appends under the current node and saves (best effort)."""
        node = self.tree.append_message(content, role, metadata=metadata)
        await self._announce_append(node)
        await self._save_best_effort()
        return node

    async def update_node(self, node_id: str, content: Optional[str] = None, metadata: Optional[Dict[str, Any]] = None, is_flagged: Optional[bool] = None) -> Node:
        """Edits content, metadata or the checkpoint flag and saves."""
        node = self.tree.update_node(node_id, content=content, metadata=metadata, is_flagged=is_flagged)
        await self.events.publish(
            "TREE_EVENT.NODE_UPDATED",
            conversation_id=self.conversation_id,
            node_id=node_id,
        )
        await self.save()
        return node

    async def set_flag(self, node_id: str, flagged: bool = True) -> Node:
        return await self.update_node(node_id, is_flagged=flagged)

    async def send_message(self, content: str) -> Node:
        """
        Appends a user message, asks the generator for a reply and attaches
        it to that exact user node. Returns the assistant node.

        The user node is saved (or at least locally visible) before the
        generator is called. If generation fails the user node stays and no
        assistant node is created; the GenerationError is re-raised and the
        caller may use retry_generation(). An untitled conversation is named
        once its first reply is attached.
        """
        self.logger.info(f"Processing message: '{content[:50]}...'")
        user_node = self.tree.append_message(content, Role.USER)
        await self._announce_append(user_node)
        await self._save_best_effort()

        return await self._reply_to(user_node)

    async def retry_generation(self, node_id: Optional[str] = None) -> Node:
        """
        Generates another reply for an existing user message, as a new
        sibling branch. Defaults to the current node; an assistant node
        selects its user parent. No user node is ever created here.
        """
        node = self.tree.get_node(node_id or self.tree.current_node_id)
        if node.role is Role.ASSISTANT and node.parent_id is not None:
            node = self.tree.get_node(node.parent_id)
        if node.role is not Role.USER:
            raise InvalidNodeError(f"Node {node.id} is not a user message; nothing to regenerate")
        self.tree.navigate_to(node.id)
        return await self._reply_to(node)

    async def _reply_to(self, user_node: Node) -> Node:
        # Context is the path ending at the user node, whatever current is
        messages = [
            n.to_message()
            for n in self.tree.get_path_to(user_node.id)
            if n.role is not Role.SYSTEM
        ]
        messages = self.pruner.prune(messages)

        try:
            result = await asyncio.wait_for(
                asyncio.to_thread(self.generator.generate, messages),
                timeout=self.generation_timeout,
            )
            reply, metadata = self._unpack(result)
        except asyncio.TimeoutError as e:
            timeout_error = APITimeoutError(f"Generation timed out after {self.generation_timeout}s")
            await self._generation_failed(user_node, timeout_error)
            raise timeout_error from e
        except GenerationError as e:
            await self._generation_failed(user_node, e)
            raise
        except Exception as e:
            wrapped = GenerationError(f"Generator failed: {type(e).__name__}: {e}")
            await self._generation_failed(user_node, wrapped)
            raise wrapped from e

        assistant_node = self.tree.append_child(user_node.id, reply, Role.ASSISTANT, metadata=metadata)
        await self._announce_append(assistant_node)
        self.logger.info(f"Assistant reply attached ({len(reply)} chars) under {user_node.id}")

        if self.auto_title and not self.title:
            await self._set_title(user_node.content)
        await self.save()
        return assistant_node

    @staticmethod
    def _unpack(result: Union[str, Completion]) -> Tuple[str, Dict[str, Any]]:
        if isinstance(result, Completion):
            content, metadata = result.content, result.to_metadata()
        else:
            content, metadata = result, {}
        if not isinstance(content, str) or not content.strip():
            raise EmptyResponseError("Generator returned no content")
        return content, metadata

    async def _generation_failed(self, user_node: Node, error: GenerationError):
        self.logger.error(f"Generation failed for node {user_node.id}: {error}")
        await self.events.publish(
            "GENERATION_EVENT.FAILED",
            conversation_id=self.conversation_id,
            node_id=user_node.id,
            error=str(error),
        )

    async def _announce_append(self, node: Node):
        self.dirty = True
        await self.events.publish(
            "TREE_EVENT.NODE_APPENDED",
            conversation_id=self.conversation_id,
            node_id=node.id,
            parent_id=node.parent_id,
            branches=len(self.tree.get_node(node.parent_id).children) if node.parent_id else 0,
        )

    async def _set_title(self, prompt: str):
        """Names the conversation after its first exchange. Never raises."""
        fallback = " ".join(prompt.split()[:5]) or "New Chat"
        generate_title = getattr(self.generator, "generate_title", None)
        if generate_title is None:
            self.title = fallback
            return
        try:
            title = await asyncio.wait_for(
                asyncio.to_thread(generate_title, prompt),
                timeout=self.generation_timeout,
            )
        except asyncio.TimeoutError:
            self.logger.warning("Title generation timed out; using prompt words.")
            title = fallback
        except Exception as e:
            self.logger.warning(f"Title generation failed, using prompt words instead: {e}")
            title = fallback
        self.title = title if isinstance(title, str) and title.strip() else fallback
