# file: branchtree/core/tree_store.py
"""
Persistence collaborators for conversation trees.

Stores exchange the flat representation produced by the serializer and
never see live tree objects. There is no optimistic concurrency: the last
save of a conversation wins.
"""

import abc
import asyncio
import copy
import json
import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Protocol

import aiofiles
import aiofiles.os

from branchtree.core.exceptions import (
    ConfigurationError,
    ConversationNotFoundError,
    CorruptStateError,
    PersistenceError,
)

logger = logging.getLogger(__name__)

_SAFE_ID = re.compile(r"^[A-Za-z0-9_.-]+$")


class TreeStore(abc.ABC):
    """
    Abstract base class for conversation storage.
    """

    @abc.abstractmethod
    async def load_tree(self, conversation_id: str) -> Dict[str, Any]:
        """
        Returns the stored flat representation.

        Raises:
            ConversationNotFoundError: nothing is stored under the id.
            CorruptStateError: the stored data cannot be decoded.
            PersistenceError: the storage could not be read.
        """
        pass

    @abc.abstractmethod
    async def save_tree(self, conversation_id: str, flat: Dict[str, Any]):
        """Stores the flat representation, replacing any previous version."""
        pass

    @abc.abstractmethod
    async def delete_tree(self, conversation_id: str):
        """Removes a whole conversation. Unknown ids raise ConversationNotFoundError."""
        pass

    @abc.abstractmethod
    async def list_trees(self) -> List[str]:
        """Ids of all stored conversations, sorted."""
        pass


class InMemoryTreeStore(TreeStore):
    """Keeps deep copies in a dict. Useful for tests and throwaway sessions."""

    def __init__(self):
        self._trees: Dict[str, Dict[str, Any]] = {}

    async def load_tree(self, conversation_id: str) -> Dict[str, Any]:
        if conversation_id not in self._trees:
            raise ConversationNotFoundError(conversation_id)
        return copy.deepcopy(self._trees[conversation_id])

    async def save_tree(self, conversation_id: str, flat: Dict[str, Any]):
        self._trees[conversation_id] = copy.deepcopy(flat)

    async def delete_tree(self, conversation_id: str):
        if self._trees.pop(conversation_id, None) is None:
            raise ConversationNotFoundError(conversation_id)

    async def list_trees(self) -> List[str]:
        return sorted(self._trees)


class JsonFileTreeStore(TreeStore):
    """
    Stores one <conversation_id>.json file per conversation.

    Writes go to a temporary file that is then moved over the target, so a
    failed write never leaves a half-written conversation behind.
    """
    def __init__(self, directory: Path):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()

    def _path_for(self, conversation_id: str) -> Path:
        if not _SAFE_ID.match(conversation_id or "") or conversation_id in (".", ".."):
            raise PersistenceError(f"Invalid conversation id: {conversation_id!r}")
        return self.directory / f"{conversation_id}.json"

    async def load_tree(self, conversation_id: str) -> Dict[str, Any]:
        path = self._path_for(conversation_id)
        async with self._lock:
            if not path.exists():
                raise ConversationNotFoundError(conversation_id)
            try:
                async with aiofiles.open(path, 'r', encoding='utf-8') as f:
                    text = await f.read()
            except OSError as e:
                logger.error(f"Failed to read conversation {conversation_id}: {e}")
                raise PersistenceError(f"Could not read {path}: {e}") from e

        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise CorruptStateError(f"Conversation {conversation_id} is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise CorruptStateError(f"Conversation {conversation_id} is not a JSON object")
        return data

    async def save_tree(self, conversation_id: str, flat: Dict[str, Any]):
        path = self._path_for(conversation_id)
        tmp_path = path.with_suffix(".json.tmp")
        try:
            payload = json.dumps(flat, indent=2, ensure_ascii=False)
        except (TypeError, ValueError) as e:
            raise PersistenceError(f"Conversation {conversation_id} is not JSON serializable: {e}") from e

        async with self._lock:
            try:
                async with aiofiles.open(tmp_path, 'w', encoding='utf-8') as f:
                    await f.write(payload)
                await aiofiles.os.replace(tmp_path, path)
            except OSError as e:
                logger.error(f"Failed to write conversation {conversation_id}: {e}")
                tmp_path.unlink(missing_ok=True)
                raise PersistenceError(f"Could not write {path}: {e}") from e
        logger.debug(f"Conversation saved: {path}")

    async def delete_tree(self, conversation_id: str):
        path = self._path_for(conversation_id)
        async with self._lock:
            if not path.exists():
                raise ConversationNotFoundError(conversation_id)
            try:
                path.unlink()
            except OSError as e:
                raise PersistenceError(f"Could not delete {path}: {e}") from e
        logger.info(f"Conversation deleted: {conversation_id}")

    async def list_trees(self) -> List[str]:
        return sorted(p.stem for p in self.directory.glob("*.json"))


class ConfigLoader(Protocol):
    def get_config(self, config_name: str) -> dict: ...
    def get_data_dir(self) -> Path: ...


def get_store(config_loader: ConfigLoader) -> TreeStore:
    """
    Factory function to create the configured store.
    """
    storage_config = config_loader.get_config("storage_config.json")
    store_type = storage_config.get("type", "json_file")

    if store_type == "json_file":
        directory = Path(storage_config.get("directory", "conversations"))
        if not directory.is_absolute():
            directory = config_loader.get_data_dir() / directory
        return JsonFileTreeStore(directory)
    if store_type == "memory":
        return InMemoryTreeStore()

    logger.error(f"Unknown storage type: {store_type}")
    raise ConfigurationError(f"Unknown storage type '{store_type}' in storage_config.json")
