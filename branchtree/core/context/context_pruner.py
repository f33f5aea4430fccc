# file: branchtree/core/context/context_pruner.py

import logging
from typing import List, Dict, Any

class ContextPruner:
    """
    Trims the active-path messages before they are handed to the generator.
    The tree itself is never modified.
    """
    def __init__(self, config: Dict[str, Any]):
        self.config = config
        self.logger = logging.getLogger(self.__class__.__name__)

    def update_config(self, config: Dict[str, Any]):
        self.config = config
        self.logger.info("ContextPruner config updated.")

    def prune(self, messages: List[Dict[str, str]]) -> List[Dict[str, str]]:
        """
        Prunes the given message list based on the configured strategy.
        """
        strategy = self.config.get("pruning_strategy", "fifo")

        if strategy == "none":
            return list(messages)
        if strategy != "fifo":
            self.logger.warning(f"Unknown pruning strategy '{strategy}'. Defaulting to 'fifo'.")
        return self._prune_fifo(messages)

    def _prune_fifo(self, messages: List[Dict[str, str]]) -> List[Dict[str, str]]:
        """
        Keeps the most recent max_messages entries. The window always starts
        on a user message so the generator never sees a dangling reply.
        """
        max_messages = self.config.get("max_messages", 50)

        if not max_messages or len(messages) <= max_messages:
            return list(messages)

        pruned_list = messages[-max_messages:]
        while len(pruned_list) > 1 and pruned_list[0].get("role") != "user":
            pruned_list = pruned_list[1:]

        self.logger.debug(f"Pruned context from {len(messages)} to {len(pruned_list)} messages (FIFO).")
        return pruned_list
