# file: branchtree/core/exceptions.py
"""
Defines the custom exception hierarchy for branchtree.
"""

class BranchTreeError(Exception):
    """Base exception for all branchtree errors."""
    pass

# --- Configuration Errors ---
class ConfigurationError(BranchTreeError):
    """Error related to loading, parsing, or validating configuration."""
    pass

# --- Lookup Errors ---
class NotFoundError(BranchTreeError):
    """A referenced object does not exist. Recoverable: nothing was changed."""
    pass

class NodeNotFoundError(NotFoundError):
    """A node id is absent from the tree's node map."""
    def __init__(self, node_id: str):
        super().__init__(f"Node not found: {node_id}")
        self.node_id = node_id

class ConversationNotFoundError(NotFoundError):
    """No stored conversation exists under the requested id."""
    def __init__(self, conversation_id: str):
        super().__init__(f"Conversation not found: {conversation_id}")
        self.conversation_id = conversation_id

# --- Tree Integrity Errors ---
class CorruptStateError(BranchTreeError):
    """
    A tree invariant is violated (cycle, dangling parent, duplicate id,
    zero or several roots). Loading aborts; no partial tree is returned.
    """
    pass

class InvalidNodeError(BranchTreeError):
    """The requested operation does not apply to the given node."""
    pass

# --- Generation Errors ---
class GenerationError(BranchTreeError):
    """Base error for the external text-generation collaborator."""
    pass

class APIConnectionError(GenerationError):
    """Wraps connection-related errors from the API library."""
    pass

class APITimeoutError(GenerationError):
    """The generation call did not finish in time."""
    pass

class APIAuthenticationError(GenerationError):
    """Wraps authentication-related errors from the API library."""
    pass

class APIRateLimitError(GenerationError):
    """Wraps rate limit errors from the API library."""
    pass

class APINotFoundError(GenerationError):
    """Wraps model/resource not found errors from the API library."""
    pass

class APIConfigurationError(GenerationError):
    """Error related to missing or invalid API configuration."""
    pass

class EmptyResponseError(GenerationError):
    """The generator returned no usable content."""
    pass

# --- Persistence Errors ---
class PersistenceError(BranchTreeError):
    """Reading or writing a conversation to storage failed."""
    pass
