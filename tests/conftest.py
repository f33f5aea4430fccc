# file: tests/conftest.py

import pytest
from unittest.mock import MagicMock, AsyncMock, patch

from branchtree.core.context.conversation_tree import ConversationTree, Role
from branchtree.core.service_locator import ServiceLocator
from branchtree.core.tree_store import InMemoryTreeStore

# --- Mocks for Core Components ---

@pytest.fixture(scope="function")
def mock_service_locator():
    """Mocks the ServiceLocator and its commonly used services."""
    locator = MagicMock()

    mock_config_loader = MagicMock()
    mock_config_loader.get_config.return_value = {}
    mock_config_loader.get.return_value = None
    locator.mock_config_loader = mock_config_loader

    mock_event_dispatcher = MagicMock()
    mock_event_dispatcher.publish = AsyncMock()
    locator.mock_event_dispatcher = mock_event_dispatcher

    def resolve_side_effect(service_name):
        if service_name == "config_loader":
            return mock_config_loader
        if service_name == "event_dispatcher":
            return mock_event_dispatcher
        return MagicMock()

    locator.resolve.side_effect = resolve_side_effect
    return locator


class FakeGenerator:
    """Stands in for ApiManager: records calls and replays scripted replies."""
    def __init__(self, replies=None):
        self.replies = list(replies or [])
        self.calls = []

    def generate(self, messages):
        self.calls.append([dict(m) for m in messages])
        if not self.replies:
            return f"reply {len(self.calls)}"
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


@pytest.fixture
def fake_generator():
    return FakeGenerator()


@pytest.fixture
def session_locator(fake_generator):
    """A real ServiceLocator wired with an in-memory store and mocked config/events."""
    locator = ServiceLocator()

    config_loader = MagicMock()
    config_loader.get_config.return_value = {
        "max_messages": 50,
        "pruning_strategy": "fifo",
        "generation_timeout_sec": 5,
        "auto_title": False,
    }
    events = MagicMock()
    events.publish = AsyncMock()

    locator.register_instance("config_loader", config_loader)
    locator.register_instance("event_dispatcher", events)
    locator.register_instance("tree_store", InMemoryTreeStore())
    locator.register_instance("api_manager", fake_generator)
    return locator


@pytest.fixture
def temp_config_dir(tmp_path):
    """Creates a temporary directory for config files."""
    return tmp_path


@pytest.fixture
def scenario_tree():
    """
    R -> U1 -> A1
           \\-> U2   (current)
    """
    tree = ConversationTree()
    u1 = tree.append_message("Hi", Role.USER)
    a1 = tree.append_message("Hello", Role.ASSISTANT)
    tree.navigate_to(u1.id)
    u2 = tree.append_message("Tell me a joke", Role.USER)
    ids = {"R": tree.root_id, "U1": u1.id, "A1": a1.id, "U2": u2.id}
    return tree, ids

# --- Global Mock for psutil.Process ---
# MemoryLogFilter reads process memory; tests use a fixed value instead.
class MockProcess:
    def memory_info(self):
        return MagicMock(rss=100 * 1024 * 1024)

mock_psutil_process = MockProcess()

@pytest.fixture(scope="session", autouse=True)
def mock_psutil_process_globally():
    """Globally patches psutil.Process for all tests."""
    with patch('psutil.Process', return_value=mock_psutil_process):
        yield
