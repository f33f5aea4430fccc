# file: tests/test_app.py

import logging
import pytest

from branchtree.app import bootstrap, default_data_dir, open_session, register_core_services, start_events
from branchtree.core.api_manager import ApiManager
from branchtree.core.context.conversation_tree import Role
from branchtree.core.event_dispatcher import EventDispatcher
from branchtree.core.exceptions import ConversationNotFoundError
from branchtree.core.service_locator import ServiceLocator
from branchtree.core.tree_store import JsonFileTreeStore
from branchtree.utils.config_loader import ConfigLoader


@pytest.fixture(autouse=True)
def restore_root_handlers():
    root_logger = logging.getLogger()
    original_handlers = root_logger.handlers[:]
    original_level = root_logger.level
    yield
    for handler in root_logger.handlers:
        if handler not in original_handlers:
            handler.close()
    root_logger.handlers = original_handlers
    root_logger.setLevel(original_level)


def test_service_locator_singletons_and_factories():
    locator = ServiceLocator()
    locator.register("shared", object)
    locator.register("fresh", object, singleton=False)

    assert locator.resolve("shared") is locator["shared"]
    assert locator.resolve("fresh") is not locator.resolve("fresh")
    assert "shared" in locator
    with pytest.raises(KeyError):
        locator.resolve("missing")


def test_register_instance_replaces_factory():
    locator = ServiceLocator()
    locator.register("service", object)
    instance = object()
    locator.register_instance("service", instance)

    assert locator.resolve("service") is instance


def test_default_data_dir_honours_env(monkeypatch, tmp_path):
    monkeypatch.setenv("BRANCHTREE_HOME", str(tmp_path))
    assert default_data_dir() == tmp_path


def test_register_core_services(tmp_path):
    locator = register_core_services(ServiceLocator(), tmp_path)

    assert isinstance(locator.resolve("config_loader"), ConfigLoader)
    assert isinstance(locator.resolve("event_dispatcher"), EventDispatcher)
    assert isinstance(locator.resolve("tree_store"), JsonFileTreeStore)
    assert isinstance(locator.resolve("api_manager"), ApiManager)


def test_bootstrap_writes_configs_and_log(tmp_path):
    bootstrap(tmp_path)

    assert (tmp_path / "context_config.json").exists()
    assert (tmp_path / "logs" / "branchtree.log").exists()


@pytest.mark.asyncio
async def test_open_session_creates_then_reopens(tmp_path):
    locator = bootstrap(tmp_path)
    events = start_events(locator)
    try:
        session = await open_session(locator)
        user_node = await session.append_message("Hi", Role.USER)

        assert (tmp_path / "conversations" / f"{session.conversation_id}.json").exists()

        reopened = await open_session(locator, session.conversation_id)
        assert reopened.tree.current_node_id == user_node.id
        assert len(reopened.tree) == 2

        with pytest.raises(ConversationNotFoundError):
            await open_session(locator, "does-not-exist")
    finally:
        await events.stop()
