# file: branchtree/app.py

import logging
import os
from pathlib import Path
from typing import Optional, Union

from branchtree.core.service_locator import ServiceLocator
from branchtree.core.event_dispatcher import EventDispatcher
from branchtree.core.api_manager import ApiManager
from branchtree.core.session import ConversationSession
from branchtree.core.tree_store import get_store
from branchtree.utils.config_loader import ConfigLoader
from branchtree.utils.logger import setup_logging


def default_data_dir() -> Path:
    """Per-user directory for config, logs and stored conversations."""
    env_dir = os.getenv("BRANCHTREE_HOME")
    if env_dir:
        return Path(env_dir)
    return Path(os.getenv("APPDATA") or Path.home() / ".config") / "branchtree"


def register_core_services(locator: ServiceLocator, data_dir: Optional[Union[str, Path]] = None) -> ServiceLocator:
    """Registers config, events, storage and generation services."""
    config_dir = Path(data_dir) if data_dir else default_data_dir()

    locator.register("config_loader", lambda: ConfigLoader(config_dir), singleton=True)
    locator.register(
        "event_dispatcher",
        lambda: EventDispatcher(locator.resolve("config_loader")),
        singleton=True,
    )
    locator.register("tree_store", lambda: get_store(locator.resolve("config_loader")), singleton=True)
    locator.register("api_manager", lambda: ApiManager(locator), singleton=True)
    return locator


def bootstrap(data_dir: Optional[Union[str, Path]] = None) -> ServiceLocator:
    """
    Builds a locator, loads every config file and sets up logging.
    Call start_events() from inside the event loop afterwards.
    """
    locator = register_core_services(ServiceLocator(), data_dir)
    config_loader: ConfigLoader = locator.resolve("config_loader")
    config_loader.load_all_configs()
    setup_logging(config_loader)
    return locator


def start_events(locator: ServiceLocator) -> EventDispatcher:
    events: EventDispatcher = locator.resolve("event_dispatcher")
    events.start()
    return events


async def open_session(locator: ServiceLocator, conversation_id: Optional[str] = None) -> ConversationSession:
    """
    Loads an existing conversation, or starts a new one when no id is
    given. A stored conversation that fails validation raises
    CorruptStateError instead of opening.
    """
    if conversation_id is None:
        session = ConversationSession(locator)
        await session.save()
        logging.getLogger(__name__).info(f"Started conversation {session.conversation_id}")
        return session
    return await ConversationSession.load(locator, conversation_id)
