# file: branchtree/core/service_locator.py

import logging
from typing import Callable, Any, Dict

class ServiceLocator:
    """
    A small dependency container (Service Locator pattern).

    Factories are plain callables taking no arguments; they usually close
    over the locator to resolve their own dependencies. Services are
    singletons unless registered with singleton=False.
    """
    def __init__(self):
        self.logger = logging.getLogger(self.__class__.__name__)
        self._singletons: Dict[str, Any] = {}
        self._factories: Dict[str, Callable[[], Any]] = {}
        self._is_singleton: Dict[str, bool] = {}

    def register(self, name: str, factory: Callable[[], Any], singleton: bool = True):
        """
        Registers a service.

        Args:
            name (str): The unique name to identify the service.
            factory (Callable): Zero-argument callable creating the service.
            singleton (bool): Create once on first resolve (True) or on
                              every resolve (False).
        """
        if name in self._factories:
            self.logger.warning(f"Service '{name}' is being re-registered.")

        self._factories[name] = factory
        self._is_singleton[name] = singleton
        self._singletons.pop(name, None)

    def register_instance(self, name: str, instance: Any):
        """Registers an already-built object as a singleton."""
        self.register(name, lambda: instance, singleton=True)
        self._singletons[name] = instance

    def resolve(self, name: str) -> Any:
        """Gets a service instance by its name."""
        if name not in self._factories:
            raise KeyError(f"Service '{name}' not found.")

        if self._is_singleton[name]:
            if name not in self._singletons:
                self._singletons[name] = self._factories[name]()
            return self._singletons[name]

        return self._factories[name]()

    def __getitem__(self, name: str) -> Any:
        return self.resolve(name)

    def __contains__(self, name: str) -> bool:
        return name in self._factories
