# file: branchtree/core/event_dispatcher.py

import asyncio
import itertools
import logging
from collections import defaultdict
from typing import Callable, Any, Dict, List, Optional
from branchtree.utils.config_loader import ConfigLoader

class EventDispatcher:
    """
    Event bus used to tell the presentation layer about tree changes.
    Supports both synchronous and asynchronous handlers. Published events
    go through a priority queue processed by a background task.
    """

    def __init__(self, config_loader: ConfigLoader):
        self.logger = logging.getLogger(self.__class__.__name__)
        self._listeners: Dict[str, List[Callable[..., Any]]] = defaultdict(list)

        system_config = config_loader.get_config("system_config.json")
        self._event_priorities: Dict[str, int] = system_config.get("event_priorities", {})
        self._default_priority: int = self._event_priorities.get("DEFAULT", 50)

        self._event_queue: Optional[asyncio.PriorityQueue] = None
        # Keeps FIFO order among events of equal priority
        self._sequence = itertools.count()
        self._dispatcher_task: Optional[asyncio.Task] = None

    def _get_priority(self, event_type: str) -> int:
        """
        Gets the best-matching priority for an event type.
        e.g., "TREE_EVENT.NODE_APPENDED" checks the full name, then "TREE_EVENT", then "DEFAULT".
        """
        parts = event_type.split('.')
        for i in range(len(parts), 0, -1):
            check_key = ".".join(parts[:i])
            if check_key in self._event_priorities:
                return self._event_priorities[check_key]
        return self._default_priority

    def subscribe(self, event_type: str, listener: Callable[..., Any]):
        """Subscribes a listener to an event type (e.g., "TREE_EVENT.BRANCH_CHANGED")."""
        self._listeners[event_type].append(listener)

    def unsubscribe(self, event_type: str, listener: Callable[..., Any]):
        """Removes a specific listener from an event type."""
        if event_type in self._listeners:
            try:
                self._listeners[event_type].remove(listener)
            except ValueError:
                pass

    def _queue(self) -> asyncio.PriorityQueue:
        if self._event_queue is None:
            self._event_queue = asyncio.PriorityQueue()
        return self._event_queue

    async def publish(self, event_type: str, *args, **kwargs):
        """
        Queues an event. Listeners run in the background dispatcher loop,
        so this returns immediately.
        """
        priority = self._get_priority(event_type)
        await self._queue().put((priority, next(self._sequence), event_type, args, kwargs))

    async def _execute_listeners(self, event_type: str, *args, **kwargs):
        """Executes all listeners for a given event."""
        if event_type not in self._listeners:
            return

        tasks_to_run = []
        for listener in list(self._listeners[event_type]):
            if asyncio.iscoroutinefunction(listener):
                tasks_to_run.append(listener(*args, **kwargs))
            else:
                try:
                    listener(*args, **kwargs)
                except Exception as e:
                    self.logger.error(f"Error in synchronous listener for {event_type}: {e}", exc_info=True)

        if tasks_to_run:
            # One failing listener must not stop the others
            results = await asyncio.gather(*tasks_to_run, return_exceptions=True)
            for res in results:
                if isinstance(res, Exception):
                    self.logger.error(f"Error in asynchronous listener for {event_type}: {res}")

    async def _dispatcher_loop(self):
        """Processes queued events, highest priority (lowest number) first."""
        queue = self._queue()
        try:
            while True:
                _priority, _seq, event_type, args, kwargs = await queue.get()
                try:
                    await self._execute_listeners(event_type, *args, **kwargs)
                except Exception as e:
                    self.logger.error(f"Critical error during listener execution for {event_type}: {e}", exc_info=True)
                finally:
                    queue.task_done()
        except asyncio.CancelledError:
            self.logger.debug("Event dispatcher loop cancelled.")
            raise

    def start(self):
        """Starts the background event processing loop. Requires a running event loop."""
        if self._dispatcher_task is None or self._dispatcher_task.done():
            self._dispatcher_task = asyncio.create_task(self._dispatcher_loop())
            self.logger.info("Event dispatcher started.")

    async def join(self):
        """Waits until every queued event has been handled."""
        await self._queue().join()

    async def stop(self):
        """Stops the background event processing loop."""
        if self._dispatcher_task and not self._dispatcher_task.done():
            self._dispatcher_task.cancel()
            await asyncio.wait([self._dispatcher_task], timeout=1.0)
            self._dispatcher_task = None
            self.logger.info("Event dispatcher stopped.")
