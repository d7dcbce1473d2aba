"""
Event System for the discovery core

Lightweight event emitter that decouples the retrieval and resilience
components from whoever wants to observe them (metrics, logging, the
offline outbox).

Events:
    Resilience events:
        - retry_attempt: An attempt inside retry_with_backoff failed
        - circuit_state_change: A CircuitBreaker moved between states

    Retrieval events:
        - search_complete: HybridRetriever finished a search
        - embedding_call_end: An embedding provider finished a request

    Outbox events:
        - online / offline: Connectivity changed (ConnectivityMonitor)
        - outbox_sync_complete: Outbox.sync finished a pass
        - message_failed: A queued message hit its retry limit

Usage:
    monitor = ConnectivityMonitor()
    monitor.on("online", lambda e: print("back online"))
    monitor.set_online(True)
"""

import logging
from typing import Callable, Any

logger = logging.getLogger(__name__)


class EventEmitter:
    """
    Mixin class that provides event emission and subscription.

    Can be used standalone (``EventEmitter()``) as a shared bus, or mixed
    into a class that emits its own events.
    """

    def __init_events__(self):
        """Initialize event storage. Call this in your __init__ if using as mixin."""
        if not hasattr(self, '_event_handlers'):
            self._event_handlers: dict[str, list[Callable]] = {}

    def on(self, event: str, handler: Callable[[dict[str, Any]], None] = None) -> Callable:
        """
        Subscribe to an event.

        Args:
            event: Event name (e.g., "circuit_state_change") or "*" for all events
            handler: Callback that receives the event data dict (optional for decorator use)

        Returns:
            The handler (for later removal), or a decorator if handler is None
        """
        self.__init_events__()
        handlers = self._event_handlers.setdefault(event, [])

        if handler is None:
            def decorator(fn: Callable[[dict[str, Any]], None]) -> Callable:
                handlers.append(fn)
                return fn
            return decorator

        handlers.append(handler)
        return handler

    def off(self, event: str, handler: Callable = None):
        """
        Unsubscribe from an event.

        Args:
            event: Event name
            handler: Specific handler to remove, or None to remove all
        """
        self.__init_events__()
        if event not in self._event_handlers:
            return
        if handler is None:
            self._event_handlers[event] = []
        else:
            self._event_handlers[event] = [h for h in self._event_handlers[event] if h != handler]

    def listener_count(self, event: str) -> int:
        """Number of handlers subscribed to an event (wildcards excluded)."""
        self.__init_events__()
        return len(self._event_handlers.get(event, []))

    def emit(self, event: str, data: dict[str, Any] = None):
        """
        Emit an event to all subscribers.

        Events are delivered synchronously, in subscription order. A failing
        handler is logged and does not stop delivery to the others.
        """
        self.__init_events__()
        data = dict(data or {})
        data['_event'] = event

        handlers = list(self._event_handlers.get(event, []))
        handlers += self._event_handlers.get('*', [])
        for handler in handlers:
            try:
                handler(data)
            except Exception as e:
                logger.warning("Handler for event '%s' failed: %s", event, e)

    def once(self, event: str, handler: Callable[[dict[str, Any]], None]) -> Callable:
        """Subscribe to an event for a single emission only."""
        def wrapper(data):
            self.off(event, wrapper)
            handler(data)

        return self.on(event, wrapper)
