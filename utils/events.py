"""
Event system for threadmem

Lightweight event emitter that lets callers observe turns (for logging, UIs,
audit trails) without touching the stream a turn's consumer reads. Events are
side channels: every chunk the consumer sees is delivered regardless of what
handlers do, and a handler that raises is logged and skipped.

Events emitted by Agent, with their payload keys:
    - turn_start {thread_id, resource_id}: context assembly is about to begin
    - tool_start {name, input, tool_call_id, thread_id}: the dispatcher is about
      to run a server-side tool the model requested
    - tool_end {name, result, is_error, tool_call_id, thread_id}: the tool
      finished; `result` is what gets stored in the tool message
    - turn_end {thread_id, state, error}: the turn reached DONE or ERRORED

Client-side tool calls emit no tool events; they show up in the turn's
`pending_tool_calls` instead.

Usage:
    agent = Agent(memory, model)
    agent.on("tool_start", lambda e: print(f"Running {e['name']}..."))

    @agent.on("turn_end")
    def report(e):
        if e["error"]:
            print(f"Turn on {e['thread_id']} failed: {e['error']}")
"""

import logging
from typing import Any, Callable

logger = logging.getLogger(__name__)


class EventEmitter:
    """
    Mixin class that provides event emission and subscription.

    Supports multiple subscribers per event and wildcard ("*") subscriptions.
    """

    def __init_events__(self):
        """Initialize event storage. Call this in your __init__ if using as mixin."""
        if not hasattr(self, '_event_handlers'):
            self._event_handlers: dict[str, list[Callable]] = {}

    def on(self, event: str, handler: Callable[[dict[str, Any]], None] = None) -> Callable:
        """
        Subscribe to an event.

        Args:
            event: Event name (e.g., "tool_start") or "*" for all events
            handler: Callback receiving the event data dict (omit to use as a decorator)

        Returns:
            The handler, or a decorator if handler is None
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

    def emit(self, event: str, data: dict[str, Any] = None):
        """
        Emit an event to all subscribers.

        Events are delivered synchronously, so handlers should be fast.
        A failing handler is logged and does not affect the emitter or
        the other handlers.
        """
        self.__init_events__()
        data = data or {}
        data['_event'] = event

        handlers = list(self._event_handlers.get(event, [])) + list(self._event_handlers.get('*', []))
        for handler in handlers:
            try:
                handler(data)
            except Exception:
                logger.exception("Handler for event '%s' failed", event)

    def once(self, event: str, handler: Callable[[dict[str, Any]], None]) -> Callable:
        """
        Subscribe to an event for a single emission only.

        Returns:
            Wrapper handler (for removal if needed)
        """
        def wrapper(data):
            self.off(event, wrapper)
            handler(data)

        return self.on(event, wrapper)
