"""
Alert handler registry.

Handlers are kept in registration order per event category and called
synchronously on dispatch. A handler that returns a coroutine has it scheduled
on the running loop; a failing handler is logged and does not stop delivery
to the others.
"""
import asyncio
import inspect
import logging
from typing import Any, Callable, Dict, List, Set

logger = logging.getLogger(__name__)

WHALE_ACTIVITY = "whale_activity"
MARKET_ANALYSIS = "market_analysis"
POOL_ERROR = "pool_error"

Handler = Callable[[Any], Any]


class EventRegistry:
    """Ordered handler lists keyed by event category."""

    def __init__(self):
        """Initialize an empty registry."""
        self._handlers: Dict[str, List[Handler]] = {}
        self._tasks: Set[asyncio.Task] = set()

    def subscribe(self, category: str, handler: Handler) -> Callable[[], None]:
        """
        Register a handler for a category.

        Returns:
            A function that removes this registration again
        """
        self._handlers.setdefault(category, []).append(handler)

        def unsubscribe():
            handlers = self._handlers.get(category, [])
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    def handlers(self, category: str) -> List[Handler]:
        return list(self._handlers.get(category, []))

    def dispatch(self, category: str, event: Any) -> int:
        """
        Deliver an event to every handler currently registered for the category.

        Returns:
            Number of handlers that accepted the event without raising
        """
        delivered = 0
        for handler in self.handlers(category):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    self._schedule(category, result)
                delivered += 1
            except Exception as e:
                logger.error(f"Error in {category} handler {getattr(handler, '__name__', handler)}: {e}",
                             exc_info=True)
        return delivered

    def _schedule(self, category: str, awaitable):
        task = asyncio.ensure_future(awaitable)
        self._tasks.add(task)

        def _done(t: asyncio.Task):
            self._tasks.discard(t)
            if not t.cancelled() and t.exception() is not None:
                logger.error(f"Error in async {category} handler: {t.exception()}")

        task.add_done_callback(_done)

    async def drain(self):
        """Wait for handler tasks scheduled so far."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def clear(self):
        self._handlers.clear()
