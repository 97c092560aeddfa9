"""Response sink: ordered pub/sub for streamed completion events."""

from __future__ import annotations

import inspect
import logging
from collections import deque
from typing import Any, Callable

from llm_gateway.types import AgentEvent, EventType

_logger = logging.getLogger(__name__)

_WILDCARD = "*"

# Sync or async callable taking an AgentEvent
Handler = Callable[[AgentEvent], Any]


class EventBus:
    """Delivers completion events to subscribers in arrival order.

    Handlers are awaited one at a time: type-specific handlers first, then
    wildcard ones, each in subscription order.  ``emit()`` returns only once
    every handler has finished, so a handler that awaits while processing a
    text fragment still sees the next fragment after it, never before.

    A handler that raises is logged and skipped; the remaining handlers and
    later events are still delivered.
    """

    def __init__(self, max_history: int = 200) -> None:
        self._handlers: dict[str, list[Handler]] = {}
        self._history: deque[AgentEvent] = deque(maxlen=max_history)

    def subscribe(
        self,
        event_type: EventType | str,
        handler: Handler,
    ) -> Callable[[], None]:
        """Register *handler* for *event_type* (``"*"`` for all).

        Returns a callable that removes the subscription.
        """
        key = event_type.value if isinstance(event_type, EventType) else str(event_type)
        handlers = self._handlers.setdefault(key, [])
        handlers.append(handler)

        def unsubscribe() -> None:
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    async def emit(self, event: AgentEvent) -> None:
        self._history.append(event)
        targets = [
            *self._handlers.get(event.type.value, []),
            *self._handlers.get(_WILDCARD, []),
        ]
        for handler in targets:
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                _logger.exception(
                    "Sink handler %s failed on %s",
                    getattr(handler, "__name__", handler), event.type.value,
                )

    @property
    def history(self) -> list[AgentEvent]:
        """The most recent events, oldest first."""
        return list(self._history)
