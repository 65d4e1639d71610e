"""
Tagged-dispatch event bus used by the client.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, FrozenSet, Iterable, Optional, Set

LOG = logging.getLogger(__name__)

Handler = Callable[[Any], None]

#: Events emitted by :class:`~peerlink.client.rtc_client.RTCClient`.
CLIENT_EVENTS: FrozenSet[str] = frozenset(
    {
        "peeradded",
        "peerupdated",
        "peerremoved",
        "peerconnected",
        "peerdisconnected",
        "connected",
        "disconnected",
        "offer",
        "error",
        "chat",
        "reset",
    }
)


class EventBus:
    """
    Map of event name -> set of handlers.

    Handlers are called synchronously with a single argument (``None`` for
    events that carry no data).  No ordering is promised between handlers of
    the same event.  A failing handler is logged and does not stop delivery.
    """

    def __init__(self, names: Optional[Iterable[str]] = None) -> None:
        self._names: FrozenSet[str] = frozenset(names) if names is not None else CLIENT_EVENTS
        self._listeners: Dict[str, Set[Handler]] = {}

    def on(self, name: str, handler: Handler) -> Callable[[], None]:
        if name not in self._names:
            raise ValueError(f"Unknown event '{name}'")
        if not callable(handler):
            raise TypeError("handler must be callable")
        handlers = self._listeners.setdefault(name, set())
        handlers.add(handler)

        def unsubscribe() -> None:
            handlers.discard(handler)

        return unsubscribe

    def emit(self, name: str, data: Any = None) -> None:
        for handler in list(self._listeners.get(name, ())):
            try:
                handler(data)
            except Exception:
                LOG.exception("Handler for '%s' failed", name)

    def listener_count(self, name: str) -> int:
        return len(self._listeners.get(name, ()))

    def clear(self) -> None:
        self._listeners.clear()
