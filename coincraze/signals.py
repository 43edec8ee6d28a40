"""Host signals.

The hosting view (browser tab, mobile app, API client) tells us when it
becomes visible or regains network connectivity. Components subscribe to
these events and must detach their callbacks at teardown.
"""

from __future__ import annotations

import logging
from typing import Callable, Literal

logger = logging.getLogger(__name__)

SignalName = Literal["visibility_changed", "online"]
Listener = Callable[..., None]

VISIBILITY_CHANGED: SignalName = "visibility_changed"
ONLINE: SignalName = "online"


class HostSignals:
    """In-process emitter for visibility and connectivity events."""

    def __init__(self, *, visible: bool = True) -> None:
        self._visible = visible
        self._listeners: dict[str, list[Listener]] = {VISIBILITY_CHANGED: [], ONLINE: []}

    @property
    def visible(self) -> bool:
        return self._visible

    def subscribe(self, event: SignalName, callback: Listener) -> Callable[[], None]:
        """Register a listener and return a function that detaches it."""
        if event not in self._listeners:
            raise ValueError(f"Unknown signal: {event}")
        self._listeners[event].append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners[event]:
                self._listeners[event].remove(callback)

        return unsubscribe

    def listener_count(self, event: SignalName) -> int:
        return len(self._listeners.get(event, []))

    def set_visible(self, visible: bool) -> None:
        """Update visibility; listeners only hear about actual changes."""
        if visible == self._visible:
            return
        self._visible = visible
        self._emit(VISIBILITY_CHANGED, visible=visible)

    def notify_online(self) -> None:
        self._emit(ONLINE)

    def _emit(self, event: SignalName, **payload: object) -> None:
        for callback in list(self._listeners[event]):
            try:
                callback(**payload)
            except Exception:
                logger.exception("Listener for %s failed", event)
