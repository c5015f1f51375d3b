"""Ordered publish/subscribe registry for controller notifications."""

from __future__ import annotations

import logging
import threading
from itertools import count
from typing import Any, Callable, Dict, List, Optional

LOGGER = logging.getLogger("trackability.events")

Listener = Callable[[Any], None]

LINK_STATE_CHANGED = "link-state-changed"
HOME_SENSOR_CHANGED = "home-sensor-changed"
HOMING_STATE_CHANGED = "homing-state-changed"
EMERGENCY_CHANGED = "emergency-changed"
POWER_CHANGED = "power-changed"
SAMPLE = "sample"

EVENTS = (
    LINK_STATE_CHANGED,
    HOME_SENSOR_CHANGED,
    HOMING_STATE_CHANGED,
    EMERGENCY_CHANGED,
    POWER_CHANGED,
    SAMPLE,
)


class EventHub:
    """Deliver each event to its listeners in subscription order.

    Listeners run synchronously on the publishing thread. A listener that
    raises is logged and skipped; nothing is queued for later delivery.
    """

    def __init__(self, logger: Optional[logging.Logger] = None) -> None:
        self._logger = logger or LOGGER
        self._counter = count(1)
        self._listeners: Dict[str, Dict[int, Listener]] = {name: {} for name in EVENTS}
        self._lock = threading.Lock()

    def subscribe(self, event: str, callback: Listener) -> Callable[[], None]:
        """Register ``callback`` for ``event`` and return an unsubscribe function."""

        if callback is None:
            raise ValueError("callback must not be None")
        if event not in self._listeners:
            raise ValueError(f"Unknown event '{event}'. Expected one of {EVENTS}.")
        token = next(self._counter)
        with self._lock:
            self._listeners[event][token] = callback

        def _unsubscribe() -> None:
            with self._lock:
                self._listeners[event].pop(token, None)

        return _unsubscribe

    def publish(self, event: str, payload: Any) -> None:
        with self._lock:
            # dicts keep insertion order, tokens are monotonic
            listeners: List[Listener] = list(self._listeners[event].values())
        for listener in listeners:
            try:
                listener(payload)
            except Exception:
                self._logger.exception("Listener for %s raised", event)

    def listener_count(self, event: str) -> int:
        with self._lock:
            return len(self._listeners[event])


__all__ = [
    "EVENTS",
    "EMERGENCY_CHANGED",
    "EventHub",
    "HOME_SENSOR_CHANGED",
    "HOMING_STATE_CHANGED",
    "LINK_STATE_CHANGED",
    "Listener",
    "POWER_CHANGED",
    "SAMPLE",
]
