"""
Observer registration for manager notifications. Collaborators (CLI, serving
layer) subscribe to the events they care about instead of polling.
"""

import logging
from collections import defaultdict
from collections.abc import Callable
from enum import Enum
from typing import Any, NamedTuple

log = logging.getLogger(__name__)


class MissingStatus(NamedTuple):
    """Payload of MISSING_CHANGED."""

    missing: bool
    info: str


class ManagerEvent(Enum):
    """Notifications emitted by the manager, with their payload type."""

    STORAGE_AVAILABLE_CHANGED = "storage_available_changed"  # bool
    DOWNLOADING_CHANGED = "downloading_changed"  # bool
    DOWNLOAD_PROGRESS = "download_progress"  # str
    MISSING_CHANGED = "missing_changed"  # MissingStatus
    SUBSCRIPTION_CHANGED = "subscription_changed"  # None
    AVAILABILITY_CHANGED = "availability_changed"  # None
    DATA_PATHS_CHANGED = "data_paths_changed"  # dict[str, list[str]]
    UPDATES_FOUND = "updates_found"  # str, JSON array
    ERROR_MESSAGE = "error_message"  # str


Listener = Callable[[Any], None]


class EventBus:
    """Dispatches manager events to registered listeners in subscription order."""

    def __init__(self) -> None:
        self._listeners: dict[ManagerEvent, list[Listener]] = defaultdict(list)

    def subscribe(self, event: ManagerEvent, listener: Listener) -> Callable[[], None]:
        """
        Registers a listener for an event.

        Returns:
            A callable that removes the listener again.
        """
        self._listeners[event].append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners[event]:
                self._listeners[event].remove(listener)

        return unsubscribe

    def emit(self, event: ManagerEvent, payload: Any = None) -> None:
        """Delivers an event. A failing listener does not stop the others."""
        log.debug(f"Event {event.value}: {payload!r}")
        for listener in list(self._listeners[event]):
            try:
                listener(payload)
            except Exception as e:
                log.error(
                    f"Listener for '{event.value}' failed: {e}", exc_info=True
                )
