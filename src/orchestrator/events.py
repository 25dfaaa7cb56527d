"""
Change-event sinks.

The synchronizer announces cache changes through ``publish(event, payload)``.
Sinks are fire-and-forget: a failing sink is logged and never affects the
caller.
"""
import logging
import threading
from typing import Any, Callable, Dict, List, Protocol, Tuple

logger = logging.getLogger(__name__)

CONTAINERS_UPDATED = "server:containers:updated"
HOSTINFO_UPDATED = "server:hostinfo:updated"
SYNC_FAILED = "server:sync:failed"


class EventSink(Protocol):
    def publish(self, event: str, payload: Dict[str, Any]) -> None:
        ...


class LoggingEventSink:
    """Writes every event to the log at DEBUG level."""

    def publish(self, event: str, payload: Dict[str, Any]) -> None:
        logger.debug(f"Event {event}: {payload}")


class CallbackEventSink:
    """Calls registered handlers; also records events for inspection."""

    def __init__(self, keep_history: int = 100):
        self._handlers: List[Callable[[str, Dict[str, Any]], None]] = []
        self._history: List[Tuple[str, Dict[str, Any]]] = []
        self._keep_history = keep_history
        self._lock = threading.Lock()

    def subscribe(self, handler: Callable[[str, Dict[str, Any]], None]) -> None:
        self._handlers.append(handler)

    def publish(self, event: str, payload: Dict[str, Any]) -> None:
        with self._lock:
            self._history.append((event, dict(payload)))
            del self._history[:-self._keep_history]
        for handler in list(self._handlers):
            try:
                handler(event, payload)
            except Exception as e:
                logger.error(f"Event handler failed for {event}: {e}", exc_info=True)

    def history(self) -> List[Tuple[str, Dict[str, Any]]]:
        with self._lock:
            return list(self._history)


class FanoutEventSink:
    """Publishes to several sinks, isolating their failures."""

    def __init__(self, *sinks: EventSink):
        self.sinks = list(sinks)

    def add(self, sink: EventSink) -> None:
        self.sinks.append(sink)

    def publish(self, event: str, payload: Dict[str, Any]) -> None:
        for sink in self.sinks:
            try:
                sink.publish(event, payload)
            except Exception as e:
                logger.warning(f"Event sink {type(sink).__name__} failed for {event}: {e}")
