"""
Router event stream.

The dispatcher reports progress only through an event sink: any callable
taking a RouterEvent. Sinks here collect events for tests and the CLI, mirror
them into the log, or fan them out to several subscribers.
"""

import logging
import threading
from typing import Any, Callable, Dict, List, Optional

from .models import RouterEvent, RouterPhase
from .utils import new_id

logger = logging.getLogger(__name__)

EventSink = Callable[[RouterEvent], None]


def make_event(
    route_id: str,
    phase: RouterPhase,
    message: str = "",
    engine_id: Optional[str] = None,
    **data: Any,
) -> RouterEvent:
    return RouterEvent(
        event_id=new_id("evt"),
        route_id=route_id,
        phase=phase,
        engine_id=engine_id,
        message=message,
        data=data,
    )


def null_sink(event: RouterEvent) -> None:
    pass


class EventRecorder:
    """Keeps every event it receives, in arrival order."""

    def __init__(self):
        self._lock = threading.Lock()
        self._events: List[RouterEvent] = []

    def __call__(self, event: RouterEvent) -> None:
        with self._lock:
            self._events.append(event)

    @property
    def events(self) -> List[RouterEvent]:
        with self._lock:
            return list(self._events)

    def phases(self) -> List[RouterPhase]:
        return [e.phase for e in self.events]

    def for_engine(self, engine_id: str) -> List[RouterEvent]:
        return [e for e in self.events if e.engine_id == engine_id]


_LEVELS: Dict[RouterPhase, int] = {
    RouterPhase.DISPATCH_FAILED: logging.WARNING,
    RouterPhase.DISPATCH_CANCELLED: logging.WARNING,
    RouterPhase.PARTIAL_SUCCESS: logging.WARNING,
    RouterPhase.ROUTE_REJECTED: logging.WARNING,
    RouterPhase.NO_COMPATIBLE_ENGINE: logging.WARNING,
}


class LoggingSink:
    def __init__(self, log: logging.Logger = logger):
        self.log = log

    def __call__(self, event: RouterEvent) -> None:
        level = _LEVELS.get(event.phase, logging.INFO)
        engine = f" [{event.engine_id}]" if event.engine_id else ""
        self.log.log(level, "%s %s%s %s", event.route_id, event.phase.value, engine, event.message)


def fan_out(*sinks: EventSink) -> EventSink:
    """
    Deliver each event to every sink in order. A sink that raises is logged
    and skipped; the remaining sinks still get the event.
    """

    def _emit(event: RouterEvent) -> None:
        for sink in sinks:
            try:
                sink(event)
            except Exception:
                logger.exception("Event sink %r failed on %s", sink, event.phase.value)

    return _emit
