"""
Progress observers for the agent loop.

Observers receive ProgressEvent objects. Delivery is fire and forget:
an observer that raises is logged and skipped, the run continues.
"""

from typing import Callable, List, Optional

from .models.schemas import ProgressEvent
from .utils.logger import get_logger


logger = get_logger(__name__)


class AgentObserver:
    """Base observer. Subclasses override notify()."""

    def notify(self, event: ProgressEvent) -> None:
        pass


class LoggingObserver(AgentObserver):
    """Writes every event to the log."""

    def notify(self, event: ProgressEvent) -> None:
        keys = ", ".join(sorted(event.data)) or "-"
        logger.info(f"[Progress] step={event.step} type={event.type} data_keys={keys}")


class CallbackObserver(AgentObserver):
    """Adapts a plain callable, e.g. a UI status hook."""

    def __init__(self, callback: Callable[[ProgressEvent], None]):
        self.callback = callback

    def notify(self, event: ProgressEvent) -> None:
        self.callback(event)


class RecordingObserver(AgentObserver):
    """Keeps every event in memory."""

    def __init__(self):
        self.events: List[ProgressEvent] = []

    def notify(self, event: ProgressEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: str) -> List[ProgressEvent]:
        return [event for event in self.events if event.type == event_type]


class CompositeObserver(AgentObserver):
    """Fans an event out to several observers, isolating their failures."""

    def __init__(self, observers: Optional[List[AgentObserver]] = None):
        self.observers: List[AgentObserver] = list(observers or [])

    def add(self, observer: AgentObserver) -> None:
        self.observers.append(observer)

    def notify(self, event: ProgressEvent) -> None:
        for observer in self.observers:
            safe_notify(observer, event)


def safe_notify(observer: Optional[AgentObserver], event: ProgressEvent) -> None:
    """Deliver an event, logging and discarding any observer exception."""
    if observer is None:
        return
    try:
        observer.notify(event)
    except Exception as e:
        logger.error(f"[Progress] Observer {type(observer).__name__} failed on '{event.type}': {e}")
