"""
Business Event Module

Business events describe domain occurrences to external observers. The
notifier publishes events immediately, or buffers them while an external
event recording window is open and delivers the whole batch when the window
is stopped.
"""

from enum import Enum
from typing import Any, Callable, Dict, List, Optional
from dataclasses import dataclass, field
from datetime import datetime, timezone
from contextlib import contextmanager
import threading
import uuid

from .exceptions import EventRecordingError
from .logging_config import get_logger


class BusinessEventType(Enum):
    """Business events emitted by the loan ledger"""
    LOAN_TRANSACTION_POSTED = "loan.transaction_posted"
    LOAN_TRANSACTION_REVERSED = "loan.transaction_reversed"
    LOAN_ADJUST_TRANSACTION = "loan.adjust_transaction"
    LOAN_CHARGE_ADDED = "loan.charge_added"
    LOAN_CHARGE_PAYMENT = "loan.charge_payment"
    LOAN_BALANCE_CHANGED = "loan.balance_changed"


@dataclass
class BusinessEvent:
    """Payload of a business event"""
    event_type: BusinessEventType
    entity_type: str
    entity_id: str
    data: Dict[str, Any]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization"""
        return {
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'data': self.data,
            'timestamp': self.timestamp.isoformat(),
            'event_id': self.event_id
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BusinessEvent':
        """Create from dictionary"""
        return cls(
            event_type=BusinessEventType(data['event_type']),
            entity_type=data['entity_type'],
            entity_id=data['entity_id'],
            data=data['data'],
            timestamp=datetime.fromisoformat(data['timestamp']) if isinstance(data['timestamp'], str) else data['timestamp'],
            event_id=data['event_id']
        )


Handler = Callable[[BusinessEvent], None]


class BusinessEventNotifier:
    """
    Publish/subscribe notifier with external event recording

    Recording state is kept per thread so loans processed in parallel get
    independent windows. Handler failures propagate to the caller.
    """

    def __init__(self):
        self._handlers: Dict[BusinessEventType, List[Handler]] = {}
        self._global_handlers: List[Handler] = []
        self._lock = threading.RLock()
        self._recording = threading.local()
        self.logger = get_logger("loan_ledger.events")

    def subscribe(self, event_type: BusinessEventType, handler: Handler) -> None:
        """Subscribe to a specific event type"""
        with self._lock:
            self._handlers.setdefault(event_type, []).append(handler)
            self.logger.debug(f"Subscribed handler {getattr(handler, '__name__', repr(handler))} to {event_type.value}")

    def subscribe_all(self, handler: Handler) -> None:
        """Subscribe to all events"""
        with self._lock:
            self._global_handlers.append(handler)

    def unsubscribe(self, event_type: BusinessEventType, handler: Handler) -> None:
        with self._lock:
            handlers = self._handlers.get(event_type, [])
            if handler in handlers:
                handlers.remove(handler)
            else:
                self.logger.warning(
                    f"Handler {getattr(handler, '__name__', repr(handler))} was not subscribed to {event_type.value}"
                )

    # Recording window

    @property
    def is_recording(self) -> bool:
        return getattr(self._recording, "active", False)

    def _buffer(self) -> List[BusinessEvent]:
        if not hasattr(self._recording, "events"):
            self._recording.events = []
        return self._recording.events

    def start_external_event_recording(self) -> None:
        """
        Open a recording window

        Raises:
            EventRecordingError: If a window is already open on this thread
        """
        if self.is_recording:
            raise EventRecordingError("External event recording already started")
        self._recording.active = True
        self._recording.events = []

    def notify_post_business_event(self, event: BusinessEvent) -> None:
        """Publish an event, or buffer it while a recording window is open"""
        if self.is_recording:
            self._buffer().append(event)
            return
        self._deliver(event)

    def stop_external_event_recording(self) -> List[BusinessEvent]:
        """
        Close the recording window and deliver the buffered batch

        Returns:
            The events recorded in the window, in notification order
        """
        if not self.is_recording:
            raise EventRecordingError("External event recording was not started")
        events = list(self._buffer())
        self._recording.active = False
        self._recording.events = []
        self.logger.debug(f"Delivering {len(events)} recorded business events")
        for event in events:
            self._deliver(event)
        return events

    def reset_event_recording(self) -> None:
        """Discard any open window and its buffered events"""
        self._recording.active = False
        self._recording.events = []

    def _deliver(self, event: BusinessEvent) -> None:
        with self._lock:
            handlers = list(self._handlers.get(event.event_type, [])) + list(self._global_handlers)
        self.logger.debug(f"Publishing event {event.event_type.value} for {event.entity_type}:{event.entity_id}")
        for handler in handlers:
            handler(event)

    def get_handler_count(self, event_type: Optional[BusinessEventType] = None) -> int:
        with self._lock:
            if event_type:
                return len(self._handlers.get(event_type, []))
            return sum(len(handlers) for handlers in self._handlers.values()) + len(self._global_handlers)


@contextmanager
def recording_bracket(notifier: BusinessEventNotifier):
    """
    Scope an external event recording window

    The window is stopped on normal exit. On any exception, including one
    raised while delivering the batch, the window is reset and the
    exception propagates unchanged.
    """
    notifier.start_external_event_recording()
    try:
        yield notifier
        notifier.stop_external_event_recording()
    except BaseException:
        notifier.reset_event_recording()
        raise


class InMemoryEventCollector:
    """Subscriber that keeps every delivered event"""

    def __init__(self):
        self.events: List[BusinessEvent] = []

    def __call__(self, event: BusinessEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: BusinessEventType) -> List[BusinessEvent]:
        return [event for event in self.events if event.event_type == event_type]

    def clear(self) -> None:
        self.events.clear()
