import threading
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Callable, Deque, List, Optional

from .config import EVENT_LOG_SIZE
from .logger import setup_logger
from .models import AttendanceRecord, Person


@dataclass(frozen=True)
class FeedbackEvent:
    at: datetime

    @property
    def kind(self) -> str:
        return self.__class__.__name__


@dataclass(frozen=True)
class PresenceDismissedIdle(FeedbackEvent):
    pass


@dataclass(frozen=True)
class PresenceBecameIdle(FeedbackEvent):
    pass


@dataclass(frozen=True)
class IdentityShown(FeedbackEvent):
    person: Person


@dataclass(frozen=True)
class IdentityCleared(FeedbackEvent):
    person: Optional[Person] = None


@dataclass(frozen=True)
class AttendanceRecorded(FeedbackEvent):
    record: AttendanceRecord


@dataclass(frozen=True)
class AttendanceAlreadyPresent(FeedbackEvent):
    person: Person


@dataclass(frozen=True)
class StorageErrorReported(FeedbackEvent):
    person: Person
    message: str


@dataclass(frozen=True)
class SessionHalted(FeedbackEvent):
    message: str


Subscriber = Callable[[FeedbackEvent], None]

SUCCESS_CUE = "success"
ERROR_CUE = "error"


def cue_for(event: FeedbackEvent) -> Optional[str]:
    """Audio cue the kiosk should play for an event, if any."""
    if isinstance(event, AttendanceRecorded):
        return SUCCESS_CUE
    if isinstance(event, (AttendanceAlreadyPresent, StorageErrorReported)):
        return ERROR_CUE
    return None


def event_to_dict(event: FeedbackEvent) -> dict:
    payload = {"kind": event.kind, "at": event.at.isoformat(), "cue": cue_for(event)}
    for key, value in asdict(event).items():
        if key == "at":
            continue
        payload[key] = _jsonable(value)
    return payload


def _jsonable(value):
    if isinstance(value, dict):
        return {key: _jsonable(item) for key, item in value.items() if key != "thumbnail"}
    if isinstance(value, datetime):
        return value.isoformat()
    if hasattr(value, "value"):
        return value.value
    return value


class FeedbackBus:
    """Synchronous, ordered fan-out of feedback events to render sinks."""

    def __init__(self):
        self.subscribers: List[Subscriber] = []
        self.logger = setup_logger(self.__class__.__name__)

    def subscribe(self, subscriber: Subscriber) -> None:
        self.subscribers.append(subscriber)

    def unsubscribe(self, subscriber: Subscriber) -> None:
        if subscriber in self.subscribers:
            self.subscribers.remove(subscriber)

    def emit(self, event: FeedbackEvent) -> None:
        for subscriber in list(self.subscribers):
            try:
                subscriber(event)
            except Exception:
                self.logger.exception("Feedback subscriber failed on %s", event.kind)


@dataclass
class LoggedEvent:
    seq: int
    event: FeedbackEvent


@dataclass
class EventLog:
    """Bounded, sequence-numbered event history for polling clients."""

    maxlen: int = EVENT_LOG_SIZE
    _items: Deque[LoggedEvent] = field(init=False)
    _next_seq: int = field(init=False, default=1)
    _lock: threading.Lock = field(init=False, default_factory=threading.Lock)

    def __post_init__(self) -> None:
        self._items = deque(maxlen=max(1, self.maxlen))

    def __call__(self, event: FeedbackEvent) -> None:
        with self._lock:
            self._items.append(LoggedEvent(seq=self._next_seq, event=event))
            self._next_seq += 1

    def since(self, after: int = 0) -> List[LoggedEvent]:
        with self._lock:
            return [item for item in self._items if item.seq > after]

    @property
    def last_seq(self) -> int:
        with self._lock:
            return self._next_seq - 1
