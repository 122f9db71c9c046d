"""
Observability sink.

Components emit structured events for every state transition, submission,
challenge outcome and adjustment. The sink keeps a bounded in-memory journal
and fans events out to subscribers (metrics exporters, the SQL journal, ...).
A failing subscriber is logged and skipped; it never breaks the emitter.
"""

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional

logger = logging.getLogger(__name__)


# Event kinds
SUBMISSION_ACCEPTED = "submission_accepted"
SUBMISSION_REJECTED = "submission_rejected"
TASK_TRANSITION = "task_transition"
CHALLENGE_RAISED = "challenge_raised"
CHALLENGE_RESOLVED = "challenge_resolved"
OPERATOR_SLASHED = "operator_slashed"
POSITION_ADJUSTED = "position_adjusted"
YIELD_FINALIZED = "yield_finalized"


@dataclass
class Event:
    kind: str
    fields: Dict[str, Any]
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {"kind": self.kind, "timestamp": self.timestamp, **self.fields}


class EventSink:
    """
    Usage:
        events = EventSink()
        events.subscribe(lambda e: print(e.to_dict()))
        events.emit(TASK_TRANSITION, task_id=1, old="created", new="response_open")
    """

    def __init__(self, max_events: int = 1000, clock: Callable[[], float] = time.time):
        self._events: Deque[Event] = deque(maxlen=max_events)
        self._subscribers: List[Callable[[Event], None]] = []
        self._lock = threading.Lock()
        self.clock = clock

    def subscribe(self, callback: Callable[[Event], None]) -> None:
        with self._lock:
            self._subscribers.append(callback)

    def emit(self, kind: str, **fields) -> Event:
        event = Event(kind=kind, fields=fields, timestamp=self.clock())
        with self._lock:
            self._events.append(event)
            subscribers = list(self._subscribers)

        logger.debug(f"event {kind}: {fields}")

        for callback in subscribers:
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Event subscriber failed for {kind}: {e}")
        return event

    def recent(self, kind: Optional[str] = None, limit: int = 100) -> List[Event]:
        with self._lock:
            events = [e for e in self._events if kind is None or e.kind == kind]
        return events[-limit:]

    def count(self, kind: Optional[str] = None) -> int:
        with self._lock:
            return sum(1 for e in self._events if kind is None or e.kind == kind)
