"""
Event Bus
=========

Typed notifications broadcast by the print service.

Every event is a frozen dataclass. Consumers subscribe by class
(``bus.subscribe(JobCompleted, callback)``) or read an asyncio queue
from ``bus.stream(...)``. Subscribing to ``Event`` receives everything.

Connection events:
    PrinterDiscovered, PrinterConnected, PrinterDisconnected,
    ConnectionFailed, ConnectionStatusChanged, PermissionRequired

Job events:
    JobStateChanged, JobCompleted, BatchStateChanged, BatchCompleted

Health events:
    HealthChecked, ReconnectionAttempted, ReconnectionAbandoned

Queue events:
    QueueStatisticsUpdated, QueuePaused, QueueResumed

Errors:
    ErrorClassified
"""

import asyncio
import inspect
import logging
from collections import deque
from datetime import datetime
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple, Type

from .models import (
    Printer, ConnectionStatus, JobState, BatchState,
    PrintResult, HealthCheckResult, ReconnectionResult,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Event:
    timestamp: datetime = field(default_factory=datetime.now, kw_only=True)

    @property
    def name(self) -> str:
        return type(self).__name__

    def to_dict(self) -> Dict[str, Any]:
        """Flat JSON-friendly view of the event."""
        data = {'event': self.name}
        for key in self.__dataclass_fields__:
            value = getattr(self, key)
            if hasattr(value, 'to_dict'):
                value = value.to_dict()
            elif hasattr(value, 'value'):
                value = value.value
            elif isinstance(value, datetime):
                value = value.isoformat()
            data[key] = value
        return data


# =============================================================================
# Connection Events
# =============================================================================

@dataclass(frozen=True)
class PrinterDiscovered(Event):
    printer: Printer


@dataclass(frozen=True)
class PrinterConnected(Event):
    printer_id: str
    connection_id: str
    connect_duration_ms: float = 0.0


@dataclass(frozen=True)
class PrinterDisconnected(Event):
    printer_id: str
    connection_id: str
    reason: str = "closed"


@dataclass(frozen=True)
class ConnectionFailed(Event):
    printer_id: str
    connection_id: str
    message: str
    code: Optional[str] = None


@dataclass(frozen=True)
class ConnectionStatusChanged(Event):
    printer_id: str
    connection_id: str
    status: ConnectionStatus


@dataclass(frozen=True)
class PermissionRequired(Event):
    message: str
    transports: Tuple[str, ...] = ()


# =============================================================================
# Job Events
# =============================================================================

@dataclass(frozen=True)
class JobStateChanged(Event):
    job_id: str
    state: JobState
    printer_id: Optional[str] = None


@dataclass(frozen=True)
class JobCompleted(Event):
    job_id: str
    result: PrintResult


@dataclass(frozen=True)
class BatchStateChanged(Event):
    batch_id: str
    state: BatchState
    job_count: int


@dataclass(frozen=True)
class BatchCompleted(Event):
    batch_id: str
    result: PrintResult


# =============================================================================
# Health Events
# =============================================================================

@dataclass(frozen=True)
class HealthChecked(Event):
    result: HealthCheckResult


@dataclass(frozen=True)
class ReconnectionAttempted(Event):
    result: ReconnectionResult


@dataclass(frozen=True)
class ReconnectionAbandoned(Event):
    connection_id: str
    attempts: int


# =============================================================================
# Queue Events
# =============================================================================

@dataclass(frozen=True)
class QueueStatisticsUpdated(Event):
    statistics: Any  # QueueStatistics


@dataclass(frozen=True)
class QueuePaused(Event):
    reason: str
    error_code: Optional[str] = None


@dataclass(frozen=True)
class QueueResumed(Event):
    released_jobs: int = 0


# =============================================================================
# Errors
# =============================================================================

@dataclass(frozen=True)
class ErrorClassified(Event):
    error: Any  # BrotherError


# =============================================================================
# Bus
# =============================================================================

Callback = Callable[[Event], Any]


class EventBus:
    """
    In-process publish/subscribe.

    Callbacks run synchronously inside ``publish``; coroutine callbacks are
    scheduled as tasks on the running loop. A failing subscriber is logged
    and never breaks the publisher.
    """

    def __init__(self, history_size: int = 200):
        self._subscribers: List[Tuple[Type[Event], Callback]] = []
        self._streams: List[Tuple[Tuple[Type[Event], ...], asyncio.Queue]] = []
        self._history: Deque[Event] = deque(maxlen=history_size)
        self._tasks = set()

    def subscribe(self, event_type: Type[Event], callback: Callback) -> Callable[[], None]:
        """Register a callback. Returns a function that unsubscribes it."""
        entry = (event_type, callback)
        self._subscribers.append(entry)

        def unsubscribe():
            if entry in self._subscribers:
                self._subscribers.remove(entry)

        return unsubscribe

    def stream(self, *event_types: Type[Event], maxsize: int = 100) -> asyncio.Queue:
        """Queue receiving matching events. The oldest event is dropped when full."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._streams.append((event_types or (Event,), queue))
        return queue

    def close_stream(self, queue: asyncio.Queue):
        self._streams = [(types, q) for types, q in self._streams if q is not queue]

    def publish(self, event: Event):
        self._history.append(event)
        logger.debug(f"[Events] {event.name}")

        for event_type, callback in list(self._subscribers):
            if not isinstance(event, event_type):
                continue
            try:
                outcome = callback(event)
                if inspect.isawaitable(outcome):
                    task = asyncio.ensure_future(outcome)
                    self._tasks.add(task)
                    task.add_done_callback(self._task_done)
            except Exception:
                logger.exception(f"[Events] Subscriber failed on {event.name}")

        for event_types, queue in self._streams:
            if not isinstance(event, event_types):
                continue
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(event)

    def _task_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"[Events] Async subscriber failed: {task.exception()!r}")

    def recent(self, limit: int = 50, event_type: Type[Event] = Event) -> List[Event]:
        """Most recent events, oldest first."""
        matching = [event for event in self._history if isinstance(event, event_type)]
        return matching[-limit:]
