"""Event sink contract between the engine and its UI collaborator.

The engine never renders anything. It reports through an EventSink; what
the sink does with the events (UI thread hand-off, WebSocket push, queue)
is the collaborator's business.
"""

import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from tcp_sensor_lib.models import SensorReading

logger = logging.getLogger(__name__)


class EventKind(Enum):
    """Signals emitted by the engine."""

    READING = "reading"
    CONNECTION_STATUS = "connection_status"
    POLLING_STATUS = "polling_status"
    ERROR = "error"
    CONNECTION_TIMEOUT = "connection_timeout"


@dataclass(frozen=True)
class SensorEvent:
    """One emitted signal, as carried over an event channel.

    Attributes:
        kind: Which signal this is.
        payload: SensorReading for READING, bool for the status kinds,
                 str for ERROR, None for CONNECTION_TIMEOUT.
        ts: UTC time of emission.
    """

    kind: EventKind
    payload: Any = None
    ts: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        """JSON-friendly form used by the WebSocket stream."""
        data: Dict[str, Any] = {"event": self.kind.value, "ts": self.ts.isoformat()}
        if isinstance(self.payload, SensorReading):
            data["reading"] = self.payload.to_dict()
        elif self.kind in (EventKind.CONNECTION_STATUS, EventKind.POLLING_STATUS):
            data["value"] = bool(self.payload)
        elif self.kind == EventKind.ERROR:
            data["message"] = self.payload
        return data


class EventSink:
    """Receiver for engine events. Override the methods you care about.

    Methods are called from engine threads (receive loop, poller, timers,
    connect thread), never from the caller's thread.
    """

    def on_reading(self, reading: SensorReading) -> None:
        pass

    def on_connection_status_changed(self, connected: bool) -> None:
        pass

    def on_polling_status_changed(self, polling: bool) -> None:
        pass

    def on_error(self, message: str) -> None:
        pass

    def on_connection_timeout(self) -> None:
        pass


class ChannelEventSink(EventSink):
    """Turns every sink call into a SensorEvent passed to publish()."""

    def publish(self, event: SensorEvent) -> None:
        raise NotImplementedError

    def on_reading(self, reading: SensorReading) -> None:
        self.publish(SensorEvent(EventKind.READING, reading))

    def on_connection_status_changed(self, connected: bool) -> None:
        self.publish(SensorEvent(EventKind.CONNECTION_STATUS, connected))

    def on_polling_status_changed(self, polling: bool) -> None:
        self.publish(SensorEvent(EventKind.POLLING_STATUS, polling))

    def on_error(self, message: str) -> None:
        self.publish(SensorEvent(EventKind.ERROR, message))

    def on_connection_timeout(self) -> None:
        self.publish(SensorEvent(EventKind.CONNECTION_TIMEOUT))


class QueueEventSink(ChannelEventSink):
    """Event channel backed by a thread-safe FIFO queue."""

    def __init__(self, maxsize: int = 0) -> None:
        self._queue: "queue.Queue[SensorEvent]" = queue.Queue(maxsize=maxsize)

    def publish(self, event: SensorEvent) -> None:
        self._queue.put(event)

    def get(self, timeout: Optional[float] = None) -> Optional[SensorEvent]:
        """Next event, or None if nothing arrives within timeout."""
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def wait_for(
        self,
        kind: EventKind,
        timeout: float,
        predicate: Optional[Callable[[SensorEvent], bool]] = None,
    ) -> Optional[SensorEvent]:
        """Consume events until one of kind (matching predicate) arrives.

        Events consumed on the way are discarded.

        Returns:
            The matching event, or None on timeout
        """
        start = time.time()
        while time.time() - start < timeout:
            event = self.get(timeout=0.05)
            if event is None:
                continue
            if event.kind == kind and (predicate is None or predicate(event)):
                return event
        return None

    def drain(self) -> List[SensorEvent]:
        """Remove and return everything queued right now."""
        events = []
        while True:
            try:
                events.append(self._queue.get_nowait())
            except queue.Empty:
                return events


class EventHub(ChannelEventSink):
    """Fans events out to subscriber queues and remembers the latest reading.

    Only the most recent reading is kept; there is no history.
    """

    def __init__(self, subscriber_maxsize: int = 1000) -> None:
        self._lock = threading.Lock()
        self._subscribers: List["queue.Queue[SensorEvent]"] = []
        self._subscriber_maxsize = subscriber_maxsize
        self._latest: Optional[SensorReading] = None

    def publish(self, event: SensorEvent) -> None:
        with self._lock:
            if event.kind == EventKind.READING:
                self._latest = event.payload
            subscribers = list(self._subscribers)

        for q in subscribers:
            try:
                q.put_nowait(event)
            except queue.Full:
                logger.warning("Subscriber queue full, dropping event")

    def subscribe(self) -> "queue.Queue[SensorEvent]":
        q: "queue.Queue[SensorEvent]" = queue.Queue(maxsize=self._subscriber_maxsize)
        with self._lock:
            self._subscribers.append(q)
        return q

    def unsubscribe(self, q: "queue.Queue[SensorEvent]") -> None:
        with self._lock:
            if q in self._subscribers:
                self._subscribers.remove(q)

    @property
    def latest(self) -> Optional[SensorReading]:
        with self._lock:
            return self._latest

    def clear_latest(self) -> None:
        with self._lock:
            self._latest = None


class SafeSink(EventSink):
    """Wraps a sink so an exception in a handler never kills an engine thread."""

    def __init__(self, inner: EventSink) -> None:
        self._inner = inner

    def _call(self, name: str, *args: Any) -> None:
        try:
            getattr(self._inner, name)(*args)
        except Exception as e:
            logger.error(f"Event sink {name} raised: {e}", exc_info=True)

    def on_reading(self, reading: SensorReading) -> None:
        self._call("on_reading", reading)

    def on_connection_status_changed(self, connected: bool) -> None:
        self._call("on_connection_status_changed", connected)

    def on_polling_status_changed(self, polling: bool) -> None:
        self._call("on_polling_status_changed", polling)

    def on_error(self, message: str) -> None:
        self._call("on_error", message)

    def on_connection_timeout(self) -> None:
        self._call("on_connection_timeout")


class GatedSink(EventSink):
    """Forwards events only while a gate callable returns True.

    Used by the controller so callbacks from a session it has already
    replaced never reach the shared sink.
    """

    def __init__(self, inner: EventSink, is_open: Callable[[], bool]) -> None:
        self._inner = inner
        self._is_open = is_open

    def _call(self, name: str, *args: Any) -> None:
        if not self._is_open():
            logger.debug(f"Dropping {name} from a superseded session")
            return
        getattr(self._inner, name)(*args)

    def on_reading(self, reading: SensorReading) -> None:
        self._call("on_reading", reading)

    def on_connection_status_changed(self, connected: bool) -> None:
        self._call("on_connection_status_changed", connected)

    def on_polling_status_changed(self, polling: bool) -> None:
        self._call("on_polling_status_changed", polling)

    def on_error(self, message: str) -> None:
        self._call("on_error", message)

    def on_connection_timeout(self) -> None:
        self._call("on_connection_timeout")
