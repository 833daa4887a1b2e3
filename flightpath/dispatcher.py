"""Routes received MAVLink frames to per-message-type subscribers."""

from __future__ import annotations

import threading
from collections import deque
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass
from typing import Generic, Optional, TypeVar, Union

from flightpath.converters import (
    GpsRawInt,
    GpsRawIntMessage,
    Heartbeat,
    HeartbeatMessage,
    MavlinkFrame,
    gps_raw_int_to_proto,
    heartbeat_to_proto,
)
from flightpath.node import RawFrame

SUBSCRIBER_CAPACITY = 10
_JOIN_TIMEOUT = 2.0

E = TypeVar("E")


@dataclass(frozen=True)
class HeartbeatEvent:
    """A converted HEARTBEAT with the IDs of the system that sent it."""

    system_id: int
    component_id: int
    heartbeat: Heartbeat


@dataclass(frozen=True)
class GpsRawIntEvent:
    """A converted GPS_RAW_INT with the IDs of the system that sent it."""

    system_id: int
    component_id: int
    gps_raw_int: GpsRawInt


class SubscriptionClosed(Exception):
    """Raised by Subscription.get once the subscription is closed and drained."""


class Subscription(Generic[E]):
    """A bounded buffer of events; events arriving while it is full are dropped."""

    def __init__(
        self,
        capacity: int = SUBSCRIBER_CAPACITY,
        on_close: Optional[Callable[[Subscription], None]] = None,
    ) -> None:
        self._items: deque[E] = deque()
        self._capacity = capacity
        self._cond = threading.Condition()
        self._closed = False
        self._on_close = on_close

    @property
    def closed(self) -> bool:
        """Whether no further events will arrive."""
        with self._cond:
            return self._closed

    def get(self, timeout: Optional[float] = None) -> E:
        """Return the next event.

        Raises TimeoutError if none arrives within ``timeout`` seconds and
        SubscriptionClosed once the subscription is closed and empty.
        """
        with self._cond:
            if not self._cond.wait_for(lambda: self._items or self._closed, timeout):
                raise TimeoutError("no event within timeout")
            if self._items:
                return self._items.popleft()
            raise SubscriptionClosed("subscription is closed")

    def close(self) -> None:
        """Stop receiving events; buffered events can still be read."""
        if self._on_close is not None:
            self._on_close(self)
        self._finish()

    def __iter__(self) -> Iterator[E]:
        while True:
            try:
                yield self.get()
            except SubscriptionClosed:
                return

    def __enter__(self) -> Subscription[E]:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _offer(self, event: E) -> bool:
        with self._cond:
            if self._closed or len(self._items) >= self._capacity:
                return False
            self._items.append(event)
            self._cond.notify_all()
            return True

    def _finish(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()


class MessageDispatcher:
    """Reads frames from an event source and fans them out to subscribers."""

    def __init__(self, events: Optional[Iterable[Union[RawFrame, MavlinkFrame]]] = None) -> None:
        self._events = events
        self._lock = threading.Lock()
        self._heartbeat_subscribers: list[Subscription[HeartbeatEvent]] = []
        self._gps_raw_int_subscribers: list[Subscription[GpsRawIntEvent]] = []
        self._stopping = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        """Start reading the event source on a background thread."""
        if self._events is None:
            raise RuntimeError("dispatcher has no event source")
        if self._thread is not None:
            raise RuntimeError("dispatcher already started")
        self._thread = threading.Thread(target=self._run, daemon=True)
        self._thread.start()

    def stop(self) -> None:
        """Stop reading and close every subscription."""
        self._stopping.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=_JOIN_TIMEOUT)
        with self._lock:
            subscriptions: list[Subscription] = [
                *self._heartbeat_subscribers,
                *self._gps_raw_int_subscribers,
            ]
            self._heartbeat_subscribers.clear()
            self._gps_raw_int_subscribers.clear()
        for subscription in subscriptions:
            subscription._finish()

    def subscribe_heartbeat(self) -> Subscription[HeartbeatEvent]:
        """Return a subscription receiving HEARTBEAT events."""
        return self._subscribe(self._heartbeat_subscribers)

    def subscribe_gps_raw_int(self) -> Subscription[GpsRawIntEvent]:
        """Return a subscription receiving GPS_RAW_INT events."""
        return self._subscribe(self._gps_raw_int_subscribers)

    def unsubscribe(self, subscription: Subscription) -> None:
        """Remove and close a subscription; unknown subscriptions are ignored."""
        found = False
        with self._lock:
            for subscribers in (self._heartbeat_subscribers, self._gps_raw_int_subscribers):
                if any(s is subscription for s in subscribers):
                    subscribers.remove(subscription)
                    found = True
                    break
        if found:
            subscription._finish()

    def dispatch(self, frame: Union[RawFrame, MavlinkFrame]) -> int:
        """Deliver one frame; return how many subscribers accepted it."""
        if isinstance(frame, RawFrame):
            frame = MavlinkFrame.from_raw(frame)
        match frame.message:
            case HeartbeatMessage() as msg:
                event = HeartbeatEvent(frame.system_id, frame.component_id, heartbeat_to_proto(msg))
                subscribers: list[Subscription] = self._heartbeat_subscribers
            case GpsRawIntMessage() as msg:
                event = GpsRawIntEvent(frame.system_id, frame.component_id, gps_raw_int_to_proto(msg))
                subscribers = self._gps_raw_int_subscribers
            case _:
                return 0
        with self._lock:
            snapshot = list(subscribers)
        return sum(subscription._offer(event) for subscription in snapshot)

    def _subscribe(self, subscribers: list) -> Subscription:
        subscription: Subscription = Subscription(on_close=self.unsubscribe)
        with self._lock:
            subscribers.append(subscription)
        return subscription

    def _run(self) -> None:
        for frame in self._events:
            if self._stopping.is_set():
                return
            self.dispatch(frame)