"""Events delivered to the consumer of a syncing client

A client in sync mode hands the caller an EventChannel. The client's decode
thread pushes "add"/"remove" events into it; when the sync session ends the
client closes it with a final synthetic "stop" event.
"""

import queue
import threading
from collections import deque
from dataclasses import dataclass
from typing import Deque, Iterator, Optional

from pluggable_discovery.port import Port


EVENT_STOP = "stop"


@dataclass
class Event:
    """A port change (or the end of the stream) seen by one client"""
    type: str
    port: Optional[Port]
    discovery_id: str

    @classmethod
    def stop(cls, discovery_id: str) -> "Event":
        return cls(EVENT_STOP, None, discovery_id)

    def __str__(self) -> str:
        if self.port is None:
            return f"{self.discovery_id}: {self.type}"
        return f"{self.discovery_id}: {self.type} {self.port} ({self.port.protocol})"


class EventChannelClosed(Exception):
    """The channel was closed and every event has been consumed"""

    def __init__(self):
        super().__init__("event channel closed")


class EventChannel:
    """Bounded FIFO of events that can be closed exactly once.

    put() blocks while the channel is full, which is how a slow consumer
    applies back-pressure on the discovery. close() never blocks: the
    terminal event is appended past the capacity so the closing side cannot
    deadlock against a consumer that stopped reading.
    """

    def __init__(self, capacity: int):
        if capacity < 1:
            raise ValueError(f"capacity must be at least 1, got {capacity}")
        self.capacity = capacity
        self._items: Deque[Event] = deque()
        self._closed = False
        self._cond = threading.Condition()

    @property
    def closed(self) -> bool:
        with self._cond:
            return self._closed

    def put(self, event: Event) -> bool:
        """Append an event, waiting for room

        Returns:
            False if the channel was closed (the event is dropped)
        """
        with self._cond:
            self._cond.wait_for(lambda: self._closed or len(self._items) < self.capacity)
            if self._closed:
                return False
            self._items.append(event)
            self._cond.notify_all()
            return True

    def close(self, final: Event) -> bool:
        """Append the terminal event and close the channel

        Returns:
            False if the channel was already closed
        """
        with self._cond:
            if self._closed:
                return False
            self._items.append(final)
            self._closed = True
            self._cond.notify_all()
            return True

    def get(self, timeout: Optional[float] = None) -> Event:
        """Take the next event

        Raises:
            queue.Empty: If nothing arrived within timeout
            EventChannelClosed: If the channel is closed and drained
        """
        with self._cond:
            if not self._cond.wait_for(lambda: self._items or self._closed, timeout):
                raise queue.Empty
            if self._items:
                event = self._items.popleft()
                self._cond.notify_all()
                return event
            raise EventChannelClosed()

    def __iter__(self) -> Iterator[Event]:
        while True:
            try:
                yield self.get()
            except EventChannelClosed:
                return

    def __len__(self) -> int:
        with self._cond:
            return len(self._items)
