"""
In-memory event bus - 进度事件扇出

Observers (the SSE stream, tests) subscribe with an id and read from a bounded
queue. Publishing never blocks: a full subscriber simply misses the event and
its ``dropped`` counter goes up.
"""

from __future__ import annotations

import json
import queue
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

DEFAULT_BUFFER = 64


def rfc3339_now() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


@dataclass
class Event:
    type: str
    data: Any = None
    timestamp: str = field(default_factory=rfc3339_now)

    def payload(self) -> Dict[str, Any]:
        """data with the publish time; non-dict data is wrapped under ``data``."""
        if isinstance(self.data, dict):
            out = dict(self.data)
        else:
            out = {} if self.data is None else {"data": self.data}
        out.setdefault("timestamp", self.timestamp)
        return out

    def to_json(self) -> str:
        return json.dumps(self.payload(), ensure_ascii=False, default=str)


@dataclass
class Subscriber:
    id: str
    capacity: int = DEFAULT_BUFFER
    delivered: int = 0
    dropped: int = 0
    _queue: "queue.Queue[Optional[Event]]" = field(init=False, repr=False)
    _closed: threading.Event = field(init=False, repr=False)
    _stats_lock: threading.Lock = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._queue = queue.Queue(maxsize=max(1, int(self.capacity)))
        self._closed = threading.Event()
        self._stats_lock = threading.Lock()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def offer(self, event: Event) -> bool:
        if self._closed.is_set():
            return False
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            with self._stats_lock:
                self.dropped += 1
            return False
        with self._stats_lock:
            self.delivered += 1
        return True

    def get(self, timeout: Optional[float] = None) -> Optional[Event]:
        """Next event, or None on timeout / once closed and drained."""
        if self._closed.is_set() and self._queue.empty():
            return None
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def pending(self) -> int:
        return self._queue.qsize()

    def close(self) -> None:
        self._closed.set()
        # wake a blocked reader; a full queue wakes it anyway
        try:
            self._queue.put_nowait(None)
        except queue.Full:
            pass


class EventBus:
    def __init__(self, buffer_size: int = DEFAULT_BUFFER):
        self._lock = threading.Lock()
        self._subscribers: Dict[str, Subscriber] = {}
        self._buffer_size = buffer_size
        self.published = 0

    def subscribe(self, sub_id: str) -> Subscriber:
        sub = Subscriber(id=sub_id, capacity=self._buffer_size)
        with self._lock:
            old = self._subscribers.pop(sub_id, None)
            self._subscribers[sub_id] = sub
        if old is not None:
            old.close()
        return sub

    def unsubscribe(self, sub_id: str) -> None:
        with self._lock:
            sub = self._subscribers.pop(sub_id, None)
        if sub is not None:
            sub.close()

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def publish(self, event_type: str, data: Any = None) -> int:
        """Fan out to every subscriber without blocking. Returns deliveries."""
        event = Event(type=event_type, data=data)
        with self._lock:
            subs = list(self._subscribers.values())
            self.published += 1
        delivered = 0
        for sub in subs:
            if sub.offer(event):
                delivered += 1
        return delivered

    def publish_timestamped(self, event_type: str, data: Optional[Dict[str, Any]] = None) -> int:
        payload = dict(data or {})
        payload["timestamp"] = rfc3339_now()
        return self.publish(event_type, payload)
