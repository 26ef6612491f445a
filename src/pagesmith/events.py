"""In-process progress bus.

Every progress write is published here once; the poll path reads the latest
snapshot and the stream path reads from a bounded subscription. Subscriptions
drop their oldest undelivered event when full, so a slow reader never blocks
a worker.
"""

from __future__ import annotations

import itertools
import queue
import threading
from collections import OrderedDict
from dataclasses import dataclass, field, replace
from typing import Any

from .utils import utc_now_iso

JOB_KIND = "job"
ARTICLE_KIND = "article"


@dataclass(frozen=True)
class ProgressEvent:
    kind: str
    job_id: str
    status: str
    data: dict[str, Any] = field(default_factory=dict)
    terminal: bool = False
    sequence: int = 0
    emitted_at: str = ""

    def as_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "job_id": self.job_id,
            "status": self.status,
            "terminal": self.terminal,
            "sequence": self.sequence,
            "emitted_at": self.emitted_at,
            **self.data,
        }


class Subscription:
    def __init__(self, bus: "ProgressBus", key: tuple[str, str], maxsize: int) -> None:
        self._bus = bus
        self.key = key
        self._queue: queue.Queue[ProgressEvent] = queue.Queue(maxsize=maxsize)
        self._lock = threading.Lock()
        self.closed = False
        self.dropped = 0
        self._last_sequence = 0

    def push(self, event: ProgressEvent) -> None:
        with self._lock:
            if self.closed or event.sequence <= self._last_sequence:
                return
            self._last_sequence = event.sequence
            while True:
                try:
                    self._queue.put_nowait(event)
                    break
                except queue.Full:
                    try:
                        self._queue.get_nowait()
                        self.dropped += 1
                    except queue.Empty:
                        pass
            if event.terminal:
                self.closed = True

    def get(self, timeout: float) -> ProgressEvent | None:
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    @property
    def drained(self) -> bool:
        return self.closed and self._queue.empty()

    def close(self) -> None:
        with self._lock:
            self.closed = True
        self._bus.unsubscribe(self)


class ProgressBus:
    def __init__(self, max_snapshots: int = 1000) -> None:
        self._lock = threading.Lock()
        self._snapshots: OrderedDict[tuple[str, str], ProgressEvent] = OrderedDict()
        self._subscribers: dict[tuple[str, str], list[Subscription]] = {}
        self._sequence = itertools.count(1)
        self._max_snapshots = max_snapshots

    def publish(self, event: ProgressEvent) -> ProgressEvent:
        key = (event.kind, event.job_id)
        with self._lock:
            stamped = replace(event, sequence=next(self._sequence), emitted_at=utc_now_iso())
            self._snapshots[key] = stamped
            self._snapshots.move_to_end(key)
            while len(self._snapshots) > self._max_snapshots:
                self._snapshots.popitem(last=False)
            subscribers = list(self._subscribers.get(key, []))
            if stamped.terminal:
                self._subscribers.pop(key, None)
        for subscription in subscribers:
            subscription.push(stamped)
        return stamped

    def snapshot(self, kind: str, job_id: str) -> ProgressEvent | None:
        with self._lock:
            return self._snapshots.get((kind, job_id))

    def subscribe(self, kind: str, job_id: str, maxsize: int = 32) -> Subscription:
        key = (kind, job_id)
        subscription = Subscription(self, key, maxsize)
        with self._lock:
            latest = self._snapshots.get(key)
            if latest is None or not latest.terminal:
                self._subscribers.setdefault(key, []).append(subscription)
            if latest is not None:
                subscription.push(latest)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            subscribers = self._subscribers.get(subscription.key)
            if not subscribers:
                return
            if subscription in subscribers:
                subscribers.remove(subscription)
            if not subscribers:
                self._subscribers.pop(subscription.key, None)

    def subscriber_count(self, kind: str, job_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get((kind, job_id), []))


_BUS = ProgressBus()


def get_bus() -> ProgressBus:
    return _BUS
