"""Shared state channel between the detection loop and its observers.

One producer (the coordinator) publishes three kinds of message:

- ``StatusSnapshot``: periodic, idempotent. Consecutive statuses waiting in a
  subscriber queue collapse into the latest one.
- ``MotionEvent``: never dropped. Each subscriber queue has a soft bound;
  going past it flags a backlog and emits an ``EventBacklog`` notice, but
  the event is still queued.
- ``DetectionNotice``: lifecycle and error reports, treated like events.

Publishing never blocks. Each subscriber sees messages in publication order.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass
from typing import Deque, Iterator, List, Optional, Union

from common.errors import EventBacklog
from common.time import now_ms

from .events import MotionEvent
from .model import StatusSnapshot

_LOG = logging.getLogger(__name__)


@dataclass(frozen=True)
class DetectionNotice:
    level: str  # "info" | "warning" | "error"
    code: str  # error code from common.errors, or "started", "stopped", ...
    message: str
    ts_ms: float
    terminal: bool = False  # the episode ended because of this
    path: Optional[str] = None  # snapshot path for snapshot notices


Message = Union[StatusSnapshot, MotionEvent, DetectionNotice]


class Subscription:
    """One observer's ordered view of the channel."""

    def __init__(self, name: str, event_queue_max: int = 256) -> None:
        self.name = name
        self._max = max(1, int(event_queue_max))
        self._cond = threading.Condition()
        self._q: Deque[Message] = deque()
        self._pending = 0  # events + notices currently queued
        self._latest_status: Optional[StatusSnapshot] = None
        self._backlogged = False
        self._closed = False

    # ------------------------------------------------------------------ producer side

    def _offer(self, msg: Message) -> bool:
        """Queue ``msg``; return True when this push started a backlog."""
        with self._cond:
            if self._closed:
                return False
            if isinstance(msg, StatusSnapshot):
                self._latest_status = msg
                if self._q and isinstance(self._q[-1], StatusSnapshot):
                    self._q[-1] = msg
                else:
                    self._q.append(msg)
                self._cond.notify_all()
                return False

            self._q.append(msg)
            self._pending += 1
            started = False
            if self._pending > self._max and not self._backlogged:
                self._backlogged = True
                started = True
            self._cond.notify_all()
            return started

    # ------------------------------------------------------------------ consumer side

    @property
    def latest_status(self) -> Optional[StatusSnapshot]:
        with self._cond:
            return self._latest_status

    @property
    def backlogged(self) -> bool:
        with self._cond:
            return self._backlogged

    @property
    def pending(self) -> int:
        with self._cond:
            return self._pending

    def _pop(self) -> Message:
        msg = self._q.popleft()
        if not isinstance(msg, StatusSnapshot):
            self._pending -= 1
            if self._backlogged and self._pending <= self._max // 2:
                self._backlogged = False
        return msg

    def get(self, timeout: Optional[float] = None) -> Optional[Message]:
        """Next message in order, or None on timeout / after close."""
        with self._cond:
            if not self._cond.wait_for(lambda: bool(self._q) or self._closed, timeout):
                return None
            if not self._q:
                return None
            return self._pop()

    def drain(self) -> List[Message]:
        """All queued messages, without blocking."""
        with self._cond:
            out: List[Message] = []
            while self._q:
                out.append(self._pop())
            return out

    def __iter__(self) -> Iterator[Message]:
        while True:
            msg = self.get()
            if msg is None:
                return
            yield msg

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    @property
    def closed(self) -> bool:
        with self._cond:
            return self._closed and not self._q


class StateChannel:
    """Fan-out of coordinator output to any number of subscribers."""

    def __init__(self, event_queue_max: int = 256) -> None:
        self._event_queue_max = int(event_queue_max)
        self._lock = threading.Lock()
        # held for a whole fan-out so every subscriber sees one global order
        self._publish_lock = threading.Lock()
        self._subs: List[Subscription] = []

    def subscribe(self, name: str = "observer") -> Subscription:
        sub = Subscription(name, event_queue_max=self._event_queue_max)
        with self._lock:
            self._subs.append(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            if sub in self._subs:
                self._subs.remove(sub)
        sub.close()

    @property
    def backlogged(self) -> bool:
        with self._lock:
            subs = list(self._subs)
        return any(s.backlogged for s in subs)

    def publish_status(self, status: StatusSnapshot) -> None:
        self._publish(status)

    def publish_event(self, event: MotionEvent) -> None:
        self._publish(event)

    def publish_notice(self, notice: DetectionNotice) -> None:
        self._publish(notice)

    def _publish(self, msg: Message) -> None:
        with self._publish_lock:
            self._fan_out(msg)

    def _fan_out(self, msg: Message) -> None:
        with self._lock:
            subs = list(self._subs)

        if not subs:
            # Nobody listening: statuses are disposable, the rest is logged.
            if isinstance(msg, MotionEvent):
                _LOG.info("Unobserved motion event #%d at %.0f", msg.sequence, msg.ts_ms)
            elif isinstance(msg, DetectionNotice):
                _LOG.info("Unobserved notice [%s] %s", msg.code, msg.message)
            return

        for sub in subs:
            if sub._offer(msg):
                _LOG.warning(
                    "Subscriber %r is lagging: %d undelivered events", sub.name, sub.pending
                )
                sub._offer(
                    DetectionNotice(
                        level="warning",
                        code=EventBacklog.code,
                        message=f"observer {sub.name!r} is behind by {sub.pending} events",
                        ts_ms=now_ms(),
                    )
                )

    def close(self) -> None:
        with self._lock:
            subs = list(self._subs)
            self._subs.clear()
        for sub in subs:
            sub.close()
