"""
Broadcast Channel
=================

In-process publish/subscribe channel shared by the arbiter and the
monitored nodes.

Nothing is delivered asynchronously: publishers enqueue, and queued
messages and due timers are dispatched from spin_once(), on the caller's
thread. This keeps every node record single-writer.

For distributed setups, the same interface can be backed by a network
transport (ROS topics, Redis, NATS) as long as delivery is funnelled
through spin_once().
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

SAFETY_TOPIC = "safety"
BOND_TOPIC = "bond"


class SystemClock:
    """Monotonic wall clock."""

    def now(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float) -> None:
        if seconds > 0:
            time.sleep(seconds)


@dataclass(eq=False)
class Subscription:
    """Handle returned by BroadcastChannel.subscribe()."""
    topic: str
    callback: Callable[[Any], None]
    channel: Optional[BroadcastChannel] = field(default=None, repr=False)
    active: bool = True

    def cancel(self) -> None:
        if self.active and self.channel is not None:
            self.channel._remove_subscription(self)
        self.active = False


@dataclass(eq=False)
class Timer:
    """Periodic callback fired from BroadcastChannel.spin_once()."""
    period: float
    callback: Callable[[], None]
    next_due: float
    active: bool = True

    def cancel(self) -> None:
        self.active = False


class BroadcastChannel:
    """
    Topic-based broadcast channel with a cooperative scheduling point.

    Every subscriber of a topic receives every message published on it,
    including messages it published itself.
    """

    def __init__(self, clock: Optional[Any] = None) -> None:
        self._lock = threading.RLock()
        self.clock = clock or SystemClock()

        self._subscribers: Dict[str, List[Subscription]] = {}
        self._queue: Deque[Tuple[str, Any]] = deque()
        self._timers: List[Timer] = []

        # Stats
        self._published = 0
        self._delivered = 0
        self._spins = 0

    # ─────────────────────────────────────────────────────────────────
    # Clock
    # ─────────────────────────────────────────────────────────────────

    def now(self) -> float:
        return self.clock.now()

    def sleep(self, seconds: float) -> None:
        self.clock.sleep(seconds)

    # ─────────────────────────────────────────────────────────────────
    # Publish / subscribe
    # ─────────────────────────────────────────────────────────────────

    def publish(self, topic: str, message: Any) -> None:
        """Queue a message for every subscriber of the topic."""
        with self._lock:
            self._queue.append((topic, message))
            self._published += 1
        logger.debug(f"Queued on {topic}: {message!r}")

    def subscribe(self, topic: str, callback: Callable[[Any], None]) -> Subscription:
        """Register a callback for a topic."""
        sub = Subscription(topic=topic, callback=callback, channel=self)
        with self._lock:
            self._subscribers.setdefault(topic, []).append(sub)
        return sub

    def _remove_subscription(self, sub: Subscription) -> None:
        with self._lock:
            subs = self._subscribers.get(sub.topic, [])
            if sub in subs:
                subs.remove(sub)

    def subscriber_count(self, topic: str) -> int:
        with self._lock:
            return len(self._subscribers.get(topic, []))

    # ─────────────────────────────────────────────────────────────────
    # Timers
    # ─────────────────────────────────────────────────────────────────

    def create_timer(
        self,
        period: float,
        callback: Callable[[], None],
    ) -> Timer:
        """Register a periodic callback. First fire is one period from now."""
        if period <= 0:
            raise ValueError(f"Timer period must be positive, got {period}")
        timer = Timer(
            period=period,
            callback=callback,
            next_due=self.now() + period,
        )
        with self._lock:
            self._timers.append(timer)
        return timer

    # ─────────────────────────────────────────────────────────────────
    # Dispatch
    # ─────────────────────────────────────────────────────────────────

    def spin_once(self) -> int:
        """
        Fire due timers, then deliver every queued message.

        Messages published by callbacks during this call are delivered
        before it returns. Returns the number of deliveries made.
        Exceptions raised by callbacks propagate to the caller.
        """
        self._fire_timers()

        delivered = 0
        while True:
            with self._lock:
                if not self._queue:
                    break
                topic, message = self._queue.popleft()
                subs = [s for s in self._subscribers.get(topic, []) if s.active]

            for sub in subs:
                if sub.active:
                    sub.callback(message)
                    delivered += 1

        with self._lock:
            self._delivered += delivered
            self._spins += 1
        return delivered

    def _fire_timers(self) -> None:
        now = self.now()
        with self._lock:
            self._timers = [t for t in self._timers if t.active]
            due = [t for t in self._timers if t.next_due <= now]

        for timer in due:
            if not timer.active:
                continue
            # Skip missed periods instead of bursting
            while timer.next_due <= now:
                timer.next_due += timer.period
            timer.callback()

    def pending(self) -> int:
        """Number of queued, undelivered messages."""
        with self._lock:
            return len(self._queue)

    def get_stats(self) -> Dict[str, Any]:
        """Get channel statistics."""
        with self._lock:
            return {
                "published": self._published,
                "delivered": self._delivered,
                "pending": len(self._queue),
                "spins": self._spins,
                "timers": len([t for t in self._timers if t.active]),
                "topics": {t: len(s) for t, s in self._subscribers.items()},
            }
