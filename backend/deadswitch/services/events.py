"""In-process publish/subscribe for condition and schedule changes.

Fan-out only. Delivery order is not guaranteed and subscribers may see the same
change twice (an optimistic event followed by the confirmed one), so reactions
should be idempotent and rate limited (see ``RateLimitedCallback``).
"""
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from deadswitch.core.clock import Clock, utcnow

logger = logging.getLogger(__name__)


class ConditionAction(str, Enum):
    ARM = "arm"
    DISARM = "disarm"
    CHECK_IN = "check-in"
    UPDATE = "update"


@dataclass(frozen=True)
class ConditionEvent:
    action: ConditionAction
    condition_id: int | None = None
    message_id: int | None = None
    user_id: str | None = None
    # True: UI may update right away, confirmation follows; False: committed server state
    optimistic: bool = False

    def to_payload(self) -> dict:
        return {
            "type": "condition_event",
            "data": {
                "action": self.action.value,
                "condition_id": self.condition_id,
                "message_id": self.message_id,
                "optimistic": self.optimistic,
            },
        }


@dataclass(frozen=True)
class EventFilter:
    """Matches events for one condition, one message, or (both None) everything."""
    condition_id: int | None = None
    message_id: int | None = None

    def matches(self, event: ConditionEvent) -> bool:
        if self.condition_id is not None and event.condition_id != self.condition_id:
            return False
        if self.message_id is not None and event.message_id != self.message_id:
            return False
        return True


GLOBAL = EventFilter()

Callback = Callable[[ConditionEvent], None]


class Subscription:
    def __init__(self, notifier: "EventNotifier", event_filter: EventFilter, callback: Callback):
        self._notifier = notifier
        self.filter = event_filter
        self.callback = callback

    def unsubscribe(self) -> None:
        self._notifier._remove(self)


class EventNotifier:
    def __init__(self) -> None:
        self._subscriptions: list[Subscription] = []
        self._lock = threading.Lock()

    def subscribe(self, event_filter: EventFilter, callback: Callback) -> Subscription:
        sub = Subscription(self, event_filter, callback)
        with self._lock:
            self._subscriptions.append(sub)
        return sub

    def _remove(self, sub: Subscription) -> None:
        with self._lock:
            if sub in self._subscriptions:
                self._subscriptions.remove(sub)

    def publish(self, event: ConditionEvent) -> int:
        """Deliver ``event`` to matching subscribers; returns how many were called."""
        with self._lock:
            targets = [s for s in self._subscriptions if s.filter.matches(event)]
        delivered = 0
        for sub in targets:
            try:
                sub.callback(event)
                delivered += 1
            except Exception:
                # one broken subscriber must not starve the rest
                logger.exception(f"Event subscriber failed for {event.action.value} condition={event.condition_id}")
        return delivered


class RateLimitedCallback:
    """Wrap a subscriber so it reacts at most once per quiet period.

    Events arriving inside the quiet period are dropped; the wrapped callback
    is expected to re-read current state rather than rely on the event body.
    """

    def __init__(self, callback: Callback, min_interval_seconds: float, clock: Clock = utcnow):
        self.callback = callback
        self.min_interval_seconds = min_interval_seconds
        self.clock = clock
        self._last_fired = None
        self.dropped = 0

    def __call__(self, event: ConditionEvent) -> None:
        now = self.clock()
        if self._last_fired is not None and (now - self._last_fired).total_seconds() < self.min_interval_seconds:
            self.dropped += 1
            return
        self._last_fired = now
        self.callback(event)
