import logging
import threading
from collections import deque
from typing import Any

logger = logging.getLogger(__name__)

RESYNC = "resync"


class Subscription:
    """
    Bounded per-subscriber buffer.

    When the buffer overflows it is cleared and replaced by a single resync
    marker, telling the observer to re-fetch full state instead of trusting
    the partial stream.
    """

    def __init__(self, broker: "NotificationBroker", maxsize: int):
        self._broker = broker
        self._maxsize = max(1, maxsize)
        self._items: deque[dict[str, Any]] = deque()
        self._cond = threading.Condition()
        self._closed = False
        self.missed = 0

    def offer(self, message: dict[str, Any]) -> bool:
        with self._cond:
            if self._closed:
                return False
            if len(self._items) >= self._maxsize:
                dropped = sum(1 for item in self._items if item.get("type") != RESYNC)
                self.missed += dropped + 1
                self._items.clear()
                self._items.append({"type": RESYNC, "missed": self.missed})
                self._cond.notify_all()
                return False
            self._items.append(message)
            self._cond.notify_all()
            return True

    def get(self, timeout: float | None = None) -> dict[str, Any] | None:
        """Next message, or None on timeout / after close."""
        with self._cond:
            if not self._items and not self._closed:
                self._cond.wait(timeout)
            if not self._items:
                return None
            message = self._items.popleft()
            if message.get("type") == RESYNC:
                self.missed = 0
            return message

    def pending(self) -> int:
        with self._cond:
            return len(self._items)

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()
        self._broker.unsubscribe(self)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class NotificationBroker:
    """In-process fan-out of newly written attendance events. Best effort only."""

    def __init__(self, buffer_size: int = 100):
        self.buffer_size = max(1, buffer_size)
        self._subs: set[Subscription] = set()
        self._lock = threading.Lock()

    def subscribe(self) -> Subscription:
        sub = Subscription(self, self.buffer_size)
        # Observers start from a full fetch.
        sub.offer({"type": RESYNC, "missed": 0})
        with self._lock:
            self._subs.add(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            self._subs.discard(sub)

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subs)

    def publish(self, event: dict[str, Any]) -> int:
        """Deliver to every subscriber; returns how many accepted without overflow."""
        message = {"type": "attendance", "data": event}
        with self._lock:
            subs = list(self._subs)

        delivered = 0
        for sub in subs:
            if sub.offer(message):
                delivered += 1
            elif not sub.closed:
                logger.warning("Subscriber buffer overflowed; resync requested (missed=%s)", sub.missed)
        return delivered

    def close(self) -> None:
        with self._lock:
            subs = list(self._subs)
        for sub in subs:
            sub.close()
