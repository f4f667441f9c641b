"""
In-memory idempotency cache for billing provider webhook event ids.

Process-local and lost on restart; the provider's own event log is the
durable record and redelivers at least once. Eviction is lazy: a sweep runs
every ``sweep_every`` inserts, there is no background timer.
"""
import logging
import threading
import time
from collections import OrderedDict
from typing import Callable, Optional

from app.core.config import get_settings

logger = logging.getLogger(__name__)


class WebhookIdempotencyCache:

    def __init__(
        self,
        max_size: int = 1000,
        ttl_seconds: float = 24 * 60 * 60,
        sweep_every: int = 100,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_size = max_size
        self.ttl_seconds = ttl_seconds
        self.sweep_every = max(1, sweep_every)
        self._clock = clock
        self._entries: "OrderedDict[str, float]" = OrderedDict()
        self._inserts = 0
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, event_id: str) -> bool:
        with self._lock:
            return self._is_fresh(event_id, self._clock())

    def _is_fresh(self, event_id: str, now: float) -> bool:
        seen_at = self._entries.get(event_id)
        return seen_at is not None and now - seen_at <= self.ttl_seconds

    def check_and_mark(self, event_id: str) -> bool:
        """Record ``event_id``. Returns False if it was already recorded."""
        with self._lock:
            now = self._clock()
            if self._is_fresh(event_id, now):
                return False
            self._entries[event_id] = now
            self._entries.move_to_end(event_id)
            self._inserts += 1
            if self._inserts % self.sweep_every == 0:
                self._sweep(now)
            return True

    def forget(self, event_id: str) -> None:
        """Drop ``event_id`` so a redelivery of a failed event is processed."""
        with self._lock:
            self._entries.pop(event_id, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._inserts = 0

    def sweep(self) -> int:
        with self._lock:
            return self._sweep(self._clock())

    def _sweep(self, now: float) -> int:
        expired = [event_id for event_id, seen_at in self._entries.items() if now - seen_at > self.ttl_seconds]
        for event_id in expired:
            del self._entries[event_id]

        # Oldest first
        overflow = len(self._entries) - self.max_size
        for _ in range(max(0, overflow)):
            self._entries.popitem(last=False)

        removed = len(expired) + max(0, overflow)
        if removed:
            logger.debug("Webhook cache sweep removed %d entries", removed)
        return removed


_cache: Optional[WebhookIdempotencyCache] = None


def get_webhook_cache() -> WebhookIdempotencyCache:
    global _cache
    if _cache is None:
        settings = get_settings()
        _cache = WebhookIdempotencyCache(
            max_size=settings.WEBHOOK_CACHE_MAX_SIZE,
            ttl_seconds=settings.WEBHOOK_CACHE_TTL_SECONDS,
            sweep_every=settings.WEBHOOK_CACHE_SWEEP_EVERY,
        )
    return _cache
