import hashlib
import threading
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Optional

from core.models import Clock, now_utc


def generate_idempotency_key(checkout_request_id: str, merchant_request_id: str) -> str:
    combined = f"{checkout_request_id}:{merchant_request_id}"
    return hashlib.sha256(combined.encode("utf-8")).hexdigest()


class IdempotencyCache:
    """
    Bounded, thread-safe TTL cache of recently completed webhook keys.

    Process-local fast path only; the persistent idempotency record decides.
    Key -> processed_at. Oldest entries are evicted past `max_size`.
    """

    def __init__(self, ttl: timedelta, max_size: int = 10_000, clock: Clock = now_utc) -> None:
        self._ttl = ttl
        self._max_size = max_size
        self._clock = clock
        self._store: OrderedDict[str, datetime] = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[datetime]:
        with self._lock:
            processed_at = self._store.get(key)
            if processed_at is None:
                return None
            if self._clock() - processed_at >= self._ttl:
                del self._store[key]
                return None
            return processed_at

    def add(self, key: str, processed_at: datetime) -> None:
        with self._lock:
            self._store[key] = processed_at
            self._store.move_to_end(key)
            while len(self._store) > self._max_size:
                self._store.popitem(last=False)

    def discard(self, key: str) -> None:
        with self._lock:
            self._store.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._store.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._store)
