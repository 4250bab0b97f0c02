"""
In-process change notification keyed by user id.

Publishers never wait on or fail because of subscribers.
"""
import threading
from enum import Enum
from typing import Any, Callable
from uuid import UUID

import structlog

logger = structlog.get_logger(__name__)


class ChangeEvent(str, Enum):
    BALANCE = "balance"
    TRANSACTION = "transaction"
    REFERRAL = "referral"


Subscriber = Callable[[ChangeEvent, dict[str, Any]], None]


class RealtimeNotifier:
    def __init__(self):
        self._subscribers: dict[UUID, list[Subscriber]] = {}
        self._lock = threading.Lock()

    def subscribe(self, user_id: UUID, callback: Subscriber) -> Callable[[], None]:
        with self._lock:
            self._subscribers.setdefault(user_id, []).append(callback)

        def unsubscribe() -> None:
            with self._lock:
                callbacks = self._subscribers.get(user_id, [])
                if callback in callbacks:
                    callbacks.remove(callback)
                if not callbacks:
                    self._subscribers.pop(user_id, None)

        return unsubscribe

    def unsubscribe_all(self, user_id: UUID) -> None:
        with self._lock:
            self._subscribers.pop(user_id, None)

    def publish(self, user_id: UUID, event: ChangeEvent, payload: dict[str, Any]) -> int:
        with self._lock:
            callbacks = list(self._subscribers.get(user_id, []))

        delivered = 0
        for callback in callbacks:
            try:
                callback(event, payload)
                delivered += 1
            except Exception as e:
                logger.warning(
                    "realtime_delivery_failed", user_id=str(user_id), event_type=event.value, error=str(e)
                )
        return delivered

    def subscriber_count(self, user_id: UUID) -> int:
        with self._lock:
            return len(self._subscribers.get(user_id, []))
