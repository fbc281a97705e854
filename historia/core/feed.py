# historia/core/feed.py

from __future__ import annotations

import threading
from typing import Callable, Dict, Tuple

from historia.memory.models import Turn
from historia.utils.logging import get_logger

logger = get_logger(__name__)

Snapshot = Tuple[Turn, ...]
Observer = Callable[[Snapshot], None]


class Subscription:
    def __init__(self, feed: "MessageFeed", token: int) -> None:
        self._feed = feed
        self._token = token

    def cancel(self) -> None:
        self._feed._remove(self._token)


class MessageFeed:
    """
    Push-style fan-out of message snapshots. Observers run synchronously on
    the publishing thread; an observer that raises is logged and skipped.
    """

    def __init__(self) -> None:
        self._observers: Dict[int, Observer] = {}
        self._next_token = 0
        self._lock = threading.Lock()

    def subscribe(self, observer: Observer) -> Subscription:
        with self._lock:
            token = self._next_token
            self._next_token += 1
            self._observers[token] = observer
        return Subscription(self, token)

    def _remove(self, token: int) -> None:
        with self._lock:
            self._observers.pop(token, None)

    def __len__(self) -> int:
        return len(self._observers)

    def publish(self, snapshot: Snapshot) -> None:
        with self._lock:
            observers = list(self._observers.values())
        for observer in observers:
            try:
                observer(snapshot)
            except Exception as e:
                logger.error("Message observer failed: %s", e, exc_info=True)
