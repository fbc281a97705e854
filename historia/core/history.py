# historia/core/history.py
"""
Rolling context window sent with each completion request.

The window holds complete exchanges only: one (user text, reply text) pair
is pushed after a successful reply, and the oldest pair is evicted once the
window holds `max_pairs`.
"""

from __future__ import annotations

import threading
from collections import deque
from typing import Deque, Dict, Iterable, List, Optional, Protocol, Tuple

from historia.utils.logging import get_logger

logger = get_logger(__name__)

Pair = Tuple[str, str]


class RollingHistory:
    def __init__(self, max_pairs: int = 10, pairs: Optional[Iterable[Pair]] = None) -> None:
        self._max_pairs = max(0, max_pairs)
        self._pairs: Deque[Pair] = deque(maxlen=self._max_pairs)
        for user_text, reply_text in pairs or ():
            self._pairs.append((user_text, reply_text))

    @property
    def max_pairs(self) -> int:
        return self._max_pairs

    def __len__(self) -> int:
        return len(self._pairs)

    def push(self, user_text: str, reply_text: str) -> None:
        if self._max_pairs and len(self._pairs) == self._max_pairs:
            logger.debug("Rolling history full (%d pairs); evicting oldest.", self._max_pairs)
        self._pairs.append((user_text, reply_text))

    def pairs(self) -> List[Pair]:
        return list(self._pairs)

    def entries(self) -> List[Tuple[str, str]]:
        """Flattened (role, text) entries, oldest first."""
        out: List[Tuple[str, str]] = []
        for user_text, reply_text in self._pairs:
            out.append(("user", user_text))
            out.append(("assistant", reply_text))
        return out

    def as_messages(self) -> List[Dict[str, str]]:
        return [{"role": role, "content": text} for role, text in self.entries()]

    def clear(self) -> None:
        self._pairs.clear()


class HistoryStore(Protocol):
    """Keeps rolling-history pairs between sessions, keyed per conversation."""

    def get(self, key: str) -> List[Pair]:
        ...

    def put(self, key: str, pairs: List[Pair]) -> None:
        ...

    def drop(self, key: str) -> None:
        ...


class InMemoryHistoryStore:
    def __init__(self) -> None:
        self._data: Dict[str, List[Pair]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> List[Pair]:
        with self._lock:
            return list(self._data.get(key, []))

    def put(self, key: str, pairs: List[Pair]) -> None:
        with self._lock:
            self._data[key] = list(pairs)

    def drop(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._data)
