"""Short-lived system notices (connection, auth and error messages)."""

from collections import deque
from typing import Deque, List

MAX_NOTICES = 5


class SystemNotices:
    """Ordered notices capped at ``limit``; the oldest is evicted first."""

    def __init__(self, limit: int = MAX_NOTICES):
        self._items: Deque[str] = deque(maxlen=limit)

    def add(self, text: str) -> None:
        self._items.append(text)

    def clear(self) -> None:
        self._items.clear()

    def snapshot(self) -> List[str]:
        return list(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self):
        return iter(list(self._items))
