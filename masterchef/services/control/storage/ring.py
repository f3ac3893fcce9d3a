from __future__ import annotations

from collections import deque
from typing import Generic, Iterable, Iterator, TypeVar

T = TypeVar("T")


class BoundedRing(Generic[T]):
    """Append-only buffer that evicts the oldest item once full.

    The ring carries no lock of its own; the owning store guards it.
    """

    def __init__(self, capacity: int) -> None:
        if capacity <= 0:
            raise ValueError("ring capacity must be positive")
        self.capacity = capacity
        self._items: deque[T] = deque(maxlen=capacity)

    def append(self, item: T) -> None:
        self._items.append(item)

    def replace(self, items: Iterable[T]) -> None:
        """Reset the ring to *items*, keeping only the newest ``capacity``."""

        self._items = deque(items, maxlen=self.capacity)

    def tail(self, limit: int) -> list[T]:
        """Return up to *limit* newest items in append order."""

        if limit <= 0:
            return []
        items = list(self._items)
        return items[-limit:]

    def items(self) -> list[T]:
        return list(self._items)

    def clear(self) -> None:
        self._items.clear()

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[T]:
        return iter(list(self._items))

    def __getitem__(self, index: int) -> T:
        return self._items[index]


__all__ = ["BoundedRing"]
