"""Generic keyed-entity store shared by the control-plane domains."""

from __future__ import annotations

import threading
from copy import deepcopy
from datetime import datetime
from typing import Any, Callable, Generic, Hashable, Iterable, TypeVar

from masterchef.foundation.common.ids import IDAllocator, id_sequence
from masterchef.foundation.common.timeutils import Clock, utc_now

from ..errors import NotFoundError
from .records import Record

T = TypeVar("T", bound=Record)


def _created_order(record: Any) -> tuple[datetime, int]:
    return (record.created_at, id_sequence(record.id))


class KeyedStore(Generic[T]):
    """In-memory records keyed by a generated ``"<prefix>-<N>"`` identifier.

    Every record entering or leaving the store is deep-copied so callers
    never share state with the stored value. All access is serialized on a
    single re-entrant lock which domain stores may also take (``lock``) to
    combine several primitive operations atomically.

    Parameters
    ----------
    prefix:
        Identifier prefix, e.g. ``"wh"`` for ``wh-1``.
    clock:
        Source of the current UTC time.
    natural_key:
        Function deriving the business key used by :meth:`upsert`. Stores
        that only key by identifier leave this unset.
    sort_key / reverse:
        Ordering of :meth:`list`. Defaults to newest ``created_at`` first
        with the identifier sequence as tie breaker.
    """

    def __init__(
        self,
        prefix: str,
        *,
        clock: Clock = utc_now,
        natural_key: Callable[[T], Hashable] | None = None,
        sort_key: Callable[[T], Any] | None = None,
        reverse: bool = True,
        lock: threading.RLock | None = None,
    ) -> None:
        self._ids = IDAllocator(prefix)
        self._items: dict[str, T] = {}
        self._clock = clock
        self._natural_key = natural_key
        self._sort_key = sort_key or _created_order
        self._reverse = reverse
        self.lock = lock or threading.RLock()

    @property
    def prefix(self) -> str:
        return self._ids.prefix

    def now(self) -> datetime:
        return self._clock()

    def next_id(self) -> str:
        return self._ids.next()

    # ------------------------------------------------------------------
    # Public CRUD
    # ------------------------------------------------------------------
    def create(self, record: T, *, now: datetime | None = None) -> T:
        with self.lock:
            stored = deepcopy(record)
            stamp = now or self._clock()
            stored.id = self._ids.next()  # type: ignore[attr-defined]
            stored.created_at = stamp  # type: ignore[attr-defined]
            stored.updated_at = stamp  # type: ignore[attr-defined]
            self._items[stored.id] = stored  # type: ignore[attr-defined]
            return deepcopy(stored)

    def upsert(self, record: T, *, now: datetime | None = None) -> T:
        """Insert *record* or replace the record sharing its natural key.

        A replaced record keeps its ``id`` and ``created_at``.
        """

        if self._natural_key is None:
            raise TypeError(f"{self.prefix} store does not support natural-key upsert")
        with self.lock:
            key = self._natural_key(record)
            existing = self._find_locked(lambda item: self._natural_key(item) == key)
            if existing is None:
                return self.create(record, now=now)
            stored = deepcopy(record)
            stored.id = existing.id  # type: ignore[attr-defined]
            stored.created_at = existing.created_at  # type: ignore[attr-defined]
            stored.updated_at = now or self._clock()  # type: ignore[attr-defined]
            self._items[stored.id] = stored  # type: ignore[attr-defined]
            return deepcopy(stored)

    def get(self, record_id: str) -> T | None:
        with self.lock:
            record = self._items.get((record_id or "").strip())
            return deepcopy(record) if record is not None else None

    def list(self, predicate: Callable[[T], bool] | None = None) -> list[T]:
        with self.lock:
            snapshot = [
                deepcopy(item)
                for item in self._items.values()
                if predicate is None or predicate(item)
            ]
        snapshot.sort(key=self._sort_key, reverse=self._reverse)
        return snapshot

    def delete(self, record_id: str) -> bool:
        with self.lock:
            return self._items.pop((record_id or "").strip(), None) is not None

    def find(self, predicate: Callable[[T], bool]) -> T | None:
        with self.lock:
            record = self._find_locked(predicate)
            return deepcopy(record) if record is not None else None

    def mutate(
        self,
        record_id: str,
        change: Callable[[T], None],
        *,
        missing: str = "record not found",
        now: datetime | None = None,
    ) -> T:
        """Apply *change* to a copy of the record and commit it on success.

        ``updated_at`` advances once the change returns; an exception raised
        by *change* leaves the stored record untouched.
        """

        with self.lock:
            current = self._items.get((record_id or "").strip())
            if current is None:
                raise NotFoundError(missing)
            draft = deepcopy(current)
            change(draft)
            draft.updated_at = now or self._clock()  # type: ignore[attr-defined]
            self._items[draft.id] = draft  # type: ignore[attr-defined]
            return deepcopy(draft)

    # ------------------------------------------------------------------
    # Lock-holding helpers for domain stores
    # ------------------------------------------------------------------
    def live(self) -> Iterable[T]:
        """Stored records without copying; callers must hold ``lock``."""

        return list(self._items.values())

    def get_live(self, record_id: str) -> T | None:
        return self._items.get((record_id or "").strip())

    def put_live(self, record: T) -> None:
        self._items[record.id] = record  # type: ignore[attr-defined]

    def _find_locked(self, predicate: Callable[[T], bool]) -> T | None:
        for item in self._items.values():
            if predicate(item):
                return item
        return None

    def __len__(self) -> int:
        with self.lock:
            return len(self._items)


__all__ = ["KeyedStore"]
