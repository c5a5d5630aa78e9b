# backoffice/core/locks.py
"""
In-process keyed lock arena.

Serializes read-modify-write sections per logical key (e.g. ``stock:<product>:<warehouse>``,
``order:<id>``, ``invoice:<seller>:<warehouse>``) across threads of one worker process.
Entries are reference counted and dropped when the last holder releases, so the arena does
not grow with the number of keys ever seen.

Cross-process exclusion is the database's job (row locks / pg advisory locks), see
``backoffice.models.base.locked_transaction``.
"""

from __future__ import annotations

import hashlib
import threading
from contextlib import contextmanager
from typing import Iterable, Iterator


class _Entry:
    __slots__ = ("lock", "refs")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.refs = 0


class KeyedLockArena:
    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._entries: dict[str, _Entry] = {}

    def _checkout(self, key: str) -> _Entry:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = self._entries[key] = _Entry()
            entry.refs += 1
            return entry

    def _checkin(self, key: str, entry: _Entry) -> None:
        with self._guard:
            entry.refs -= 1
            if entry.refs <= 0:
                self._entries.pop(key, None)

    @contextmanager
    def hold(self, *keys: str) -> Iterator[None]:
        """
        Hold every key for the duration of the block.
        Keys are de-duplicated and taken in sorted order (no lock-order inversions).
        """
        ordered = sorted({str(k) for k in keys})
        taken: list[tuple[str, _Entry]] = []
        try:
            for key in ordered:
                entry = self._checkout(key)
                entry.lock.acquire()
                taken.append((key, entry))
            yield
        finally:
            for key, entry in reversed(taken):
                entry.lock.release()
                self._checkin(key, entry)

    def active_keys(self) -> list[str]:
        with self._guard:
            return sorted(self._entries)


def advisory_key(key: str) -> int:
    """Stable signed 64-bit key for pg_advisory_xact_lock."""
    digest = hashlib.blake2b(key.encode("utf-8"), digest_size=8).digest()
    return int.from_bytes(digest, "big", signed=True)


def stock_key(product_id: int, warehouse_id: int) -> str:
    return f"stock:{int(product_id)}:{int(warehouse_id)}"


def order_key(order_id: int) -> str:
    return f"order:{int(order_id)}"


def invoice_key(seller_id: int, warehouse_id: int) -> str:
    return f"invoice:{int(seller_id)}:{int(warehouse_id)}"


def outbox_key(event_id: int) -> str:
    return f"outbox:{int(event_id)}"


def keys_for_stock(pairs: Iterable[tuple[int, int]]) -> list[str]:
    return [stock_key(p, w) for p, w in pairs]


# Process-wide arena used by the services.
lock_arena = KeyedLockArena()


__all__ = [
    "KeyedLockArena",
    "lock_arena",
    "advisory_key",
    "stock_key",
    "order_key",
    "invoice_key",
    "outbox_key",
    "keys_for_stock",
]
