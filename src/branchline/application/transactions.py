"""Per-key serialization and the retrying transaction boundary."""

from __future__ import annotations

import threading
from collections.abc import Callable, Hashable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import TypeVar

from branchline.core.retry import RetryPolicy, run_with_retry
from branchline.domain.errors import PersistenceError, VersionConflict
from branchline.domain.ports import ReaderStore, ReaderTransaction

T = TypeVar("T")


@dataclass
class _LockSlot:
    lock: threading.Lock = field(default_factory=threading.Lock)
    holders: int = 0


class KeyedLocks:
    """One lock per key; distinct keys never contend. Idle slots are dropped."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._slots: dict[Hashable, _LockSlot] = {}

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        with self._guard:
            slot = self._slots.setdefault(key, _LockSlot())
            slot.holders += 1
        slot.lock.acquire()
        try:
            yield
        finally:
            slot.lock.release()
            with self._guard:
                slot.holders -= 1
                if slot.holders == 0:
                    del self._slots[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._slots)


def run_transaction(
    store: ReaderStore,
    work: Callable[[ReaderTransaction], T],
    *,
    policy: RetryPolicy,
    label: str,
) -> T:
    """Run ``work`` in one store transaction, retrying transient storage failures.

    ``work`` is re-run from scratch on each attempt, so it must derive all of
    its writes from reads made inside the transaction it is given.
    """
    transient = (*store.transient_errors, VersionConflict)

    def attempt() -> T:
        with store.transaction() as transaction:
            return work(transaction)

    try:
        return run_with_retry(attempt, policy=policy, retry_on=transient, label=label)
    except transient as exc:
        raise PersistenceError(
            f"{label} failed after {policy.attempts} attempts: {exc}"
        ) from exc
