"""
In-memory stores and unit of work.

Used by the test suite and for local runs without a database. Writes made
through a unit of work are staged and only become visible to other units
of work on commit; a rollback discards them. Objects are copied on the
way in and out, so an aggregate mutated without ``save`` changes nothing.
"""

from __future__ import annotations

import copy
import itertools
from datetime import datetime
from typing import Any, Dict, Generic, Hashable, Iterator, List, Optional, Sequence, Set, TypeVar

from purchase_saga.domain.aggregates import Order, Payment
from purchase_saga.domain.exceptions import DuplicatePaymentError
from purchase_saga.domain.outbox import OutboxEntry, OutboxStatus
from purchase_saga.domain.retry import (
    TERMINAL_STATUSES,
    RetryAttempt,
    RetryHistory,
    RetryStatistics,
    in_window,
    select_retryable,
    select_stale,
    select_timed_out,
)

T = TypeVar("T")


class InMemoryDatabase:
    """Committed state shared by every unit of work created for it."""

    def __init__(self) -> None:
        self.outbox: Dict[int, OutboxEntry] = {}
        self.retry_histories: Dict[str, RetryHistory] = {}
        self.orders: Dict[str, Order] = {}
        self.payments: Dict[str, Payment] = {}
        self.outbox_ids = itertools.count(1)
        self.commits = 0


class _StagedTable(Generic[T]):
    """Committed rows plus the writes of one unit of work."""

    def __init__(self, committed: Dict[Any, T]):
        self._committed = committed
        self._staged: Dict[Any, T] = {}
        self._deleted: Set[Any] = set()

    def rows(self) -> Iterator[T]:
        for key in set(self._committed) | set(self._staged):
            row = self.read(key)
            if row is not None:
                yield row

    def read(self, key: Hashable) -> Optional[T]:
        if key in self._deleted:
            return None
        row = self._staged.get(key, self._committed.get(key))
        return copy.deepcopy(row) if row is not None else None

    def exists(self, key: Hashable) -> bool:
        return key not in self._deleted and (key in self._staged or key in self._committed)

    def write(self, key: Hashable, row: T) -> None:
        self._deleted.discard(key)
        self._staged[key] = copy.deepcopy(row)

    def delete(self, key: Hashable) -> None:
        self._staged.pop(key, None)
        self._deleted.add(key)

    def apply(self) -> None:
        for key in self._deleted:
            self._committed.pop(key, None)
        self._committed.update(self._staged)
        self.discard()

    def discard(self) -> None:
        self._staged.clear()
        self._deleted.clear()


class InMemoryOutboxStore:
    def __init__(self, db: InMemoryDatabase):
        self._db = db
        self._table: _StagedTable[OutboxEntry] = _StagedTable(db.outbox)

    async def add(self, entry: OutboxEntry) -> None:
        entry.id = next(self._db.outbox_ids)
        self._table.write(entry.id, entry)

    async def fetch_pending(
        self, limit: int, max_publish_attempts: Optional[int] = None
    ) -> List[OutboxEntry]:
        rows = [e for e in self._table.rows() if e.status == OutboxStatus.PENDING]
        if max_publish_attempts is None:
            pending = rows
        else:
            # A parked entry holds back the rest of its aggregate
            parked = {e.aggregate_id for e in rows if e.publish_attempts >= max_publish_attempts}
            pending = [e for e in rows if e.aggregate_id not in parked]
        pending.sort(key=lambda e: (e.created_at, e.id))
        return pending[:limit]

    async def mark_published(self, entry_ids: Sequence[int], published_at: datetime) -> None:
        for entry_id in entry_ids:
            entry = self._table.read(entry_id)
            if entry is not None:
                entry.status = OutboxStatus.PUBLISHED
                entry.published_at = published_at
                self._table.write(entry_id, entry)

    async def record_publish_failure(self, entry_id: int, error: str) -> None:
        entry = self._table.read(entry_id)
        if entry is not None:
            entry.publish_attempts += 1
            entry.last_error = error
            self._table.write(entry_id, entry)

    async def delete_published_before(self, before: datetime) -> int:
        expired = [
            e.id
            for e in self._table.rows()
            if e.status == OutboxStatus.PUBLISHED
            and e.published_at is not None
            and e.published_at < before
        ]
        for entry_id in expired:
            self._table.delete(entry_id)
        return len(expired)

    async def count_pending(self) -> int:
        return sum(1 for e in self._table.rows() if e.status == OutboxStatus.PENDING)

    async def all(self) -> List[OutboxEntry]:
        return sorted(self._table.rows(), key=lambda e: e.id or 0)


class InMemoryRetryHistoryStore:
    def __init__(self, db: InMemoryDatabase):
        self._table: _StagedTable[RetryHistory] = _StagedTable(db.retry_histories)

    async def add(self, history: RetryHistory) -> None:
        if self._table.exists(history.order_id):
            raise ValueError(f"Retry history already exists for order {history.order_id}")
        self._table.write(history.order_id, history)

    async def get(self, order_id: str, for_update: bool = False) -> Optional[RetryHistory]:
        return self._table.read(order_id)

    async def save(self, history: RetryHistory) -> None:
        self._table.write(history.order_id, history)

    async def find_retryable(self, now: datetime, limit: int) -> List[RetryHistory]:
        return select_retryable(self._table.rows(), now, limit)

    async def find_timed_out(self, answered_before: datetime, limit: int) -> List[RetryHistory]:
        return select_timed_out(self._table.rows(), answered_before, limit)

    async def find_stale(self, older_than: datetime) -> List[RetryHistory]:
        return select_stale(self._table.rows(), older_than)

    async def find_attempts(self, order_id: str) -> List[RetryAttempt]:
        history = self._table.read(order_id)
        if history is None:
            return []
        return sorted(history.attempts, key=lambda a: a.attempt_number)

    async def statistics(
        self, start: Optional[datetime] = None, end: Optional[datetime] = None
    ) -> RetryStatistics:
        return RetryStatistics.from_histories(
            h for h in self._table.rows() if in_window(h, start, end)
        )

    async def delete_terminal_before(self, before: datetime) -> int:
        expired = [
            h.order_id
            for h in self._table.rows()
            if h.status in TERMINAL_STATUSES and h.updated_at < before
        ]
        for order_id in expired:
            self._table.delete(order_id)
        return len(expired)


class InMemoryOrderStore:
    def __init__(self, db: InMemoryDatabase):
        self._table: _StagedTable[Order] = _StagedTable(db.orders)

    async def add(self, order: Order) -> None:
        self._table.write(order.order_id, order)

    async def get(self, order_id: str, for_update: bool = False) -> Optional[Order]:
        return self._table.read(order_id)

    async def save(self, order: Order) -> None:
        self._table.write(order.order_id, order)


class InMemoryPaymentStore:
    def __init__(self, db: InMemoryDatabase):
        self._table: _StagedTable[Payment] = _StagedTable(db.payments)

    async def add(self, payment: Payment) -> None:
        if any(row.transaction_id == payment.transaction_id for row in self._table.rows()):
            raise DuplicatePaymentError(payment.transaction_id)
        self._table.write(payment.payment_id, payment)

    async def save(self, payment: Payment) -> None:
        self._table.write(payment.payment_id, payment)

    async def get_by_transaction_id(self, transaction_id: str) -> Optional[Payment]:
        for payment in self._table.rows():
            if payment.transaction_id == transaction_id:
                return payment
        return None


class InMemoryUnitOfWork:
    """Unit of work over an InMemoryDatabase."""

    def __init__(self, db: InMemoryDatabase):
        self.db = db
        self.outbox = InMemoryOutboxStore(db)
        self.retry_histories = InMemoryRetryHistoryStore(db)
        self.orders = InMemoryOrderStore(db)
        self.payments = InMemoryPaymentStore(db)

    def _tables(self) -> List[_StagedTable[Any]]:
        return [
            self.outbox._table,
            self.retry_histories._table,
            self.orders._table,
            self.payments._table,
        ]

    async def __aenter__(self) -> InMemoryUnitOfWork:
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        if exc_type is None:
            await self.commit()
        else:
            await self.rollback()

    async def commit(self) -> None:
        for table in self._tables():
            table.apply()
        self.db.commits += 1

    async def rollback(self) -> None:
        for table in self._tables():
            table.discard()


class InMemoryUnitOfWorkFactory:
    def __init__(self, db: Optional[InMemoryDatabase] = None):
        self.db = db or InMemoryDatabase()

    def __call__(self) -> InMemoryUnitOfWork:
        return InMemoryUnitOfWork(self.db)
