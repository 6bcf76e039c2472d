"""
Storage and collaborator interfaces used by the core.

Two implementations exist: SQLAlchemy (``purchase_saga.database``) and
in-memory (``purchase_saga.infrastructure.memory``).
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, List, Optional, Protocol, Sequence

from purchase_saga.domain.aggregates import Order, Payment
from purchase_saga.domain.outbox import OutboxEntry
from purchase_saga.domain.retry import RetryAttempt, RetryHistory, RetryStatistics


class OutboxStore(Protocol):
    """Outbox table access."""

    async def add(self, entry: OutboxEntry) -> None:
        ...

    async def fetch_pending(
        self, limit: int, max_publish_attempts: Optional[int] = None
    ) -> List[OutboxEntry]:
        """PENDING entries in created_at order, skipping parked ones."""
        ...

    async def mark_published(self, entry_ids: Sequence[int], published_at: datetime) -> None:
        ...

    async def record_publish_failure(self, entry_id: int, error: str) -> None:
        ...

    async def delete_published_before(self, before: datetime) -> int:
        ...

    async def count_pending(self) -> int:
        ...


class RetryHistoryStore(Protocol):
    """
    Retry history access.

    ``get(..., for_update=True)`` must lock the row until the surrounding
    unit of work ends.
    """

    async def add(self, history: RetryHistory) -> None:
        ...

    async def get(self, order_id: str, for_update: bool = False) -> Optional[RetryHistory]:
        ...

    async def save(self, history: RetryHistory) -> None:
        ...

    async def find_retryable(self, now: datetime, limit: int) -> List[RetryHistory]:
        """Active, attempts left, due; oldest first_attempt_at first."""
        ...

    async def find_timed_out(self, answered_before: datetime, limit: int) -> List[RetryHistory]:
        ...

    async def find_stale(self, older_than: datetime) -> List[RetryHistory]:
        ...

    async def find_attempts(self, order_id: str) -> List[RetryAttempt]:
        ...

    async def statistics(
        self, start: Optional[datetime] = None, end: Optional[datetime] = None
    ) -> RetryStatistics:
        ...

    async def delete_terminal_before(self, before: datetime) -> int:
        ...


class OrderStore(Protocol):
    async def add(self, order: Order) -> None:
        ...

    async def get(self, order_id: str, for_update: bool = False) -> Optional[Order]:
        ...

    async def save(self, order: Order) -> None:
        ...


class PaymentStore(Protocol):
    async def add(self, payment: Payment) -> None:
        """Insert a payment; raises DuplicatePaymentError if its transaction id is taken."""
        ...

    async def save(self, payment: Payment) -> None:
        ...

    async def get_by_transaction_id(self, transaction_id: str) -> Optional[Payment]:
        ...


class UnitOfWork(Protocol):
    """
    One transaction boundary.

    Used as ``async with uow:``; commits when the block exits normally and
    rolls back when it raises. Everything written through the stores of one
    unit of work commits or rolls back together.
    """

    outbox: OutboxStore
    retry_histories: RetryHistoryStore
    orders: OrderStore
    payments: PaymentStore

    async def __aenter__(self) -> UnitOfWork:
        ...

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        ...


class UnitOfWorkFactory(Protocol):
    def __call__(self) -> UnitOfWork:
        ...


@dataclass(frozen=True)
class PaymentRequest:
    """Payment request published to the payment service for one attempt."""

    transaction_id: str
    order_id: str
    customer_id: str
    amount: Decimal
    currency: str
    timestamp: datetime


class PaymentRequestSender(Protocol):
    async def publish(self, request: PaymentRequest) -> None:
        """Raises MessagePublishingError when the request was not handed to the broker."""
        ...


@dataclass(frozen=True)
class GatewayResult:
    success: bool
    error_message: Optional[str] = None


class PaymentGateway(Protocol):
    """Card validation and charge, provided by the payment provider integration."""

    async def charge(self, payment: Payment) -> GatewayResult:
        ...
