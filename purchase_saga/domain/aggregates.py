"""
Aggregates of the purchase saga.

Order lives in the order service, Payment in the payment service. Both
collect the domain events produced by an operation until a dispatcher or
publisher hands them off.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from purchase_saga.domain.clock import utc_now
from purchase_saga.domain.events import (
    DomainEvent,
    PaymentFailedEvent,
    PaymentProcessedEvent,
    PaymentRequestedEvent,
)
from purchase_saga.domain.exceptions import OrderStateError, PaymentStateError


@dataclass
class AggregateRoot:
    """Holds the pending domain events of the current operation in insertion order."""

    _domain_events: List[DomainEvent] = field(
        default_factory=list, init=False, repr=False, compare=False
    )

    def register_event(self, event: DomainEvent) -> None:
        self._domain_events.append(event)

    @property
    def domain_events(self) -> List[DomainEvent]:
        return list(self._domain_events)

    def has_events(self) -> bool:
        return bool(self._domain_events)

    def clear_events(self) -> None:
        self._domain_events.clear()


def _validate_money(amount: Decimal, currency: str, error: type[Exception]) -> None:
    if amount <= 0:
        raise error("Amount must be positive")
    if len(currency) != 3 or not currency.isalpha():
        raise error("Currency must be 3-letter code")


class OrderStatus(str, Enum):
    """Order lifecycle as seen by the saga."""

    CREATED = "CREATED"
    PAYMENT_PENDING = "PAYMENT_PENDING"
    PAYMENT_CONFIRMED = "PAYMENT_CONFIRMED"
    PAYMENT_FAILED = "PAYMENT_FAILED"


@dataclass
class Order(AggregateRoot):
    """
    Order aggregate.

    Invariants:
    - amount is positive and currency is an ISO-4217 style code
    - only a PAYMENT_PENDING order can be confirmed, failed or retried
    """

    order_id: str = ""
    customer_id: str = ""
    amount: Decimal = Decimal("0")
    currency: str = "USD"
    status: OrderStatus = OrderStatus.CREATED
    transaction_id: Optional[str] = None
    payment_id: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @classmethod
    def create(
        cls,
        customer_id: str,
        amount: Decimal,
        currency: str,
        order_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Order:
        if not customer_id:
            raise OrderStateError("Customer ID is required")
        _validate_money(amount, currency, OrderStateError)
        now = now or utc_now()
        return cls(
            order_id=order_id or str(uuid.uuid4()),
            customer_id=customer_id,
            amount=amount,
            currency=currency.upper(),
            created_at=now,
            updated_at=now,
        )

    def request_payment(self, transaction_id: str, now: Optional[datetime] = None) -> None:
        """Move to PAYMENT_PENDING and record a PaymentRequestedEvent."""
        if self.status != OrderStatus.CREATED:
            raise OrderStateError(
                f"Cannot request payment for order {self.order_id} in status {self.status.value}"
            )
        now = now or utc_now()
        self.status = OrderStatus.PAYMENT_PENDING
        self.transaction_id = transaction_id
        self.updated_at = now
        self.register_event(
            PaymentRequestedEvent(
                order_id=self.order_id,
                transaction_id=transaction_id,
                customer_id=self.customer_id,
                amount=self.amount,
                currency=self.currency,
                occurred_at=now,
            )
        )

    def retry_payment(self, transaction_id: str, now: Optional[datetime] = None) -> None:
        """Point the order at the transaction id of a new payment attempt."""
        self._require_pending("retry payment")
        self.transaction_id = transaction_id
        self.updated_at = now or utc_now()

    def confirm_payment(self, payment_id: str, now: Optional[datetime] = None) -> None:
        self._require_pending("confirm payment")
        self.status = OrderStatus.PAYMENT_CONFIRMED
        self.payment_id = payment_id
        self.updated_at = now or utc_now()

    def fail_payment(self, reason: str, now: Optional[datetime] = None) -> None:
        self._require_pending("fail payment")
        self.status = OrderStatus.PAYMENT_FAILED
        self.failure_reason = reason
        self.updated_at = now or utc_now()

    def _require_pending(self, operation: str) -> None:
        if self.status != OrderStatus.PAYMENT_PENDING:
            raise OrderStateError(
                f"Cannot {operation} for order {self.order_id} in status {self.status.value}"
            )


class PaymentStatus(str, Enum):
    """Payment lifecycle in the payment service."""

    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


@dataclass
class Payment(AggregateRoot):
    """Payment aggregate, one per payment request transaction id."""

    payment_id: str = ""
    order_id: str = ""
    transaction_id: str = ""
    customer_id: str = ""
    amount: Decimal = Decimal("0")
    currency: str = "USD"
    status: PaymentStatus = PaymentStatus.PENDING
    error_message: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @classmethod
    def create(
        cls,
        order_id: str,
        transaction_id: str,
        customer_id: str,
        amount: Decimal,
        currency: str,
        now: Optional[datetime] = None,
    ) -> Payment:
        if not order_id or not transaction_id:
            raise PaymentStateError("Order ID and transaction ID are required")
        _validate_money(amount, currency, PaymentStateError)
        now = now or utc_now()
        return cls(
            payment_id=str(uuid.uuid4()),
            order_id=order_id,
            transaction_id=transaction_id,
            customer_id=customer_id,
            amount=amount,
            currency=currency.upper(),
            created_at=now,
            updated_at=now,
        )

    def complete(self, now: Optional[datetime] = None) -> None:
        self._require_pending()
        now = now or utc_now()
        self.status = PaymentStatus.COMPLETED
        self.updated_at = now
        self.register_event(
            PaymentProcessedEvent(
                payment_id=self.payment_id,
                order_id=self.order_id,
                transaction_id=self.transaction_id,
                amount=self.amount,
                currency=self.currency,
                occurred_at=now,
            )
        )

    def fail(self, reason: str, now: Optional[datetime] = None) -> None:
        self._require_pending()
        now = now or utc_now()
        self.status = PaymentStatus.FAILED
        self.error_message = reason
        self.updated_at = now
        self.register_event(
            PaymentFailedEvent(
                payment_id=self.payment_id,
                order_id=self.order_id,
                transaction_id=self.transaction_id,
                error_message=reason,
                occurred_at=now,
            )
        )

    def _require_pending(self) -> None:
        if self.status != PaymentStatus.PENDING:
            raise PaymentStateError(
                f"Payment {self.payment_id} already {self.status.value}"
            )
