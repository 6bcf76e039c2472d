"""Exceptions shared across the saga components."""
from typing import Any


class SagaError(Exception):
    """Base exception for purchase saga errors."""

    pass


class UnsupportedEventError(SagaError):
    """Raised when an event has no handler or no outbox mapping."""

    def __init__(self, event: Any):
        self.event = event
        event_type = getattr(event, "event_type", type(event).__name__)
        super().__init__(f"Unsupported domain event type: {event_type}")


class InvalidRetryTransitionError(SagaError):
    """Raised when a retry history is asked to move in a way its state forbids."""

    pass


class OrderStateError(SagaError):
    """Raised on an invalid order operation or malformed order data."""

    pass


class PaymentStateError(SagaError):
    """Raised on an invalid payment operation or malformed payment data."""

    pass


class RetryHistoryNotFoundError(SagaError):
    """Raised when a payment result names an order with no retry history."""

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"No retry history for order {order_id}")


class MessagePublishingError(SagaError):
    """Raised when a message could not be serialized or handed to the broker."""

    pass


class DuplicatePaymentError(SagaError):
    """Raised when a payment is stored for a transaction id that already has one."""

    def __init__(self, transaction_id: str):
        self.transaction_id = transaction_id
        super().__init__(f"Payment already exists for transaction {transaction_id}")
