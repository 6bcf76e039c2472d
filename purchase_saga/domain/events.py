"""
Domain events exchanged inside the purchase saga.

Events form a closed set of variants tagged by ``event_type``. Every
consumer resolves them with a ``match`` on that discriminant, so adding a
variant means touching each ``match`` that must know about it.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Annotated, Any, Dict, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from purchase_saga.domain.clock import utc_now


class DomainEvent(BaseModel):
    """
    Base class for all domain events.

    Events are immutable facts, created when an aggregate operation
    satisfied its invariants and never changed afterwards.
    """

    model_config = ConfigDict(frozen=True)

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    occurred_at: datetime = Field(default_factory=utc_now)

    def to_payload(self) -> Dict[str, Any]:
        """JSON-compatible representation used for outbox and log payloads."""
        return self.model_dump(mode="json")


class PaymentRequestedEvent(DomainEvent):
    """An order asked for its payment to be taken."""

    event_type: Literal["PaymentRequested"] = "PaymentRequested"
    order_id: str
    transaction_id: str
    customer_id: str
    amount: Decimal
    currency: str


class PaymentProcessedEvent(DomainEvent):
    """The payment service charged the customer successfully."""

    event_type: Literal["PaymentProcessed"] = "PaymentProcessed"
    payment_id: str
    order_id: str
    transaction_id: str
    amount: Decimal
    currency: str


class PaymentFailedEvent(DomainEvent):
    """The payment service could not charge the customer."""

    event_type: Literal["PaymentFailed"] = "PaymentFailed"
    payment_id: str
    order_id: str
    transaction_id: str
    error_message: str


SagaEvent = Annotated[
    Union[PaymentRequestedEvent, PaymentProcessedEvent, PaymentFailedEvent],
    Field(discriminator="event_type"),
]

_saga_event_adapter: TypeAdapter[SagaEvent] = TypeAdapter(SagaEvent)


def parse_event(data: Dict[str, Any]) -> SagaEvent:
    """Rebuild an event from its payload, selecting the variant by ``event_type``."""
    return _saga_event_adapter.validate_python(data)
