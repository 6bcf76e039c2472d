"""Wire schemas of the saga messages. JSON bodies use camelCase field names."""
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Type, TypeVar

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from purchase_saga.domain.exceptions import SagaError

M = TypeVar("M", bound="SagaMessage")


class MessageValidationError(SagaError):
    """Inbound message that can never be processed; it is not redelivered."""

    pass


class SagaMessage(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    def to_json_bytes(self) -> bytes:
        return self.model_dump_json(by_alias=True).encode("utf-8")


class PaymentRequestMessage(SagaMessage):
    transaction_id: str
    order_id: str
    customer_id: str
    amount: Decimal
    currency: str
    timestamp: datetime


class ConfirmationStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    PENDING = "PENDING"


class PaymentConfirmationMessage(SagaMessage):
    order_id: str
    transaction_id: str
    payment_id: str
    status: ConfirmationStatus = ConfirmationStatus.SUCCESS


class PaymentFailureMessage(SagaMessage):
    order_id: str
    transaction_id: str
    reason: str

    @field_validator("reason")
    @classmethod
    def validate_reason(cls, v: str) -> str:
        return v.strip() or "Unknown payment failure"


def parse_message(model: Type[M], body: bytes) -> M:
    """
    Decode a message body.

    Raises:
        MessageValidationError: If the body is not valid JSON for ``model``
    """
    try:
        message = model.model_validate_json(body)
    except ValidationError as e:
        raise MessageValidationError(f"Invalid {model.__name__}: {e}") from e

    for field_name in ("order_id", "transaction_id"):
        if not getattr(message, field_name, "x"):
            raise MessageValidationError(f"Invalid {model.__name__}: {field_name} is empty")
    return message
