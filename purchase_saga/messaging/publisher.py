"""
Outbound message publishers.

PaymentRequestPublisher sends payment requests from the order service;
PaymentResultPublisher relays payment outcomes from the payment outbox.
"""
import asyncio
import uuid
from datetime import timedelta
from typing import Optional, Tuple

import aio_pika
import structlog
from aio_pika.abc import AbstractExchange

from purchase_saga.core.ports import PaymentRequest
from purchase_saga.domain.events import parse_event
from purchase_saga.domain.exceptions import MessagePublishingError, UnsupportedEventError
from purchase_saga.domain.outbox import OutboxEntry
from purchase_saga.messaging.schemas import (
    ConfirmationStatus,
    PaymentConfirmationMessage,
    PaymentFailureMessage,
    PaymentRequestMessage,
    SagaMessage,
)
from purchase_saga.monitoring.event_log import EventRecorder

logger = structlog.get_logger(__name__)

__all__ = ["MessagePublishingError", "PaymentRequestPublisher", "PaymentResultPublisher"]

PAYMENT_REQUEST_EVENT_TYPE = "PaymentRequest"


async def _publish(
    exchange: AbstractExchange, message: aio_pika.Message, routing_key: str, timeout: float
) -> None:
    try:
        await asyncio.wait_for(
            exchange.publish(message, routing_key=routing_key), timeout=timeout
        )
    except asyncio.TimeoutError as e:
        raise MessagePublishingError(
            f"Publishing to {routing_key} timed out after {timeout}s"
        ) from e
    except Exception as e:
        raise MessagePublishingError(f"Publishing to {routing_key} failed: {e}") from e


class PaymentRequestPublisher:
    """Publishes payment requests with correlation metadata and a TTL."""

    def __init__(
        self,
        exchange: AbstractExchange,
        routing_key: str = "payment.request",
        ttl_ms: int = 1_800_000,
        publish_timeout_seconds: float = 10.0,
        source: str = "order-service",
        schema_version: str = "1.0",
        recorder: Optional[EventRecorder] = None,
    ):
        self.exchange = exchange
        self.routing_key = routing_key
        self.expiration = timedelta(milliseconds=ttl_ms)
        self.publish_timeout_seconds = publish_timeout_seconds
        self.source = source
        self.schema_version = schema_version
        self.recorder = recorder or EventRecorder()

    def build_message(self, request: PaymentRequest) -> aio_pika.Message:
        """
        Serialize a payment request and stamp its metadata.

        Raises:
            MessagePublishingError: If the request cannot be serialized
        """
        try:
            body = PaymentRequestMessage(
                transaction_id=request.transaction_id,
                order_id=request.order_id,
                customer_id=request.customer_id,
                amount=request.amount,
                currency=request.currency,
                timestamp=request.timestamp,
            ).to_json_bytes()
        except (ValueError, TypeError) as e:
            raise MessagePublishingError(
                f"Failed to serialize payment request {request.transaction_id}: {e}"
            ) from e

        return aio_pika.Message(
            body=body,
            content_type="application/json",
            content_encoding="utf-8",
            delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
            message_id=str(uuid.uuid4()),
            correlation_id=request.transaction_id,
            timestamp=request.timestamp,
            expiration=self.expiration,
            type=PAYMENT_REQUEST_EVENT_TYPE,
            headers={
                "eventType": PAYMENT_REQUEST_EVENT_TYPE,
                "orderId": request.order_id,
                "customerId": request.customer_id,
                "amount": str(request.amount),
                "currency": request.currency,
                "source": self.source,
                "version": self.schema_version,
            },
        )

    async def publish(self, request: PaymentRequest) -> None:
        """
        Publish a payment request.

        Raises:
            MessagePublishingError: On serialization, transport or timeout failure
        """
        payload = {
            "transactionId": request.transaction_id,
            "orderId": request.order_id,
            "customerId": request.customer_id,
            "amount": str(request.amount),
            "currency": request.currency,
        }
        try:
            message = self.build_message(request)
            await _publish(
                self.exchange, message, self.routing_key, self.publish_timeout_seconds
            )
        except MessagePublishingError as e:
            logger.error(
                "payment_request_publish_failed",
                order_id=request.order_id,
                transaction_id=request.transaction_id,
                error=str(e),
            )
            await self.recorder.record_failure(PAYMENT_REQUEST_EVENT_TYPE, payload, e)
            raise

        logger.info(
            "payment_request_published",
            order_id=request.order_id,
            transaction_id=request.transaction_id,
            message_id=message.message_id,
        )
        await self.recorder.record(PAYMENT_REQUEST_EVENT_TYPE, payload)


class PaymentResultPublisher:
    """Turns payment outbox entries into confirmation or failure messages."""

    def __init__(
        self,
        exchange: AbstractExchange,
        confirmation_routing_key: str = "payment.confirmation",
        failure_routing_key: str = "payment.failure",
        publish_timeout_seconds: float = 10.0,
    ):
        self.exchange = exchange
        self.confirmation_routing_key = confirmation_routing_key
        self.failure_routing_key = failure_routing_key
        self.publish_timeout_seconds = publish_timeout_seconds

    def to_message(self, entry: OutboxEntry) -> Tuple[SagaMessage, str]:
        """
        Map an outbox entry to its wire message and routing key.

        Raises:
            UnsupportedEventError: If the entry is not a payment outcome
        """
        event = parse_event(entry.payload)
        match event.event_type:
            case "PaymentProcessed":
                message = PaymentConfirmationMessage(
                    order_id=event.order_id,
                    transaction_id=event.transaction_id,
                    payment_id=event.payment_id,
                    status=ConfirmationStatus.SUCCESS,
                )
                return message, self.confirmation_routing_key
            case "PaymentFailed":
                message = PaymentFailureMessage(
                    order_id=event.order_id,
                    transaction_id=event.transaction_id,
                    reason=event.error_message,
                )
                return message, self.failure_routing_key
            case _:
                raise UnsupportedEventError(event)

    async def publish_entry(self, entry: OutboxEntry) -> None:
        message, routing_key = self.to_message(entry)
        amqp_message = aio_pika.Message(
            body=message.to_json_bytes(),
            content_type="application/json",
            content_encoding="utf-8",
            delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
            # Stable across re-publication so consumers can spot duplicates
            message_id=entry.event_id,
            correlation_id=message.transaction_id,
            timestamp=entry.created_at,
            type=entry.event_type,
            headers={
                "eventType": entry.event_type,
                "aggregateType": entry.aggregate_type,
                "aggregateId": entry.aggregate_id,
            },
        )
        await _publish(self.exchange, amqp_message, routing_key, self.publish_timeout_seconds)
