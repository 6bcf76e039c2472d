"""
Inbound message listeners.

Each delivery is acked after successful processing. A message that can
never be processed is rejected without requeue (dead-lettered); any other
processing error nacks it with requeue and is re-raised, leaving
redelivery to the broker.
"""
from typing import Awaitable, Callable

import structlog
from aio_pika.abc import AbstractIncomingMessage, AbstractQueue

from purchase_saga.core.payment_results import PaymentResultHandler
from purchase_saga.core.payments import PaymentRequestService
from purchase_saga.core.ports import PaymentRequest
from purchase_saga.domain.exceptions import PaymentStateError, RetryHistoryNotFoundError
from purchase_saga.messaging.schemas import (
    ConfirmationStatus,
    MessageValidationError,
    PaymentConfirmationMessage,
    PaymentFailureMessage,
    PaymentRequestMessage,
    parse_message,
)
from purchase_saga.monitoring import metrics

logger = structlog.get_logger(__name__)

NON_RETRYABLE_ERRORS = (MessageValidationError, RetryHistoryNotFoundError, PaymentStateError)


async def consume(
    message: AbstractIncomingMessage,
    kind: str,
    process: Callable[[bytes], Awaitable[None]],
) -> None:
    """Run ``process`` on the message body and settle the delivery."""
    try:
        await process(message.body)
    except NON_RETRYABLE_ERRORS as e:
        metrics.inbound_messages_total.labels(kind=kind, outcome="rejected").inc()
        logger.error(
            "message_rejected",
            kind=kind,
            message_id=message.message_id,
            error=str(e),
        )
        await message.reject(requeue=False)
        return
    except Exception as e:
        metrics.inbound_messages_total.labels(kind=kind, outcome="error").inc()
        logger.error(
            "message_processing_failed",
            kind=kind,
            message_id=message.message_id,
            redelivered=message.redelivered,
            error=str(e),
        )
        await message.nack(requeue=True)
        raise
    await message.ack()


class PaymentResultListener:
    """Consumes payment confirmations and failures (order service)."""

    def __init__(self, handler: PaymentResultHandler):
        self.handler = handler

    async def on_confirmation(self, message: AbstractIncomingMessage) -> None:
        await consume(message, "confirmation", self.process_confirmation)

    async def on_failure(self, message: AbstractIncomingMessage) -> None:
        await consume(message, "failure", self.process_failure)

    async def process_confirmation(self, body: bytes) -> None:
        confirmation = parse_message(PaymentConfirmationMessage, body)
        logger.info(
            "payment_confirmation_received",
            order_id=confirmation.order_id,
            transaction_id=confirmation.transaction_id,
            payment_id=confirmation.payment_id,
            status=confirmation.status.value,
        )

        if confirmation.status == ConfirmationStatus.SUCCESS:
            await self.handler.handle_confirmation(
                confirmation.order_id, confirmation.transaction_id, confirmation.payment_id
            )
        elif confirmation.status == ConfirmationStatus.FAILED:
            await self.handler.handle_failure(
                confirmation.order_id,
                confirmation.transaction_id,
                f"Payment {confirmation.payment_id} reported FAILED",
            )
        else:
            logger.info(
                "payment_still_pending",
                order_id=confirmation.order_id,
                transaction_id=confirmation.transaction_id,
            )

    async def process_failure(self, body: bytes) -> None:
        failure = parse_message(PaymentFailureMessage, body)
        logger.info(
            "payment_failure_received",
            order_id=failure.order_id,
            transaction_id=failure.transaction_id,
            reason=failure.reason,
        )
        await self.handler.handle_failure(
            failure.order_id, failure.transaction_id, failure.reason
        )

    async def start(self, confirmation_queue: AbstractQueue, failure_queue: AbstractQueue) -> None:
        await confirmation_queue.consume(self.on_confirmation)
        await failure_queue.consume(self.on_failure)
        logger.info(
            "payment_result_listener_started",
            confirmation_queue=confirmation_queue.name,
            failure_queue=failure_queue.name,
        )


class PaymentRequestListener:
    """Consumes payment requests (payment service)."""

    def __init__(self, service: PaymentRequestService):
        self.service = service

    async def on_request(self, message: AbstractIncomingMessage) -> None:
        await consume(message, "request", self.process_request)

    async def process_request(self, body: bytes) -> None:
        request = parse_message(PaymentRequestMessage, body)
        await self.service.handle(
            PaymentRequest(
                transaction_id=request.transaction_id,
                order_id=request.order_id,
                customer_id=request.customer_id,
                amount=request.amount,
                currency=request.currency,
                timestamp=request.timestamp,
            )
        )

    async def start(self, request_queue: AbstractQueue) -> None:
        await request_queue.consume(self.on_request)
        logger.info("payment_request_listener_started", queue=request_queue.name)
