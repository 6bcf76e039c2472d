"""Payment service use case: charge a payment request exactly once per transaction id."""
import asyncio
from typing import Optional

import structlog

from purchase_saga.core.locking import KeyedLock
from purchase_saga.core.ports import (
    GatewayResult,
    PaymentGateway,
    PaymentRequest,
    UnitOfWorkFactory,
)
from purchase_saga.core.publisher import DomainEventPublisher
from purchase_saga.domain.aggregates import Payment
from purchase_saga.domain.clock import Clock, utc_now
from purchase_saga.domain.exceptions import DuplicatePaymentError

logger = structlog.get_logger(__name__)


class PaymentRequestService:
    """
    Handles payment requests arriving from the order service.

    A request whose transaction id already has a payment is answered by the
    existing payment; the customer is never charged twice for one attempt,
    even when the request reaches consumers in several processes.
    The final status and its outbox entry are written in one unit of work.
    """

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        gateway: PaymentGateway,
        publisher: Optional[DomainEventPublisher] = None,
        gateway_timeout_seconds: float = 30.0,
        locks: Optional[KeyedLock] = None,
        clock: Clock = utc_now,
    ):
        self.uow_factory = uow_factory
        self.gateway = gateway
        self.publisher = publisher or DomainEventPublisher()
        self.gateway_timeout_seconds = gateway_timeout_seconds
        self.locks = locks or KeyedLock()
        self.clock = clock

    async def handle(self, request: PaymentRequest) -> Payment:
        """
        Charge a payment request unless its transaction id was already claimed.

        The PENDING payment row is committed before the gateway is called. Its
        unique transaction id is the claim: a consumer in another process that
        receives the same request finds the row, or loses the insert, and never
        reaches the gateway. The in-process lock only saves that round trip.

        Args:
            request: Payment request from the order service

        Returns:
            Payment: The new payment, or the one already holding the transaction id
        """
        async with self.locks.hold(request.transaction_id):
            existing = await self._find(request.transaction_id)
            if existing is not None:
                return existing

            payment = Payment.create(
                order_id=request.order_id,
                transaction_id=request.transaction_id,
                customer_id=request.customer_id,
                amount=request.amount,
                currency=request.currency,
                now=self.clock(),
            )
            try:
                async with self.uow_factory() as uow:
                    await uow.payments.add(payment)
            except DuplicatePaymentError:
                return await self._find(request.transaction_id)

            result = await self._charge(payment)
            if result.success:
                payment.complete(now=self.clock())
            else:
                payment.fail(result.error_message or "Payment declined", now=self.clock())

            async with self.uow_factory() as uow:
                await uow.payments.save(payment)
                await self.publisher.publish_aggregate(payment, uow)

        logger.info(
            "payment_request_handled",
            payment_id=payment.payment_id,
            order_id=payment.order_id,
            transaction_id=payment.transaction_id,
            status=payment.status.value,
        )
        return payment

    async def _find(self, transaction_id: str) -> Optional[Payment]:
        async with self.uow_factory() as uow:
            existing = await uow.payments.get_by_transaction_id(transaction_id)
        if existing is not None:
            logger.info(
                "payment_request_duplicate",
                transaction_id=transaction_id,
                payment_id=existing.payment_id,
                status=existing.status.value,
            )
        return existing

    async def _charge(self, payment: Payment) -> GatewayResult:
        try:
            return await asyncio.wait_for(
                self.gateway.charge(payment), timeout=self.gateway_timeout_seconds
            )
        except asyncio.TimeoutError:
            logger.warning(
                "payment_gateway_timeout",
                transaction_id=payment.transaction_id,
                timeout=self.gateway_timeout_seconds,
            )
            return GatewayResult(success=False, error_message="Payment gateway timed out")
        except Exception as e:
            logger.error(
                "payment_gateway_error",
                transaction_id=payment.transaction_id,
                error=str(e),
            )
            return GatewayResult(success=False, error_message=f"Payment gateway error: {e}")
