"""Order service use cases: placing an order starts the payment saga."""
import uuid
from decimal import Decimal
from typing import Optional

import structlog

from purchase_saga.core.dispatcher import DomainEventDispatcher
from purchase_saga.core.ports import UnitOfWork, UnitOfWorkFactory
from purchase_saga.domain.aggregates import Order
from purchase_saga.domain.clock import Clock, utc_now
from purchase_saga.domain.events import DomainEvent, PaymentRequestedEvent
from purchase_saga.domain.exceptions import OrderStateError
from purchase_saga.domain.retry import RetryHistory
from purchase_saga.monitoring.event_log import EventRecorder

logger = structlog.get_logger(__name__)


class PaymentRequestedEventHandler:
    """Registers the PENDING retry history for a newly requested payment."""

    def __init__(self, max_attempts: int, clock: Clock = utc_now):
        self.max_attempts = max_attempts
        self.clock = clock

    async def handle(self, event: DomainEvent, uow: Optional[UnitOfWork]) -> None:
        if not isinstance(event, PaymentRequestedEvent):
            raise TypeError(f"Expected PaymentRequestedEvent, got {type(event).__name__}")
        if uow is None:
            raise OrderStateError("Payment requests must be handled inside a unit of work")
        self._validate(event)

        existing = await uow.retry_histories.get(event.order_id)
        if existing is not None:
            logger.info(
                "retry_history_already_registered",
                order_id=event.order_id,
                status=existing.status.value,
            )
            return

        history = RetryHistory.create(
            order_id=event.order_id,
            transaction_id=event.transaction_id,
            max_attempts=self.max_attempts,
            now=self.clock(),
        )
        await uow.retry_histories.add(history)
        logger.info(
            "retry_history_registered",
            order_id=event.order_id,
            transaction_id=event.transaction_id,
            max_attempts=self.max_attempts,
        )

    @staticmethod
    def _validate(event: PaymentRequestedEvent) -> None:
        if not event.order_id:
            raise OrderStateError("Order ID is required")
        if not event.transaction_id:
            raise OrderStateError("Transaction ID is required")
        if not event.customer_id:
            raise OrderStateError("Customer ID is required")


def build_order_dispatcher(
    max_attempts: int,
    recorder: Optional[EventRecorder] = None,
    clock: Clock = utc_now,
) -> DomainEventDispatcher:
    """Dispatcher wired with the order service's handlers."""
    dispatcher = DomainEventDispatcher(recorder=recorder)
    dispatcher.register(
        "PaymentRequested", PaymentRequestedEventHandler(max_attempts, clock).handle
    )
    return dispatcher


class OrderService:
    """Places orders; the order, its retry history and its events share one transaction."""

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        dispatcher: DomainEventDispatcher,
        clock: Clock = utc_now,
    ):
        self.uow_factory = uow_factory
        self.dispatcher = dispatcher
        self.clock = clock

    async def place_order(self, customer_id: str, amount: Decimal, currency: str) -> Order:
        """
        Create an order and request its payment.

        Args:
            customer_id: Customer placing the order
            amount: Order total
            currency: 3-letter currency code

        Returns:
            Order: The order, in PAYMENT_PENDING

        Raises:
            OrderStateError: If the order data is invalid
            DispatchingError: If registering the payment saga failed
        """
        now = self.clock()
        order = Order.create(customer_id, amount, currency, now=now)
        order.request_payment(str(uuid.uuid4()), now=now)

        async with self.uow_factory() as uow:
            await self.dispatcher.dispatch(order, uow)
            await uow.orders.add(order)

        logger.info(
            "order_placed",
            order_id=order.order_id,
            customer_id=customer_id,
            transaction_id=order.transaction_id,
        )
        return order

    async def get_order(self, order_id: str) -> Optional[Order]:
        async with self.uow_factory() as uow:
            return await uow.orders.get(order_id)
