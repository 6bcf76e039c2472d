"""
Correlation of payment results with retry histories (order service).

Confirmations and failures are matched on order id and transaction id.
Duplicates for a resolved record and answers to superseded attempts are
absorbed without changing state. Work on one order is serialized by a
per-order lock plus a row lock inside the unit of work.
"""
from typing import Optional

import structlog

from purchase_saga.core.locking import KeyedLock
from purchase_saga.core.ports import UnitOfWork, UnitOfWorkFactory
from purchase_saga.domain.aggregates import OrderStatus
from purchase_saga.domain.clock import Clock, utc_now
from purchase_saga.domain.exceptions import RetryHistoryNotFoundError
from purchase_saga.domain.retry import (
    AttemptResult,
    ResolutionOutcome,
    RetryHistory,
    RetryPolicy,
)
from purchase_saga.monitoring import metrics
from purchase_saga.monitoring.event_log import EventRecorder

logger = structlog.get_logger(__name__)


class PaymentResultHandler:
    """Applies payment confirmations and failures to the saga state."""

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        policy: RetryPolicy,
        locks: Optional[KeyedLock] = None,
        recorder: Optional[EventRecorder] = None,
        clock: Clock = utc_now,
    ):
        self.uow_factory = uow_factory
        self.policy = policy
        self.locks = locks or KeyedLock()
        self.recorder = recorder or EventRecorder()
        self.clock = clock

    async def handle_confirmation(
        self, order_id: str, transaction_id: str, payment_id: str
    ) -> ResolutionOutcome:
        """
        Apply a payment confirmation.

        Args:
            order_id: Order the payment belongs to
            transaction_id: Transaction id of the answered attempt
            payment_id: Payment created by the payment service

        Returns:
            ResolutionOutcome: SUCCEEDED, DUPLICATE or STALE

        Raises:
            RetryHistoryNotFoundError: If the order has no retry history
        """
        async with self.locks.hold(order_id):
            async with self.uow_factory() as uow:
                history = await self._load(uow, order_id)
                now = self.clock()
                outcome = history.resolve_success(transaction_id, now=now)
                if outcome.changed_state:
                    await uow.retry_histories.save(history)
                    await self._confirm_order(uow, order_id, payment_id, now)

        self._log_outcome("confirmation", history, transaction_id, outcome)
        await self.recorder.record(
            "PAYMENT_CONFIRMATION",
            {"orderId": order_id, "transactionId": transaction_id, "paymentId": payment_id},
            outcome=outcome.value,
        )
        return outcome

    async def handle_failure(
        self,
        order_id: str,
        transaction_id: str,
        reason: str,
        result: AttemptResult = AttemptResult.FAILED,
    ) -> ResolutionOutcome:
        """
        Apply a failure signal: a payment failure, a publish failure or a timeout.

        Returns:
            ResolutionOutcome: RETRY_SCHEDULED, FINALLY_FAILED, DUPLICATE or STALE

        Raises:
            RetryHistoryNotFoundError: If the order has no retry history
        """
        async with self.locks.hold(order_id):
            async with self.uow_factory() as uow:
                history = await self._load(uow, order_id)
                now = self.clock()
                outcome = history.resolve_failure(
                    transaction_id, reason, self.policy, now=now, result=result
                )
                if outcome.changed_state:
                    await uow.retry_histories.save(history)
                if outcome == ResolutionOutcome.FINALLY_FAILED:
                    await self._fail_order(uow, order_id, reason, now)

        self._log_outcome("failure", history, transaction_id, outcome, reason=reason)
        await self.recorder.record(
            "PAYMENT_FAILURE",
            {"orderId": order_id, "transactionId": transaction_id, "reason": reason},
            outcome=outcome.value,
            result=result.value,
        )
        return outcome

    async def _load(self, uow: UnitOfWork, order_id: str) -> RetryHistory:
        history = await uow.retry_histories.get(order_id, for_update=True)
        if history is None:
            raise RetryHistoryNotFoundError(order_id)
        return history

    async def _confirm_order(self, uow: UnitOfWork, order_id: str, payment_id: str, now) -> None:
        order = await uow.orders.get(order_id, for_update=True)
        if order is None or order.status != OrderStatus.PAYMENT_PENDING:
            logger.warning(
                "order_not_awaiting_payment",
                order_id=order_id,
                status=order.status.value if order else None,
            )
            return
        order.confirm_payment(payment_id, now=now)
        await uow.orders.save(order)

    async def _fail_order(self, uow: UnitOfWork, order_id: str, reason: str, now) -> None:
        order = await uow.orders.get(order_id, for_update=True)
        if order is None or order.status != OrderStatus.PAYMENT_PENDING:
            logger.warning(
                "order_not_awaiting_payment",
                order_id=order_id,
                status=order.status.value if order else None,
            )
            return
        order.fail_payment(reason, now=now)
        await uow.orders.save(order)

    def _log_outcome(
        self,
        kind: str,
        history: RetryHistory,
        transaction_id: str,
        outcome: ResolutionOutcome,
        **fields,
    ) -> None:
        metrics.inbound_messages_total.labels(kind=kind, outcome=outcome.value).inc()
        if outcome in (ResolutionOutcome.SUCCEEDED, ResolutionOutcome.FINALLY_FAILED):
            metrics.retry_terminal_total.labels(status=history.status.value).inc()

        if outcome.changed_state:
            logger.info(
                "payment_result_applied",
                kind=kind,
                order_id=history.order_id,
                transaction_id=transaction_id,
                outcome=outcome.value,
                status=history.status.value,
                attempt_count=history.attempt_count,
                next_retry_at=history.next_retry_at.isoformat() if history.next_retry_at else None,
                **fields,
            )
        else:
            logger.info(
                "payment_result_ignored",
                kind=kind,
                order_id=history.order_id,
                transaction_id=transaction_id,
                current_transaction_id=history.current_transaction_id,
                outcome=outcome.value,
                status=history.status.value,
            )
