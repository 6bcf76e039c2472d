"""
Payment retry scheduler (order service).

Each tick, under a tick lock shared by all instances:
1. Sends a timeout failure for exhausted histories whose last attempt went unanswered
2. Selects due histories, oldest first
3. Per history: records a new attempt (fresh transaction id) and commits,
   then publishes the payment request

A publish failure keeps the consumed attempt and is applied as that
attempt's failure signal. One history failing never stops the others.
"""
import asyncio
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional

import structlog

from purchase_saga.core.locking import KeyedLock, LocalTickLock, TickLock
from purchase_saga.core.payment_results import PaymentResultHandler
from purchase_saga.core.ports import PaymentRequest, PaymentRequestSender, UnitOfWorkFactory
from purchase_saga.domain.aggregates import OrderStatus
from purchase_saga.domain.clock import Clock, utc_now
from purchase_saga.domain.exceptions import OrderStateError
from purchase_saga.domain.retry import (
    AttemptResult,
    RetryAttempt,
    RetryHistory,
    RetryPolicy,
    RetryStatistics,
    is_retryable,
)
from purchase_saga.monitoring import metrics
from purchase_saga.monitoring.event_log import EventRecorder

logger = structlog.get_logger(__name__)

TIMEOUT_REASON = "No payment result received before timeout"


@dataclass
class RetryTickResult:
    """Counters for one scheduler tick."""

    skipped: bool = False
    timed_out: int = 0
    selected: int = 0
    published: int = 0
    publish_failed: int = 0
    errors: int = 0


class PaymentRetryScheduler:
    """Publishes payment request attempts for due retry histories."""

    LOCK_NAME = "purchase-saga:payment-retry-scheduler"

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        sender: PaymentRequestSender,
        policy: RetryPolicy,
        results: Optional[PaymentResultHandler] = None,
        tick_lock: Optional[TickLock] = None,
        locks: Optional[KeyedLock] = None,
        batch_size: int = 50,
        tick_interval_seconds: float = 60.0,
        payment_timeout_seconds: float = 1800.0,
        stale_threshold_seconds: float = 7200.0,
        recorder: Optional[EventRecorder] = None,
        clock: Clock = utc_now,
        transaction_ids: Callable[[], str] = lambda: str(uuid.uuid4()),
    ):
        self.uow_factory = uow_factory
        self.sender = sender
        self.policy = policy
        self.locks = locks or KeyedLock()
        self.recorder = recorder or EventRecorder()
        self.clock = clock
        self.results = results or PaymentResultHandler(
            uow_factory, policy, locks=self.locks, recorder=self.recorder, clock=clock
        )
        self.tick_lock = tick_lock or LocalTickLock()
        self.batch_size = batch_size
        self.tick_interval_seconds = tick_interval_seconds
        self.payment_timeout = timedelta(seconds=payment_timeout_seconds)
        self.stale_threshold = timedelta(seconds=stale_threshold_seconds)
        self.transaction_ids = transaction_ids
        self._running = False

    async def run_once(self) -> RetryTickResult:
        """Run one scheduler tick."""
        async with self.tick_lock.hold(self.LOCK_NAME) as acquired:
            if not acquired:
                logger.debug("retry_tick_skipped_not_leader")
                return RetryTickResult(skipped=True)

            started = time.perf_counter()
            result = RetryTickResult()
            now = self.clock()

            result.timed_out = await self._expire_timed_out(now)

            async with self.uow_factory() as uow:
                candidates = await uow.retry_histories.find_retryable(now, self.batch_size)
            result.selected = len(candidates)

            for history in candidates:
                try:
                    published = await self._retry(history.order_id, now)
                except Exception as e:
                    result.errors += 1
                    logger.error(
                        "retry_attempt_failed",
                        order_id=history.order_id,
                        error=str(e),
                    )
                    continue
                if published is True:
                    result.published += 1
                elif published is False:
                    result.publish_failed += 1

            metrics.retry_scheduler_tick_duration_seconds.observe(time.perf_counter() - started)
            if result.selected or result.timed_out:
                logger.info(
                    "retry_tick_completed",
                    selected=result.selected,
                    published=result.published,
                    publish_failed=result.publish_failed,
                    errors=result.errors,
                    timed_out=result.timed_out,
                )
            return result

    async def _retry(self, order_id: str, now: datetime) -> Optional[bool]:
        """
        Record and publish one attempt.

        Returns:
            Optional[bool]: True if published, False if publishing failed,
            None if the history was no longer due once locked
        """
        async with self.locks.hold(order_id):
            async with self.uow_factory() as uow:
                history = await uow.retry_histories.get(order_id, for_update=True)
                if history is None or not is_retryable(history, now):
                    logger.debug("retry_candidate_no_longer_due", order_id=order_id)
                    return None
                order = await uow.orders.get(order_id, for_update=True)
                if order is None:
                    raise OrderStateError(f"Order {order_id} not found")

                transaction_id = self.transaction_ids()
                attempt = history.record_attempt(transaction_id, self.policy, now=now)
                await uow.retry_histories.save(history)
                if order.status == OrderStatus.PAYMENT_PENDING:
                    order.retry_payment(transaction_id, now=now)
                    await uow.orders.save(order)

        request = PaymentRequest(
            transaction_id=transaction_id,
            order_id=order.order_id,
            customer_id=order.customer_id,
            amount=order.amount,
            currency=order.currency,
            timestamp=now,
        )
        return await self._publish(request, attempt, history)

    async def _publish(
        self, request: PaymentRequest, attempt: RetryAttempt, history: RetryHistory
    ) -> bool:
        payload = {
            "orderId": request.order_id,
            "transactionId": request.transaction_id,
            "attemptNumber": attempt.attempt_number,
        }
        try:
            await self.sender.publish(request)
        except Exception as e:
            metrics.payment_request_attempts_total.labels(outcome="publish_failed").inc()
            logger.warning(
                "retry_attempt_publish_failed",
                order_id=request.order_id,
                transaction_id=request.transaction_id,
                attempt_number=attempt.attempt_number,
                error=str(e),
            )
            await self.recorder.record_failure("PAYMENT_REQUEST_ATTEMPT", payload, e)
            await self.results.handle_failure(
                request.order_id,
                request.transaction_id,
                f"Payment request publish failed: {e}",
                result=AttemptResult.PUBLISH_FAILED,
            )
            return False

        metrics.payment_request_attempts_total.labels(outcome="published").inc()
        logger.info(
            "retry_attempt_published",
            order_id=request.order_id,
            transaction_id=request.transaction_id,
            attempt_number=attempt.attempt_number,
            max_attempts=history.max_attempts,
            next_retry_at=history.next_retry_at.isoformat() if history.next_retry_at else None,
        )
        await self.recorder.record("PAYMENT_REQUEST_ATTEMPT", payload)
        return True

    async def _expire_timed_out(self, now: datetime) -> int:
        async with self.uow_factory() as uow:
            expired = await uow.retry_histories.find_timed_out(
                now - self.payment_timeout, self.batch_size
            )

        count = 0
        for history in expired:
            try:
                await self.results.handle_failure(
                    history.order_id,
                    history.current_transaction_id,
                    TIMEOUT_REASON,
                    result=AttemptResult.TIMED_OUT,
                )
                count += 1
            except Exception as e:
                logger.error("retry_timeout_failed", order_id=history.order_id, error=str(e))
        return count

    async def find_stale_retries(self) -> List[RetryHistory]:
        """Unresolved histories older than the staleness threshold. Read-only."""
        async with self.uow_factory() as uow:
            stale = await uow.retry_histories.find_stale(self.clock() - self.stale_threshold)
        if stale:
            logger.warning(
                "stale_retries_found",
                count=len(stale),
                order_ids=[h.order_id for h in stale],
            )
        return stale

    async def get_statistics(
        self, start: Optional[datetime] = None, end: Optional[datetime] = None
    ) -> RetryStatistics:
        async with self.uow_factory() as uow:
            return await uow.retry_histories.statistics(start, end)

    async def find_attempts(self, order_id: str) -> List[RetryAttempt]:
        async with self.uow_factory() as uow:
            return await uow.retry_histories.find_attempts(order_id)

    async def request_immediate_retry(self, order_id: str) -> bool:
        """Make an active history due on the next tick (operator action)."""
        async with self.locks.hold(order_id):
            async with self.uow_factory() as uow:
                history = await uow.retry_histories.get(order_id, for_update=True)
                if history is None or not history.schedule_immediate_retry(now=self.clock()):
                    logger.info("manual_retry_rejected", order_id=order_id)
                    return False
                await uow.retry_histories.save(history)
        logger.info("manual_retry_requested", order_id=order_id)
        return True

    async def cleanup_terminal(self, retention: timedelta) -> int:
        """Delete terminal histories untouched for longer than ``retention``."""
        async with self.uow_factory() as uow:
            deleted = await uow.retry_histories.delete_terminal_before(self.clock() - retention)
        if deleted:
            logger.info("retry_histories_cleaned_up", count=deleted)
        return deleted

    async def start(self) -> None:
        """Run ticks until stop() is called."""
        self._running = True
        logger.info("retry_scheduler_started", interval=self.tick_interval_seconds)

        try:
            while self._running:
                try:
                    await self.run_once()
                except Exception as e:
                    logger.error("retry_scheduler_error", error=str(e))
                await asyncio.sleep(self.tick_interval_seconds)
        finally:
            logger.info("retry_scheduler_stopped")

    def stop(self) -> None:
        self._running = False
        logger.info("retry_scheduler_stop_requested")
