"""
Tests for the payment retry scheduler and its interplay with payment results.
"""
import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest

from purchase_saga.core.locking import LocalTickLock
from purchase_saga.core.retry_scheduler import TIMEOUT_REASON, PaymentRetryScheduler
from purchase_saga.domain.aggregates import OrderStatus
from purchase_saga.domain.retry import (
    AttemptResult,
    ResolutionOutcome,
    RetryHistory,
    RetryStatus,
)
from purchase_saga.infrastructure.memory import InMemoryRetryHistoryStore


async def load_history(uow_factory, order_id: str) -> RetryHistory:
    async with uow_factory() as uow:
        return await uow.retry_histories.get(order_id)


async def load_order(uow_factory, order_id: str):
    async with uow_factory() as uow:
        return await uow.orders.get(order_id)


class TestRetryTick:
    """Test suite for PaymentRetryScheduler.run_once."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_first_tick_publishes_request_for_new_order(
        self, order_service, scheduler, sender, uow_factory, sample_order_data, clock
    ) -> None:
        order = await order_service.place_order(**sample_order_data)

        result = await scheduler.run_once()

        assert result.selected == 1
        assert result.published == 1
        [request] = sender.requests
        assert request.order_id == order.order_id
        assert request.customer_id == "customer-123"
        assert request.amount == Decimal("25.00")
        assert request.currency == "USD"
        assert request.timestamp == clock()

        history = await load_history(uow_factory, order.order_id)
        assert history.status == RetryStatus.RETRYING
        assert history.attempt_count == 1
        assert history.current_transaction_id == request.transaction_id
        assert history.next_retry_at == clock() + timedelta(seconds=60)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_not_due_history_is_not_selected(
        self, order_service, scheduler, sender, sample_order_data, clock
    ) -> None:
        await order_service.place_order(**sample_order_data)
        await scheduler.run_once()

        clock.advance(seconds=59)
        result = await scheduler.run_once()

        assert result.selected == 0
        assert len(sender.requests) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_three_failures_end_in_final_failure(
        self, order_service, scheduler, results, sender, uow_factory, sample_order_data, clock
    ) -> None:
        order = await order_service.place_order(**sample_order_data)

        await scheduler.run_once()
        outcome = await results.handle_failure(
            order.order_id, sender.transaction_ids[-1], "Insufficient funds"
        )
        assert outcome == ResolutionOutcome.RETRY_SCHEDULED

        clock.advance(seconds=60)
        await scheduler.run_once()
        outcome = await results.handle_failure(
            order.order_id, sender.transaction_ids[-1], "Insufficient funds"
        )
        assert outcome == ResolutionOutcome.RETRY_SCHEDULED
        history = await load_history(uow_factory, order.order_id)
        assert history.next_retry_at == clock() + timedelta(seconds=120)

        clock.advance(seconds=120)
        await scheduler.run_once()
        outcome = await results.handle_failure(
            order.order_id, sender.transaction_ids[-1], "Card expired"
        )
        assert outcome == ResolutionOutcome.FINALLY_FAILED

        history = await load_history(uow_factory, order.order_id)
        assert history.status == RetryStatus.FINALLY_FAILED
        assert history.attempt_count == 3
        assert history.final_failure_reason == "Card expired"
        assert history.next_retry_at is None
        assert len(set(sender.transaction_ids)) == 3

        stored_order = await load_order(uow_factory, order.order_id)
        assert stored_order.status == OrderStatus.PAYMENT_FAILED

        clock.advance(days=1)
        assert (await scheduler.run_once()).selected == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_confirmation_completes_saga(
        self, order_service, scheduler, results, sender, uow_factory, sample_order_data, clock
    ) -> None:
        order = await order_service.place_order(**sample_order_data)
        await scheduler.run_once()

        outcome = await results.handle_confirmation(
            order.order_id, sender.transaction_ids[-1], "payment-1"
        )

        assert outcome == ResolutionOutcome.SUCCEEDED
        history = await load_history(uow_factory, order.order_id)
        assert history.status == RetryStatus.SUCCESSFUL
        assert history.attempts[0].result == AttemptResult.SUCCESS
        stored_order = await load_order(uow_factory, order.order_id)
        assert stored_order.status == OrderStatus.PAYMENT_CONFIRMED
        assert stored_order.payment_id == "payment-1"

        clock.advance(days=1)
        assert (await scheduler.run_once()).selected == 0
        assert len(sender.requests) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_duplicate_and_stale_answers_change_nothing(
        self, order_service, scheduler, results, sender, uow_factory, sample_order_data, clock
    ) -> None:
        order = await order_service.place_order(**sample_order_data)
        await scheduler.run_once()
        first_tx = sender.transaction_ids[-1]
        await results.handle_failure(order.order_id, first_tx, "declined")
        clock.advance(seconds=60)
        await scheduler.run_once()
        second_tx = sender.transaction_ids[-1]

        assert await results.handle_confirmation(order.order_id, first_tx, "p-old") == (
            ResolutionOutcome.STALE
        )
        assert await results.handle_confirmation(order.order_id, second_tx, "p-1") == (
            ResolutionOutcome.SUCCEEDED
        )
        assert await results.handle_confirmation(order.order_id, second_tx, "p-1") == (
            ResolutionOutcome.DUPLICATE
        )
        assert await results.handle_failure(order.order_id, second_tx, "late") == (
            ResolutionOutcome.DUPLICATE
        )

        stored_order = await load_order(uow_factory, order.order_id)
        assert stored_order.payment_id == "p-1"
        history = await load_history(uow_factory, order.order_id)
        assert history.status == RetryStatus.SUCCESSFUL

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_publish_failure_consumes_attempt(
        self, order_service, scheduler, sender, uow_factory, sample_order_data, clock
    ) -> None:
        order = await order_service.place_order(**sample_order_data)
        sender.fail()

        result = await scheduler.run_once()

        assert result.publish_failed == 1
        assert result.published == 0
        history = await load_history(uow_factory, order.order_id)
        assert history.status == RetryStatus.RETRYING
        assert history.attempt_count == 1
        assert history.attempts[0].result == AttemptResult.PUBLISH_FAILED
        assert "broker unavailable" in history.attempts[0].error_message
        assert history.next_retry_at == clock() + timedelta(seconds=60)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_publish_failure_on_last_attempt_is_terminal(
        self, order_service, scheduler, sender, uow_factory, sample_order_data, clock
    ) -> None:
        order = await order_service.place_order(**sample_order_data)
        sender.fail()

        for delay in (0, 60, 120):
            clock.advance(seconds=delay)
            await scheduler.run_once()

        history = await load_history(uow_factory, order.order_id)
        assert history.status == RetryStatus.FINALLY_FAILED
        assert [a.result for a in history.attempts] == [AttemptResult.PUBLISH_FAILED] * 3
        stored_order = await load_order(uow_factory, order.order_id)
        assert stored_order.status == OrderStatus.PAYMENT_FAILED

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unanswered_last_attempt_times_out(
        self, order_service, scheduler, results, sender, uow_factory, sample_order_data, clock
    ) -> None:
        order = await order_service.place_order(**sample_order_data)
        for delay in (0, 60, 120):
            clock.advance(seconds=delay)
            await scheduler.run_once()
            if delay < 120:
                await results.handle_failure(order.order_id, sender.transaction_ids[-1], "declined")

        clock.advance(seconds=1799)
        assert (await scheduler.run_once()).timed_out == 0

        clock.advance(seconds=1)
        result = await scheduler.run_once()

        assert result.timed_out == 1
        history = await load_history(uow_factory, order.order_id)
        assert history.status == RetryStatus.FINALLY_FAILED
        assert history.final_failure_reason == TIMEOUT_REASON
        assert history.attempts[-1].result == AttemptResult.TIMED_OUT
        stored_order = await load_order(uow_factory, order.order_id)
        assert stored_order.status == OrderStatus.PAYMENT_FAILED

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_one_broken_record_does_not_stop_the_tick(
        self, order_service, scheduler, sender, uow_factory, sample_order_data, clock
    ) -> None:
        async with uow_factory() as uow:
            await uow.retry_histories.add(
                RetryHistory.create(
                    "orphan-order", "tx-orphan", 3, now=clock() - timedelta(minutes=5)
                )
            )
        order = await order_service.place_order(**sample_order_data)

        result = await scheduler.run_once()

        assert result.selected == 2
        assert result.errors == 1
        assert result.published == 1
        assert [r.order_id for r in sender.requests] == [order.order_id]
        orphan = await load_history(uow_factory, "orphan-order")
        assert orphan.attempt_count == 0
        assert orphan.status == RetryStatus.PENDING

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_tick_skipped_while_lock_held(
        self, order_service, uow_factory, sender, policy, sample_order_data, clock
    ) -> None:
        tick_lock = LocalTickLock()
        scheduler = PaymentRetryScheduler(
            uow_factory, sender, policy, tick_lock=tick_lock, clock=clock
        )
        await order_service.place_order(**sample_order_data)

        async with tick_lock.hold(PaymentRetryScheduler.LOCK_NAME) as acquired:
            assert acquired is True
            result = await scheduler.run_once()

        assert result.skipped is True
        assert sender.requests == []
        assert (await scheduler.run_once()).published == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_attempts_are_logged_to_sink(
        self, order_service, scheduler, sink, sample_order_data
    ) -> None:
        await order_service.place_order(**sample_order_data)

        await scheduler.run_once()

        assert "PAYMENT_REQUEST_ATTEMPT" in sink.event_types()


class TestRetryOperations:
    """Test suite for scheduler maintenance and read operations."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_find_stale_retries(
        self, order_service, scheduler, results, sender, sample_order_data, clock
    ) -> None:
        stale = await order_service.place_order(**sample_order_data)
        done = await order_service.place_order(**sample_order_data)
        await scheduler.run_once()
        done_tx = next(r.transaction_id for r in sender.requests if r.order_id == done.order_id)
        await results.handle_confirmation(done.order_id, done_tx, "p-1")

        clock.advance(hours=2)
        assert await scheduler.find_stale_retries() == []

        clock.advance(seconds=1)
        found = await scheduler.find_stale_retries()

        assert [h.order_id for h in found] == [stale.order_id]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_immediate_retry_makes_history_due(
        self, order_service, scheduler, sender, sample_order_data
    ) -> None:
        order = await order_service.place_order(**sample_order_data)
        await scheduler.run_once()
        assert (await scheduler.run_once()).selected == 0

        assert await scheduler.request_immediate_retry(order.order_id) is True
        result = await scheduler.run_once()

        assert result.published == 1
        assert len(sender.requests) == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_immediate_retry_rejected_for_terminal_or_unknown(
        self, order_service, scheduler, results, sender, sample_order_data
    ) -> None:
        order = await order_service.place_order(**sample_order_data)
        await scheduler.run_once()
        await results.handle_confirmation(order.order_id, sender.transaction_ids[-1], "p-1")

        assert await scheduler.request_immediate_retry(order.order_id) is False
        assert await scheduler.request_immediate_retry("missing-order") is False

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cleanup_terminal_respects_retention(
        self, order_service, scheduler, results, sender, uow_factory, sample_order_data, clock
    ) -> None:
        done = await order_service.place_order(**sample_order_data)
        active = await order_service.place_order(**sample_order_data)
        await scheduler.run_once()
        done_tx = next(r.transaction_id for r in sender.requests if r.order_id == done.order_id)
        await results.handle_confirmation(done.order_id, done_tx, "p-1")

        clock.advance(days=29)
        assert await scheduler.cleanup_terminal(timedelta(days=30)) == 0

        clock.advance(days=2)
        assert await scheduler.cleanup_terminal(timedelta(days=30)) == 1
        assert await load_history(uow_factory, done.order_id) is None
        assert await load_history(uow_factory, active.order_id) is not None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_statistics(
        self, order_service, scheduler, results, sender, sample_order_data, clock
    ) -> None:
        done = await order_service.place_order(**sample_order_data)
        await scheduler.run_once()
        await results.handle_confirmation(done.order_id, sender.transaction_ids[-1], "p-1")
        clock.advance(minutes=1)
        await order_service.place_order(**sample_order_data)

        stats = await scheduler.get_statistics()

        assert stats.successful_count == 1
        assert stats.pending_count == 1
        assert stats.total_count == 2
        assert stats.success_rate == 1.0
        assert stats.average_attempts == 0.5

        windowed = await scheduler.get_statistics(start=clock())
        assert windowed.total_count == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_find_attempts(
        self, order_service, scheduler, results, sender, sample_order_data, clock
    ) -> None:
        order = await order_service.place_order(**sample_order_data)
        await scheduler.run_once()
        await results.handle_failure(order.order_id, sender.transaction_ids[-1], "declined")
        clock.advance(seconds=60)
        await scheduler.run_once()

        attempts = await scheduler.find_attempts(order.order_id)

        assert [a.attempt_number for a in attempts] == [1, 2]
        assert [a.transaction_id for a in attempts] == sender.transaction_ids
        assert attempts[0].result == AttemptResult.FAILED
        assert attempts[0].error_message == "declined"
        assert attempts[1].result is None
        assert await scheduler.find_attempts("missing-order") == []


class TestConcurrentResults:
    """Test suite for racing answers to the same order."""

    @pytest.fixture
    def slow_history_reads(self, monkeypatch):
        """Suspend after every retry history read so racing handlers interleave."""
        original_get = InMemoryRetryHistoryStore.get

        async def get(store, order_id: str, for_update: bool = False):
            history = await original_get(store, order_id, for_update)
            await asyncio.sleep(0.01)
            return history

        monkeypatch.setattr(InMemoryRetryHistoryStore, "get", get)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_confirmation_and_failure_race_for_same_order(
        self, order_service, scheduler, results, sender, uow_factory, sample_order_data,
        slow_history_reads,
    ) -> None:
        order = await order_service.place_order(**sample_order_data)
        await scheduler.run_once()
        tx = sender.transaction_ids[-1]

        confirmed, failed = await asyncio.gather(
            results.handle_confirmation(order.order_id, tx, "payment-1"),
            results.handle_failure(order.order_id, tx, "declined"),
        )

        assert confirmed == ResolutionOutcome.SUCCEEDED
        assert failed == ResolutionOutcome.DUPLICATE
        history = await load_history(uow_factory, order.order_id)
        assert history.status == RetryStatus.SUCCESSFUL
        assert [a.result for a in history.attempts] == [AttemptResult.SUCCESS]
        stored_order = await load_order(uow_factory, order.order_id)
        assert stored_order.status == OrderStatus.PAYMENT_CONFIRMED

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failure_winning_the_race_absorbs_confirmation(
        self, order_service, scheduler, results, sender, uow_factory, sample_order_data,
        slow_history_reads,
    ) -> None:
        order = await order_service.place_order(**sample_order_data)
        await scheduler.run_once()
        tx = sender.transaction_ids[-1]

        failed, confirmed = await asyncio.gather(
            results.handle_failure(order.order_id, tx, "declined"),
            results.handle_confirmation(order.order_id, tx, "payment-1"),
        )

        assert failed == ResolutionOutcome.RETRY_SCHEDULED
        assert confirmed == ResolutionOutcome.DUPLICATE
        history = await load_history(uow_factory, order.order_id)
        assert history.status == RetryStatus.RETRYING
        assert [a.result for a in history.attempts] == [AttemptResult.FAILED]
