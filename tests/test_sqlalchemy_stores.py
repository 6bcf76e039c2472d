"""
Integration tests for the SQLAlchemy stores, run against in-memory SQLite.
"""
from datetime import datetime, timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import select

from purchase_saga.core.locking import KeyedLock
from purchase_saga.core.orders import OrderService, build_order_dispatcher
from purchase_saga.core.payments import PaymentRequestService
from purchase_saga.core.payment_results import PaymentResultHandler
from purchase_saga.core.ports import GatewayResult, PaymentRequest
from purchase_saga.core.publisher import DomainEventPublisher
from purchase_saga.core.retry_scheduler import PaymentRetryScheduler
from purchase_saga.database.models import MessageEventLogRecord
from purchase_saga.database.repositories import SqlAlchemyEventSink
from purchase_saga.database.unit_of_work import SqlAlchemyUnitOfWorkFactory
from purchase_saga.domain.aggregates import OrderStatus, Payment, PaymentStatus
from purchase_saga.domain.exceptions import DuplicatePaymentError
from purchase_saga.domain.outbox import OutboxEntry
from purchase_saga.domain.retry import AttemptResult, RetryHistory, RetryStatus
from purchase_saga.monitoring.event_log import EventRecorder

pytestmark = pytest.mark.integration

NOW = datetime(2024, 1, 1, 12, 0, 0)


@pytest.fixture
def sql_uow_factory(sqlite_session_factory) -> SqlAlchemyUnitOfWorkFactory:
    return SqlAlchemyUnitOfWorkFactory(sqlite_session_factory)


class TestSqlAlchemyOutboxStore:
    """Test suite for SqlAlchemyOutboxStore."""

    @pytest.mark.asyncio
    async def test_outbox_lifecycle(self, sql_uow_factory) -> None:
        payment = Payment.create("order-1", "tx-1", "customer-1", Decimal("10.00"), "USD", now=NOW)
        payment.complete(now=NOW)
        async with sql_uow_factory() as uow:
            await uow.payments.add(payment)
            [entry] = await DomainEventPublisher().publish_aggregate(payment, uow)
        assert entry.id is not None

        async with sql_uow_factory() as uow:
            [pending] = await uow.outbox.fetch_pending(10, max_publish_attempts=3)
            assert pending.event_type == "PaymentProcessed"
            assert pending.payload["payment_id"] == payment.payment_id
            await uow.outbox.record_publish_failure(pending.id, "channel closed")

        async with sql_uow_factory() as uow:
            [pending] = await uow.outbox.fetch_pending(10, max_publish_attempts=3)
            assert pending.publish_attempts == 1
            assert pending.last_error == "channel closed"
            assert await uow.outbox.fetch_pending(10, max_publish_attempts=1) == []
            await uow.outbox.mark_published([pending.id], NOW)

        async with sql_uow_factory() as uow:
            assert await uow.outbox.count_pending() == 0
            assert await uow.outbox.delete_published_before(NOW) == 0
            assert await uow.outbox.delete_published_before(NOW + timedelta(seconds=1)) == 1

    @pytest.mark.asyncio
    async def test_rollback_discards_payment_and_entry(self, sql_uow_factory) -> None:
        payment = Payment.create("order-1", "tx-1", "customer-1", Decimal("10.00"), "USD", now=NOW)
        payment.fail("Card declined", now=NOW)

        with pytest.raises(RuntimeError):
            async with sql_uow_factory() as uow:
                await uow.payments.add(payment)
                await DomainEventPublisher().publish_aggregate(payment, uow)
                raise RuntimeError("abort")

        async with sql_uow_factory() as uow:
            assert await uow.outbox.count_pending() == 0
            assert await uow.payments.get_by_transaction_id("tx-1") is None

    @pytest.mark.asyncio
    async def test_parked_entry_holds_back_its_aggregate(self, sql_uow_factory) -> None:
        def entry(aggregate_id: str, event_id: str, seconds: int) -> OutboxEntry:
            return OutboxEntry(
                aggregate_id=aggregate_id,
                aggregate_type="Payment",
                event_type="PaymentProcessed",
                event_id=event_id,
                payload={"event_id": event_id},
                created_at=NOW + timedelta(seconds=seconds),
            )

        first = entry("p-1", "e-1", 0)
        async with sql_uow_factory() as uow:
            for staged in (first, entry("p-1", "e-2", 1), entry("p-2", "e-3", 2)):
                await uow.outbox.add(staged)
        async with sql_uow_factory() as uow:
            for _ in range(3):
                await uow.outbox.record_publish_failure(first.id, "channel closed")

        async with sql_uow_factory() as uow:
            pending = await uow.outbox.fetch_pending(10, max_publish_attempts=3)
            everything = await uow.outbox.fetch_pending(10)
        assert [e.event_id for e in pending] == ["e-3"]
        assert [e.event_id for e in everything] == ["e-1", "e-2", "e-3"]


class TestSqlAlchemyPaymentStore:
    """Test suite for SqlAlchemyPaymentStore and the payment claim."""

    @pytest.mark.asyncio
    async def test_second_payment_for_transaction_is_rejected(self, sql_uow_factory) -> None:
        claimed = Payment.create("order-1", "tx-1", "customer-1", Decimal("10.00"), "USD", now=NOW)
        async with sql_uow_factory() as uow:
            await uow.payments.add(claimed)

        with pytest.raises(DuplicatePaymentError):
            async with sql_uow_factory() as uow:
                await uow.payments.add(
                    Payment.create("order-1", "tx-1", "customer-1", Decimal("10.00"), "USD")
                )

        async with sql_uow_factory() as uow:
            stored = await uow.payments.get_by_transaction_id("tx-1")
        assert stored.payment_id == claimed.payment_id

    @pytest.mark.asyncio
    async def test_save_updates_status(self, sql_uow_factory) -> None:
        payment = Payment.create("order-1", "tx-1", "customer-1", Decimal("10.00"), "USD", now=NOW)
        async with sql_uow_factory() as uow:
            await uow.payments.add(payment)

        payment.fail("Card declined", now=NOW + timedelta(seconds=5))
        async with sql_uow_factory() as uow:
            await uow.payments.save(payment)

        async with sql_uow_factory() as uow:
            stored = await uow.payments.get_by_transaction_id("tx-1")
        assert stored.status == PaymentStatus.FAILED
        assert stored.error_message == "Card declined"
        assert stored.updated_at == NOW + timedelta(seconds=5)

    @pytest.mark.asyncio
    async def test_request_claimed_elsewhere_is_not_charged(self, sql_uow_factory) -> None:
        gateway = MagicMock()
        gateway.charge = AsyncMock(return_value=GatewayResult(success=True))
        first = PaymentRequestService(sql_uow_factory, gateway, locks=KeyedLock())
        second = PaymentRequestService(sql_uow_factory, gateway, locks=KeyedLock())
        request = PaymentRequest(
            transaction_id="tx-1",
            order_id="order-1",
            customer_id="customer-1",
            amount=Decimal("10.00"),
            currency="USD",
            timestamp=NOW,
        )

        charged = await first.handle(request)
        redelivered = await second.handle(request)

        gateway.charge.assert_awaited_once()
        assert redelivered.payment_id == charged.payment_id
        assert redelivered.status == PaymentStatus.COMPLETED
        async with sql_uow_factory() as uow:
            assert await uow.outbox.count_pending() == 1


class TestSqlAlchemyRetryHistoryStore:
    """Test suite for SqlAlchemyRetryHistoryStore."""

    @pytest.mark.asyncio
    async def test_history_round_trip_with_attempts(self, sql_uow_factory, policy) -> None:
        history = RetryHistory.create("order-1", "tx-0", 3, now=NOW)
        async with sql_uow_factory() as uow:
            await uow.retry_histories.add(history)

        async with sql_uow_factory() as uow:
            stored = await uow.retry_histories.get("order-1", for_update=True)
            stored.record_attempt("tx-1", policy, now=NOW)
            await uow.retry_histories.save(stored)

        async with sql_uow_factory() as uow:
            stored = await uow.retry_histories.get("order-1", for_update=True)
            stored.resolve_failure("tx-1", "declined", policy, now=NOW + timedelta(seconds=5))
            stored.record_attempt("tx-2", policy, now=NOW + timedelta(minutes=2))
            await uow.retry_histories.save(stored)

        async with sql_uow_factory() as uow:
            stored = await uow.retry_histories.get("order-1")
            attempts = await uow.retry_histories.find_attempts("order-1")

        assert stored.status == RetryStatus.RETRYING
        assert stored.attempt_count == 2
        assert stored.current_transaction_id == "tx-2"
        assert stored.original_transaction_id == "tx-0"
        assert [a.attempt_number for a in attempts] == [1, 2]
        assert attempts[0].result == AttemptResult.FAILED
        assert attempts[0].error_message == "declined"
        assert attempts[1].result is None

    @pytest.mark.asyncio
    async def test_selection_queries(self, sql_uow_factory, policy) -> None:
        due = RetryHistory.create("due", "tx-due", 3, now=NOW - timedelta(hours=3))
        later = RetryHistory.create("later", "tx-later", 3, now=NOW)
        later.record_attempt("tx-later-1", policy, now=NOW)
        exhausted = RetryHistory.create("exhausted", "tx-ex", 1, now=NOW - timedelta(hours=1))
        exhausted.record_attempt("tx-ex-1", policy, now=NOW - timedelta(hours=1))
        async with sql_uow_factory() as uow:
            for history in (due, later, exhausted):
                await uow.retry_histories.add(history)

        async with sql_uow_factory() as uow:
            retryable = await uow.retry_histories.find_retryable(NOW, 10)
            timed_out = await uow.retry_histories.find_timed_out(NOW - timedelta(minutes=30), 10)
            stale = await uow.retry_histories.find_stale(NOW - timedelta(hours=2))
            stats = await uow.retry_histories.statistics()

        assert [h.order_id for h in retryable] == ["due"]
        assert [h.order_id for h in timed_out] == ["exhausted"]
        assert [h.order_id for h in stale] == ["due"]
        assert stats.pending_count == 1
        assert stats.retrying_count == 2
        assert stats.max_attempts == 1

    @pytest.mark.asyncio
    async def test_delete_terminal_before(self, sql_uow_factory, policy) -> None:
        done = RetryHistory.create("done", "tx-done", 3, now=NOW)
        done.record_attempt("tx-done-1", policy, now=NOW)
        done.resolve_success("tx-done-1", now=NOW)
        active = RetryHistory.create("active", "tx-active", 3, now=NOW)
        async with sql_uow_factory() as uow:
            await uow.retry_histories.add(done)
            await uow.retry_histories.add(active)

        async with sql_uow_factory() as uow:
            deleted = await uow.retry_histories.delete_terminal_before(NOW + timedelta(days=1))

        async with sql_uow_factory() as uow:
            assert deleted == 1
            assert await uow.retry_histories.get("done") is None
            assert await uow.retry_histories.find_attempts("done") == []
            assert await uow.retry_histories.get("active") is not None


class TestSagaOverSqlAlchemy:
    """End-to-end saga over the SQLAlchemy stores."""

    @pytest.mark.asyncio
    async def test_failure_then_confirmation(
        self, sql_uow_factory, sender, policy, clock, sample_order_data
    ) -> None:
        service = OrderService(
            sql_uow_factory, build_order_dispatcher(policy.max_attempts, clock=clock), clock=clock
        )
        results = PaymentResultHandler(sql_uow_factory, policy, clock=clock)
        scheduler = PaymentRetryScheduler(
            sql_uow_factory, sender, policy, results=results, clock=clock
        )

        order = await service.place_order(**sample_order_data)
        await scheduler.run_once()
        await results.handle_failure(order.order_id, sender.transaction_ids[-1], "declined")
        clock.advance(seconds=60)
        await scheduler.run_once()
        await results.handle_confirmation(order.order_id, sender.transaction_ids[-1], "p-1")

        async with sql_uow_factory() as uow:
            history = await uow.retry_histories.get(order.order_id)
            stored_order = await uow.orders.get(order.order_id)

        assert history.status == RetryStatus.SUCCESSFUL
        assert history.attempt_count == 2
        assert stored_order.status == OrderStatus.PAYMENT_CONFIRMED
        assert stored_order.amount == Decimal("25.00")
        assert stored_order.payment_id == "p-1"


class TestSqlAlchemyEventSink:
    """Test suite for SqlAlchemyEventSink."""

    @pytest.mark.asyncio
    async def test_records_are_persisted(self, sqlite_session_factory) -> None:
        recorder = EventRecorder(SqlAlchemyEventSink(sqlite_session_factory), clock=lambda: NOW)

        await recorder.record_failure("OUTBOX_PUBLISH", {"event_id": "e-1"}, ValueError("nope"))

        async with sqlite_session_factory() as session:
            [record] = (await session.execute(select(MessageEventLogRecord))).scalars().all()
        assert record.event_type == "OUTBOX_PUBLISH"
        assert record.status == "FAILURE"
        assert record.error_message == "nope"
        assert record.payload == {"event_id": "e-1"}
        assert record.timestamp == NOW
