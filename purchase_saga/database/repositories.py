"""SQLAlchemy implementations of the core storage interfaces."""
from datetime import datetime
from typing import List, Optional, Sequence

import structlog
from sqlalchemy import delete, exists, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import aliased

from purchase_saga.domain.aggregates import Order, OrderStatus, Payment, PaymentStatus
from purchase_saga.domain.exceptions import DuplicatePaymentError
from purchase_saga.domain.outbox import OutboxEntry, OutboxStatus
from purchase_saga.domain.retry import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    AttemptResult,
    RetryAttempt,
    RetryHistory,
    RetryStatistics,
    RetryStatus,
    is_retryable,
    is_timed_out,
)
from purchase_saga.database.models import (
    MessageEventLogRecord,
    OrderRecord,
    OutboxEventRecord,
    PaymentRecord,
    RetryAttemptRecord,
    RetryHistoryRecord,
)
from purchase_saga.monitoring.event_log import MessageEventRecord

logger = structlog.get_logger(__name__)

_ACTIVE = [s.value for s in ACTIVE_STATUSES]
_TERMINAL = [s.value for s in TERMINAL_STATUSES]


class SqlAlchemyOutboxStore:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(self, entry: OutboxEntry) -> None:
        record = OutboxEventRecord(
            aggregate_id=entry.aggregate_id,
            aggregate_type=entry.aggregate_type,
            event_type=entry.event_type,
            event_id=entry.event_id,
            payload=entry.payload,
            status=entry.status.value,
            created_at=entry.created_at,
            publish_attempts=entry.publish_attempts,
        )
        self.session.add(record)
        await self.session.flush()
        entry.id = record.id

    async def fetch_pending(
        self, limit: int, max_publish_attempts: Optional[int] = None
    ) -> List[OutboxEntry]:
        stmt = (
            select(OutboxEventRecord)
            .where(OutboxEventRecord.status == OutboxStatus.PENDING.value)
            .order_by(OutboxEventRecord.created_at, OutboxEventRecord.id)
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        if max_publish_attempts is not None:
            # A parked entry holds back the rest of its aggregate
            parked = aliased(OutboxEventRecord)
            stmt = stmt.where(
                ~exists().where(
                    parked.aggregate_id == OutboxEventRecord.aggregate_id,
                    parked.status == OutboxStatus.PENDING.value,
                    parked.publish_attempts >= max_publish_attempts,
                )
            )
        result = await self.session.execute(stmt)
        return [self._to_entry(record) for record in result.scalars().all()]

    async def mark_published(self, entry_ids: Sequence[int], published_at: datetime) -> None:
        if not entry_ids:
            return
        stmt = (
            update(OutboxEventRecord)
            .where(OutboxEventRecord.id.in_(list(entry_ids)))
            .values(status=OutboxStatus.PUBLISHED.value, published_at=published_at)
        )
        await self.session.execute(stmt)

    async def record_publish_failure(self, entry_id: int, error: str) -> None:
        stmt = (
            update(OutboxEventRecord)
            .where(OutboxEventRecord.id == entry_id)
            .values(
                publish_attempts=OutboxEventRecord.publish_attempts + 1,
                last_error=error[:2000],
            )
        )
        await self.session.execute(stmt)

    async def delete_published_before(self, before: datetime) -> int:
        stmt = delete(OutboxEventRecord).where(
            OutboxEventRecord.status == OutboxStatus.PUBLISHED.value,
            OutboxEventRecord.published_at < before,
        )
        result = await self.session.execute(stmt)
        return result.rowcount or 0

    async def count_pending(self) -> int:
        stmt = select(func.count()).select_from(OutboxEventRecord).where(
            OutboxEventRecord.status == OutboxStatus.PENDING.value
        )
        return (await self.session.execute(stmt)).scalar_one()

    @staticmethod
    def _to_entry(record: OutboxEventRecord) -> OutboxEntry:
        return OutboxEntry(
            id=record.id,
            aggregate_id=record.aggregate_id,
            aggregate_type=record.aggregate_type,
            event_type=record.event_type,
            event_id=record.event_id,
            payload=record.payload,
            status=OutboxStatus(record.status),
            created_at=record.created_at,
            published_at=record.published_at,
            publish_attempts=record.publish_attempts,
            last_error=record.last_error,
        )


class SqlAlchemyRetryHistoryStore:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(self, history: RetryHistory) -> None:
        record = RetryHistoryRecord(order_id=history.order_id, attempts=[])
        self._apply(record, history)
        self.session.add(record)
        await self.session.flush()

    async def get(self, order_id: str, for_update: bool = False) -> Optional[RetryHistory]:
        record = await self._get_record(order_id, for_update)
        return self._to_domain(record) if record is not None else None

    async def save(self, history: RetryHistory) -> None:
        record = await self._get_record(history.order_id)
        if record is None:
            raise LookupError(f"Retry history for order {history.order_id} does not exist")
        self._apply(record, history)
        await self.session.flush()

    async def find_retryable(self, now: datetime, limit: int) -> List[RetryHistory]:
        stmt = (
            select(RetryHistoryRecord)
            .where(
                RetryHistoryRecord.status.in_(_ACTIVE),
                RetryHistoryRecord.attempt_count < RetryHistoryRecord.max_attempts,
                or_(
                    RetryHistoryRecord.next_retry_at.is_(None),
                    RetryHistoryRecord.next_retry_at <= now,
                ),
            )
            .order_by(RetryHistoryRecord.first_attempt_at)
            .limit(limit)
        )
        histories = await self._fetch(stmt)
        return [h for h in histories if is_retryable(h, now)]

    async def find_timed_out(self, answered_before: datetime, limit: int) -> List[RetryHistory]:
        stmt = (
            select(RetryHistoryRecord)
            .where(
                RetryHistoryRecord.status == RetryStatus.RETRYING.value,
                RetryHistoryRecord.attempt_count >= RetryHistoryRecord.max_attempts,
                RetryHistoryRecord.last_attempt_at <= answered_before,
            )
            .order_by(RetryHistoryRecord.first_attempt_at)
            .limit(limit)
        )
        histories = await self._fetch(stmt)
        return [h for h in histories if is_timed_out(h, answered_before)]

    async def find_stale(self, older_than: datetime) -> List[RetryHistory]:
        stmt = (
            select(RetryHistoryRecord)
            .where(
                RetryHistoryRecord.status.in_(_ACTIVE),
                RetryHistoryRecord.first_attempt_at < older_than,
            )
            .order_by(RetryHistoryRecord.first_attempt_at)
        )
        return await self._fetch(stmt)

    async def find_attempts(self, order_id: str) -> List[RetryAttempt]:
        stmt = (
            select(RetryAttemptRecord)
            .where(RetryAttemptRecord.order_id == order_id)
            .order_by(RetryAttemptRecord.attempt_number)
        )
        result = await self.session.execute(stmt)
        return [self._to_attempt(record) for record in result.scalars().all()]

    async def statistics(
        self, start: Optional[datetime] = None, end: Optional[datetime] = None
    ) -> RetryStatistics:
        stmt = select(
            RetryHistoryRecord.status,
            func.count(),
            func.sum(RetryHistoryRecord.attempt_count),
            func.max(RetryHistoryRecord.attempt_count),
        ).group_by(RetryHistoryRecord.status)
        if start is not None:
            stmt = stmt.where(RetryHistoryRecord.created_at >= start)
        if end is not None:
            stmt = stmt.where(RetryHistoryRecord.created_at <= end)

        counts = {status: 0 for status in RetryStatus}
        total_attempts = 0
        max_attempts = 0
        for status, count, attempt_sum, attempt_max in (await self.session.execute(stmt)).all():
            counts[RetryStatus(status)] = count
            total_attempts += attempt_sum or 0
            max_attempts = max(max_attempts, attempt_max or 0)

        total = sum(counts.values())
        return RetryStatistics(
            pending_count=counts[RetryStatus.PENDING],
            retrying_count=counts[RetryStatus.RETRYING],
            successful_count=counts[RetryStatus.SUCCESSFUL],
            finally_failed_count=counts[RetryStatus.FINALLY_FAILED],
            average_attempts=total_attempts / total if total else 0.0,
            max_attempts=max_attempts,
        )

    async def delete_terminal_before(self, before: datetime) -> int:
        expired = select(RetryHistoryRecord.order_id).where(
            RetryHistoryRecord.status.in_(_TERMINAL),
            RetryHistoryRecord.updated_at < before,
        )
        order_ids = list((await self.session.execute(expired)).scalars().all())
        if not order_ids:
            return 0
        await self.session.execute(
            delete(RetryAttemptRecord).where(RetryAttemptRecord.order_id.in_(order_ids))
        )
        result = await self.session.execute(
            delete(RetryHistoryRecord).where(RetryHistoryRecord.order_id.in_(order_ids))
        )
        return result.rowcount or 0

    async def _get_record(
        self, order_id: str, for_update: bool = False
    ) -> Optional[RetryHistoryRecord]:
        stmt = select(RetryHistoryRecord).where(RetryHistoryRecord.order_id == order_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _fetch(self, stmt) -> List[RetryHistory]:
        result = await self.session.execute(stmt)
        return [self._to_domain(record) for record in result.scalars().all()]

    @staticmethod
    def _apply(record: RetryHistoryRecord, history: RetryHistory) -> None:
        record.original_transaction_id = history.original_transaction_id
        record.current_transaction_id = history.current_transaction_id
        record.status = history.status.value
        record.attempt_count = history.attempt_count
        record.max_attempts = history.max_attempts
        record.first_attempt_at = history.first_attempt_at
        record.next_retry_at = history.next_retry_at
        record.last_attempt_at = history.last_attempt_at
        record.final_failure_reason = history.final_failure_reason
        record.created_at = history.created_at
        record.updated_at = history.updated_at

        existing = {a.attempt_number: a for a in record.attempts}
        for attempt in history.attempts:
            attempt_record = existing.get(attempt.attempt_number)
            if attempt_record is None:
                record.attempts.append(
                    RetryAttemptRecord(
                        attempt_number=attempt.attempt_number,
                        transaction_id=attempt.transaction_id,
                        attempted_at=attempt.attempted_at,
                        result=attempt.result.value if attempt.result else None,
                        error_message=attempt.error_message,
                        completed_at=attempt.completed_at,
                    )
                )
            elif attempt_record.result is None and attempt.result is not None:
                attempt_record.result = attempt.result.value
                attempt_record.error_message = attempt.error_message
                attempt_record.completed_at = attempt.completed_at

    @classmethod
    def _to_domain(cls, record: RetryHistoryRecord) -> RetryHistory:
        return RetryHistory(
            order_id=record.order_id,
            original_transaction_id=record.original_transaction_id,
            current_transaction_id=record.current_transaction_id,
            max_attempts=record.max_attempts,
            status=RetryStatus(record.status),
            attempt_count=record.attempt_count,
            first_attempt_at=record.first_attempt_at,
            next_retry_at=record.next_retry_at,
            last_attempt_at=record.last_attempt_at,
            final_failure_reason=record.final_failure_reason,
            created_at=record.created_at,
            updated_at=record.updated_at,
            attempts=[cls._to_attempt(a) for a in record.attempts],
        )

    @staticmethod
    def _to_attempt(record: RetryAttemptRecord) -> RetryAttempt:
        return RetryAttempt(
            attempt_number=record.attempt_number,
            transaction_id=record.transaction_id,
            attempted_at=record.attempted_at,
            result=AttemptResult(record.result) if record.result else None,
            error_message=record.error_message,
            completed_at=record.completed_at,
        )


class SqlAlchemyOrderStore:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(self, order: Order) -> None:
        record = OrderRecord(order_id=order.order_id)
        self._apply(record, order)
        self.session.add(record)
        await self.session.flush()

    async def get(self, order_id: str, for_update: bool = False) -> Optional[Order]:
        record = await self._get_record(order_id, for_update)
        return self._to_domain(record) if record is not None else None

    async def save(self, order: Order) -> None:
        record = await self._get_record(order.order_id)
        if record is None:
            raise LookupError(f"Order {order.order_id} does not exist")
        self._apply(record, order)
        await self.session.flush()

    async def _get_record(self, order_id: str, for_update: bool = False) -> Optional[OrderRecord]:
        stmt = select(OrderRecord).where(OrderRecord.order_id == order_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        return (await self.session.execute(stmt)).scalar_one_or_none()

    @staticmethod
    def _apply(record: OrderRecord, order: Order) -> None:
        record.customer_id = order.customer_id
        record.amount = order.amount
        record.currency = order.currency
        record.status = order.status.value
        record.transaction_id = order.transaction_id
        record.payment_id = order.payment_id
        record.failure_reason = order.failure_reason
        record.created_at = order.created_at
        record.updated_at = order.updated_at

    @staticmethod
    def _to_domain(record: OrderRecord) -> Order:
        return Order(
            order_id=record.order_id,
            customer_id=record.customer_id,
            amount=record.amount,
            currency=record.currency,
            status=OrderStatus(record.status),
            transaction_id=record.transaction_id,
            payment_id=record.payment_id,
            failure_reason=record.failure_reason,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )


class SqlAlchemyPaymentStore:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(self, payment: Payment) -> None:
        self.session.add(
            PaymentRecord(
                payment_id=payment.payment_id,
                order_id=payment.order_id,
                transaction_id=payment.transaction_id,
                customer_id=payment.customer_id,
                amount=payment.amount,
                currency=payment.currency,
                status=payment.status.value,
                error_message=payment.error_message,
                created_at=payment.created_at,
                updated_at=payment.updated_at,
            )
        )
        try:
            await self.session.flush()
        except IntegrityError as e:
            # Unique transaction_id: another consumer claimed this request first
            raise DuplicatePaymentError(payment.transaction_id) from e

    async def save(self, payment: Payment) -> None:
        stmt = (
            update(PaymentRecord)
            .where(PaymentRecord.payment_id == payment.payment_id)
            .values(
                status=payment.status.value,
                error_message=payment.error_message,
                updated_at=payment.updated_at,
            )
        )
        result = await self.session.execute(stmt)
        if result.rowcount != 1:
            raise LookupError(f"Payment {payment.payment_id} does not exist")

    async def get_by_transaction_id(self, transaction_id: str) -> Optional[Payment]:
        stmt = select(PaymentRecord).where(PaymentRecord.transaction_id == transaction_id)
        record = (await self.session.execute(stmt)).scalar_one_or_none()
        if record is None:
            return None
        return Payment(
            payment_id=record.payment_id,
            order_id=record.order_id,
            transaction_id=record.transaction_id,
            customer_id=record.customer_id,
            amount=record.amount,
            currency=record.currency,
            status=PaymentStatus(record.status),
            error_message=record.error_message,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )


class SqlAlchemyEventSink:
    """
    Persists message event records to ``message_event_logs``.

    Uses its own session, so a failed write never touches the business
    transaction that produced the record.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def save(self, record: MessageEventRecord) -> None:
        async with self.session_factory() as session:
            session.add(
                MessageEventLogRecord(
                    event_type=record.event_type,
                    payload=record.payload,
                    status=record.status.value,
                    error_message=record.error_message,
                    context=record.context or None,
                    timestamp=record.timestamp,
                )
            )
            await session.commit()
