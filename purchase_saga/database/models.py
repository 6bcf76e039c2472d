"""SQLAlchemy database models for the purchase saga."""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from purchase_saga.domain.clock import utc_now

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JsonType = JSON().with_variant(JSONB(), "postgresql")
# SQLite only autoincrements INTEGER primary keys
BigIntegerId = BigInteger().with_variant(Integer(), "sqlite")


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class OrderRecord(Base):
    """Orders table (order service)."""

    __tablename__ = "orders"

    order_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    customer_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(19, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    transaction_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    payment_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_orders_positive_amount"),
        CheckConstraint(
            "status IN ('CREATED', 'PAYMENT_PENDING', 'PAYMENT_CONFIRMED', 'PAYMENT_FAILED')",
            name="ck_orders_valid_status",
        ),
    )

    def __repr__(self) -> str:
        return f"<OrderRecord(order_id={self.order_id}, status={self.status})>"


class PaymentRecord(Base):
    """Payments table (payment service). One payment per request transaction id."""

    __tablename__ = "payments"

    payment_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    order_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    transaction_id: Mapped[str] = mapped_column(String(36), nullable=False, unique=True)
    customer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(19, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_payments_positive_amount"),
        CheckConstraint(
            "status IN ('PENDING', 'COMPLETED', 'FAILED')", name="ck_payments_valid_status"
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<PaymentRecord(payment_id={self.payment_id}, "
            f"transaction_id={self.transaction_id}, status={self.status})>"
        )


class OutboxEventRecord(Base):
    """
    Transactional outbox table.

    Rows are inserted in the same transaction as the aggregate change and
    moved to PUBLISHED by the relay.
    """

    __tablename__ = "outbox_events"

    id: Mapped[int] = mapped_column(BigIntegerId, primary_key=True, autoincrement=True)
    aggregate_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    aggregate_type: Mapped[str] = mapped_column(String(64), nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    event_id: Mapped[str] = mapped_column(String(36), nullable=False, unique=True)
    payload: Mapped[Dict[str, Any]] = mapped_column(JsonType, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="PENDING")
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now)
    published_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    publish_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint("status IN ('PENDING', 'PUBLISHED')", name="ck_outbox_valid_status"),
        Index("idx_outbox_status_created", "status", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<OutboxEventRecord(id={self.id}, event_type={self.event_type}, "
            f"status={self.status})>"
        )


class RetryHistoryRecord(Base):
    """Payment retry history, one row per order."""

    __tablename__ = "payment_retry_history"

    order_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    original_transaction_id: Mapped[str] = mapped_column(String(36), nullable=False)
    current_transaction_id: Mapped[str] = mapped_column(String(36), nullable=False, unique=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False)
    first_attempt_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    next_retry_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    last_attempt_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    final_failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now)

    attempts: Mapped[List["RetryAttemptRecord"]] = relationship(
        back_populates="history",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="RetryAttemptRecord.attempt_number",
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('PENDING', 'RETRYING', 'SUCCESSFUL', 'FINALLY_FAILED')",
            name="ck_retry_valid_status",
        ),
        CheckConstraint("attempt_count >= 0", name="ck_retry_attempt_count_non_negative"),
        CheckConstraint("attempt_count <= max_attempts", name="ck_retry_attempt_count_bounded"),
        Index("idx_retry_status_next_retry", "status", "next_retry_at"),
        Index("idx_retry_first_attempt", "first_attempt_at"),
        Index("idx_retry_created", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<RetryHistoryRecord(order_id={self.order_id}, status={self.status}, "
            f"attempts={self.attempt_count}/{self.max_attempts})>"
        )


class RetryAttemptRecord(Base):
    """Append-only audit of payment request attempts."""

    __tablename__ = "payment_retry_attempts"

    id: Mapped[int] = mapped_column(BigIntegerId, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("payment_retry_history.order_id", ondelete="CASCADE"),
        nullable=False,
    )
    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False)
    transaction_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    attempted_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    result: Mapped[str | None] = mapped_column(String(20), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    history: Mapped[RetryHistoryRecord] = relationship(back_populates="attempts")

    __table_args__ = (
        UniqueConstraint("order_id", "attempt_number", name="uq_retry_attempt_number"),
        CheckConstraint("attempt_number >= 1", name="ck_retry_attempt_number_positive"),
    )


class MessageEventLogRecord(Base):
    """Message event log written by SqlAlchemyEventSink."""

    __tablename__ = "message_event_logs"

    id: Mapped[int] = mapped_column(BigIntegerId, primary_key=True, autoincrement=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    payload: Mapped[Dict[str, Any]] = mapped_column(JsonType, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    context: Mapped[Dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
