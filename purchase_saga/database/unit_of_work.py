"""SQLAlchemy unit of work: one session, one transaction."""
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from purchase_saga.database.connection import get_session_factory
from purchase_saga.database.repositories import (
    SqlAlchemyOrderStore,
    SqlAlchemyOutboxStore,
    SqlAlchemyPaymentStore,
    SqlAlchemyRetryHistoryStore,
)


class SqlAlchemyUnitOfWork:
    """
    Transaction boundary over one AsyncSession.

    Example:
        async with SqlAlchemyUnitOfWork() as uow:
            await uow.payments.add(payment)
            await publisher.publish_aggregate(payment, uow)
    """

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        self.session_factory = session_factory or get_session_factory()
        self.session: Optional[AsyncSession] = None

    async def __aenter__(self) -> "SqlAlchemyUnitOfWork":
        self.session = self.session_factory()
        self.outbox = SqlAlchemyOutboxStore(self.session)
        self.retry_histories = SqlAlchemyRetryHistoryStore(self.session)
        self.orders = SqlAlchemyOrderStore(self.session)
        self.payments = SqlAlchemyPaymentStore(self.session)
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        try:
            if exc_type is None:
                await self.session.commit()
            else:
                await self.session.rollback()
        finally:
            await self.session.close()
            self.session = None


class SqlAlchemyUnitOfWorkFactory:
    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        self.session_factory = session_factory

    def __call__(self) -> SqlAlchemyUnitOfWork:
        return SqlAlchemyUnitOfWork(self.session_factory)
