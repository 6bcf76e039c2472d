"""
Domain event publisher (payment service): the outbox writer.

Events are written as outbox entries through the caller's unit of work, so
the aggregate change and its events commit or roll back together.
"""
from typing import List, Optional, Sequence

import structlog

from purchase_saga.core.ports import UnitOfWork
from purchase_saga.domain.aggregates import AggregateRoot
from purchase_saga.domain.events import DomainEvent
from purchase_saga.domain.exceptions import SagaError, UnsupportedEventError
from purchase_saga.domain.outbox import OutboxEntry
from purchase_saga.monitoring import metrics
from purchase_saga.monitoring.event_log import EventRecorder

logger = structlog.get_logger(__name__)

PAYMENT_AGGREGATE = "Payment"


class PublishingError(SagaError):
    """Writing an outbox entry failed; the enclosing transaction must abort."""

    pass


def to_outbox_entry(event: DomainEvent) -> OutboxEntry:
    """
    Map an event to its outbox entry.

    Raises:
        UnsupportedEventError: If the event is not an outbox-published variant
    """
    match getattr(event, "event_type", None):
        case "PaymentProcessed" | "PaymentFailed":
            aggregate_type, aggregate_id = PAYMENT_AGGREGATE, event.payment_id
        case _:
            raise UnsupportedEventError(event)

    return OutboxEntry(
        aggregate_id=aggregate_id,
        aggregate_type=aggregate_type,
        event_type=event.event_type,
        event_id=event.event_id,
        payload=event.to_payload(),
        created_at=event.occurred_at,
    )


class DomainEventPublisher:
    """Writes domain events to the outbox inside a caller-owned unit of work."""

    def __init__(self, recorder: Optional[EventRecorder] = None):
        self.recorder = recorder or EventRecorder()

    async def publish(self, events: Sequence[DomainEvent], uow: UnitOfWork) -> List[OutboxEntry]:
        """
        Stage events in the outbox.

        Every event is mapped before anything is written, so an unsupported
        event leaves the outbox untouched.

        Args:
            events: Events to stage, in order
            uow: Open unit of work holding the aggregate change

        Returns:
            List[OutboxEntry]: Entries written

        Raises:
            UnsupportedEventError: If any event has no outbox mapping
            PublishingError: If an outbox write fails
        """
        entries = [to_outbox_entry(event) for event in events]

        for entry in entries:
            try:
                await uow.outbox.add(entry)
            except Exception as e:
                logger.error(
                    "outbox_write_failed",
                    event_type=entry.event_type,
                    aggregate_id=entry.aggregate_id,
                    error=str(e),
                )
                await self.recorder.record_failure("OUTBOX_WRITE", entry.payload, e)
                raise PublishingError(
                    f"Failed to write {entry.event_type} event {entry.event_id} to outbox"
                ) from e

            metrics.outbox_events_written_total.labels(event_type=entry.event_type).inc()
            logger.info(
                "outbox_event_written",
                event_type=entry.event_type,
                event_id=entry.event_id,
                aggregate_id=entry.aggregate_id,
            )
            await self.recorder.record(
                "OUTBOX_WRITE", entry.payload, aggregate_id=entry.aggregate_id
            )

        return entries

    async def publish_aggregate(self, aggregate: AggregateRoot, uow: UnitOfWork) -> List[OutboxEntry]:
        """Publish the aggregate's pending events and clear them once all are staged."""
        if not aggregate.has_events():
            return []
        entries = await self.publish(aggregate.domain_events, uow)
        aggregate.clear_events()
        return entries
