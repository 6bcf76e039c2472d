"""
Domain event dispatcher (order service).

Delivers the pending events of an aggregate to in-process handlers.
Dispatch is all-or-nothing per call: the aggregate's events are cleared
only when every handler succeeded, so a retried call redelivers all of them.
Durability comes from the unit of work the caller wraps around the call.
"""
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

import structlog

from purchase_saga.core.ports import UnitOfWork
from purchase_saga.domain.aggregates import AggregateRoot
from purchase_saga.domain.events import DomainEvent
from purchase_saga.domain.exceptions import SagaError, UnsupportedEventError
from purchase_saga.monitoring import metrics
from purchase_saga.monitoring.event_log import EventRecorder

logger = structlog.get_logger(__name__)

EventHandler = Callable[[DomainEvent, Optional[UnitOfWork]], Awaitable[None]]


class DispatchingError(SagaError):
    """A handler failed; the aggregate keeps all of its events."""

    def __init__(self, message: str, event: Optional[DomainEvent] = None):
        self.event = event
        super().__init__(message)


class DomainEventDispatcher:
    """Routes domain events to the handler registered for their event_type."""

    def __init__(self, recorder: Optional[EventRecorder] = None):
        self._handlers: Dict[str, EventHandler] = {}
        self.recorder = recorder or EventRecorder()

    def register(self, event_type: str, handler: EventHandler) -> None:
        if event_type in self._handlers:
            raise ValueError(f"Handler already registered for {event_type}")
        self._handlers[event_type] = handler
        logger.debug("event_handler_registered", event_type=event_type)

    def supports(self, event_type: str) -> bool:
        return event_type in self._handlers

    async def dispatch(
        self, aggregate: AggregateRoot, uow: Optional[UnitOfWork] = None
    ) -> None:
        """
        Dispatch the aggregate's pending events in insertion order.

        Args:
            aggregate: Aggregate holding the events
            uow: Unit of work handed to every handler

        Raises:
            UnsupportedEventError: If an event has no registered handler
            DispatchingError: If a handler fails
        """
        if not aggregate.has_events():
            return

        routed = self._route(aggregate.domain_events)

        for event, handler in routed:
            try:
                await handler(event, uow)
            except Exception as e:
                metrics.domain_events_dispatched_total.labels(
                    event_type=event.event_type, status="failure"
                ).inc()
                logger.error(
                    "domain_event_dispatch_failed",
                    event_type=event.event_type,
                    event_id=event.event_id,
                    error=str(e),
                )
                await self.recorder.record_failure(
                    "DOMAIN_EVENT_DISPATCH", event.to_payload(), e
                )
                raise DispatchingError(
                    f"Failed to dispatch {event.event_type} event {event.event_id}",
                    event=event,
                ) from e

            metrics.domain_events_dispatched_total.labels(
                event_type=event.event_type, status="success"
            ).inc()
            await self.recorder.record("DOMAIN_EVENT_DISPATCH", event.to_payload())

        aggregate.clear_events()
        logger.info("domain_events_dispatched", count=len(routed))

    def _route(self, events: List[DomainEvent]) -> List[Tuple[DomainEvent, EventHandler]]:
        routed = []
        for event in events:
            handler = self._handlers.get(getattr(event, "event_type", ""))
            if handler is None:
                logger.error("domain_event_unsupported", event=type(event).__name__)
                raise UnsupportedEventError(event)
            routed.append((event, handler))
        return routed
