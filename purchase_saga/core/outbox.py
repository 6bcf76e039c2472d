"""
Outbox relay.

Delivers PENDING outbox entries to the broker in created_at order and marks
them PUBLISHED once the broker acknowledged them. Delivery is at least
once: an entry whose acknowledgement is lost gets published again, so
consumers must be idempotent.
"""
import asyncio
from datetime import timedelta
from typing import Awaitable, Callable, List, Optional, Set

import structlog

from purchase_saga.core.ports import UnitOfWorkFactory
from purchase_saga.domain.clock import Clock, utc_now
from purchase_saga.domain.outbox import OutboxEntry
from purchase_saga.monitoring import metrics
from purchase_saga.monitoring.event_log import EventRecorder

logger = structlog.get_logger(__name__)

EntryPublisher = Callable[[OutboxEntry], Awaitable[None]]


class OutboxRelay:
    """
    Publishes events from the outbox table to the message broker.

    Per batch:
    1. Read PENDING entries, oldest first
    2. Publish each; after a failure, later entries of the same aggregate wait
    3. Mark published entries and count failures in the same transaction
    """

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        publisher_func: EntryPublisher,
        batch_size: int = 50,
        poll_interval_seconds: float = 5.0,
        max_publish_failures: Optional[int] = 5,
        retention_hours: int = 24,
        recorder: Optional[EventRecorder] = None,
        clock: Clock = utc_now,
    ):
        """
        Args:
            uow_factory: Creates units of work over the outbox
            publisher_func: Publishes one entry; raises on failure
            batch_size: Entries per batch
            poll_interval_seconds: Wait between empty polls
            max_publish_failures: Failures after which an entry is parked (None: never)
            retention_hours: Age after which PUBLISHED entries are deleted
            recorder: Message event log
            clock: Time source
        """
        self.uow_factory = uow_factory
        self.publisher_func = publisher_func
        self.batch_size = batch_size
        self.poll_interval_seconds = poll_interval_seconds
        self.max_publish_failures = max_publish_failures
        self.retention = timedelta(hours=retention_hours)
        self.recorder = recorder or EventRecorder()
        self.clock = clock
        self._running = False

        logger.info(
            "outbox_relay_initialized",
            batch_size=batch_size,
            poll_interval=poll_interval_seconds,
        )

    async def _publish_entry(self, entry: OutboxEntry) -> Optional[str]:
        """Publish one entry. Returns the error message on failure, None on success."""
        try:
            await self.publisher_func(entry)
        except Exception as e:
            metrics.outbox_publish_failures_total.labels(event_type=entry.event_type).inc()
            logger.error(
                "outbox_event_publish_failed",
                entry_id=entry.id,
                event_type=entry.event_type,
                aggregate_id=entry.aggregate_id,
                publish_attempts=entry.publish_attempts + 1,
                error=str(e),
            )
            await self.recorder.record_failure(
                "OUTBOX_PUBLISH", entry.payload, e, entry_id=entry.id
            )
            return str(e) or type(e).__name__

        metrics.outbox_events_published_total.labels(event_type=entry.event_type).inc()
        logger.info(
            "outbox_event_published",
            entry_id=entry.id,
            event_type=entry.event_type,
            aggregate_id=entry.aggregate_id,
        )
        await self.recorder.record("OUTBOX_PUBLISH", entry.payload, entry_id=entry.id)
        return None

    async def process_batch(self) -> int:
        """
        Relay one batch of pending entries.

        Returns:
            int: Number of entries published
        """
        async with self.uow_factory() as uow:
            entries = await uow.outbox.fetch_pending(self.batch_size, self.max_publish_failures)
            if not entries:
                return 0

            published_ids: List[int] = []
            failed = 0
            blocked_aggregates: Set[str] = set()
            for entry in entries:
                if entry.aggregate_id in blocked_aggregates:
                    continue
                error = await self._publish_entry(entry)
                if error is None:
                    published_ids.append(entry.id)
                    continue

                failed += 1
                blocked_aggregates.add(entry.aggregate_id)
                await uow.outbox.record_publish_failure(entry.id, error)
                if (
                    self.max_publish_failures is not None
                    and entry.publish_attempts + 1 >= self.max_publish_failures
                ):
                    logger.error(
                        "outbox_event_parked",
                        entry_id=entry.id,
                        event_type=entry.event_type,
                        aggregate_id=entry.aggregate_id,
                        publish_attempts=entry.publish_attempts + 1,
                    )

            if published_ids:
                await uow.outbox.mark_published(published_ids, self.clock())

        logger.info(
            "outbox_batch_processed",
            total=len(entries),
            published=len(published_ids),
            failed=failed,
        )
        return len(published_ids)

    async def cleanup(self) -> int:
        """Delete PUBLISHED entries older than the retention period."""
        async with self.uow_factory() as uow:
            deleted = await uow.outbox.delete_published_before(self.clock() - self.retention)
        if deleted:
            logger.info("outbox_events_cleaned_up", count=deleted)
        return deleted

    async def get_pending_count(self) -> int:
        async with self.uow_factory() as uow:
            count = await uow.outbox.count_pending()
        metrics.outbox_pending_events.set(count)
        return count

    async def start(self) -> None:
        """
        Start the relay loop.

        Polls continuously; a full batch is followed by an immediate next poll.
        """
        self._running = True
        logger.info("outbox_relay_started")

        try:
            while self._running:
                try:
                    published_count = await self.process_batch()

                    if published_count == 0:
                        await asyncio.sleep(self.poll_interval_seconds)
                    else:
                        await asyncio.sleep(0.1)

                except Exception as e:
                    logger.error("outbox_relay_error", error=str(e))
                    await asyncio.sleep(self.poll_interval_seconds)

        finally:
            logger.info("outbox_relay_stopped")

    def stop(self) -> None:
        """Stop the outbox relay."""
        self._running = False
        logger.info("outbox_relay_stop_requested")
