"""
Payment retry scheduler worker (order service).

Every tick publishes due payment request attempts. Safe to run on several
instances: ticks are guarded by a Redis lock.
"""
import asyncio
import signal
from datetime import timedelta
from typing import Any

import structlog

from purchase_saga.config import get_settings
from purchase_saga.core.locking import RedlockTickLock
from purchase_saga.core.retry_scheduler import PaymentRetryScheduler
from purchase_saga.database.connection import close_db, get_session_factory
from purchase_saga.database.repositories import SqlAlchemyEventSink
from purchase_saga.database.unit_of_work import SqlAlchemyUnitOfWorkFactory
from purchase_saga.messaging.publisher import PaymentRequestPublisher
from purchase_saga.messaging.topology import connect, declare_topology
from purchase_saga.monitoring.event_log import EventRecorder
from purchase_saga.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)

MAINTENANCE_INTERVAL_SECONDS = 3600


async def _maintenance_loop(scheduler: PaymentRetryScheduler, retention: timedelta) -> None:
    while True:
        await asyncio.sleep(MAINTENANCE_INTERVAL_SECONDS)
        try:
            await scheduler.find_stale_retries()
            await scheduler.cleanup_terminal(retention)
        except Exception as e:
            logger.error("retry_maintenance_failed", error=str(e))


async def start_retry_worker() -> None:
    """Start the retry scheduler and run until stopped."""
    setup_logging("retry-worker")
    settings = get_settings()

    logger.info("retry_worker_starting", max_attempts=settings.retry_max_attempts)

    connection = await connect(settings)
    channel = await connection.channel(publisher_confirms=True)
    exchange = await declare_topology(channel, settings)

    recorder = EventRecorder(SqlAlchemyEventSink(get_session_factory()))
    sender = PaymentRequestPublisher(
        exchange,
        routing_key=settings.payment_request_routing_key,
        ttl_ms=settings.message_ttl_ms,
        publish_timeout_seconds=settings.publish_timeout_seconds,
        source=settings.message_source,
        schema_version=settings.message_schema_version,
        recorder=recorder,
    )
    scheduler = PaymentRetryScheduler(
        SqlAlchemyUnitOfWorkFactory(),
        sender,
        settings.retry_policy(),
        tick_lock=RedlockTickLock([settings.redis_url], settings.scheduler_lock_ttl_ms),
        batch_size=settings.retry_batch_size,
        tick_interval_seconds=settings.retry_tick_interval_seconds,
        payment_timeout_seconds=settings.payment_timeout_seconds,
        stale_threshold_seconds=settings.stale_retry_threshold_seconds,
        recorder=recorder,
    )

    def signal_handler(sig: int, frame: Any) -> None:
        logger.info("retry_worker_shutdown_signal_received", signal=sig)
        scheduler.stop()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    maintenance_task = asyncio.create_task(
        _maintenance_loop(scheduler, timedelta(days=settings.retry_history_retention_days))
    )
    try:
        await scheduler.start()
    except Exception as e:
        logger.error("retry_worker_error", error=str(e))
        raise
    finally:
        maintenance_task.cancel()
        await connection.close()
        await close_db()
        logger.info("retry_worker_stopped")


def main() -> None:
    asyncio.run(start_retry_worker())


if __name__ == "__main__":
    main()
