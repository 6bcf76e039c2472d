"""
Outbox relay background worker (payment service).

Polls the outbox table and publishes payment outcomes to RabbitMQ.
"""
import asyncio
import signal
from typing import Any

import structlog

from purchase_saga.config import get_settings
from purchase_saga.core.outbox import OutboxRelay
from purchase_saga.database.connection import close_db, get_session_factory
from purchase_saga.database.repositories import SqlAlchemyEventSink
from purchase_saga.database.unit_of_work import SqlAlchemyUnitOfWorkFactory
from purchase_saga.messaging.publisher import PaymentResultPublisher
from purchase_saga.messaging.topology import connect, declare_topology
from purchase_saga.monitoring.event_log import EventRecorder
from purchase_saga.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)

CLEANUP_INTERVAL_SECONDS = 3600


async def _cleanup_loop(relay: OutboxRelay) -> None:
    while True:
        await asyncio.sleep(CLEANUP_INTERVAL_SECONDS)
        try:
            await relay.cleanup()
        except Exception as e:
            logger.error("outbox_cleanup_failed", error=str(e))


async def start_outbox_relay() -> None:
    """
    Start the outbox relay worker.

    Runs continuously until stopped.
    """
    setup_logging("outbox-relay")
    settings = get_settings()

    logger.info("outbox_relay_worker_starting")

    connection = await connect(settings)
    channel = await connection.channel(publisher_confirms=True)
    exchange = await declare_topology(channel, settings)

    publisher = PaymentResultPublisher(
        exchange,
        confirmation_routing_key=settings.payment_confirmation_routing_key,
        failure_routing_key=settings.payment_failure_routing_key,
        publish_timeout_seconds=settings.publish_timeout_seconds,
    )
    relay = OutboxRelay(
        SqlAlchemyUnitOfWorkFactory(),
        publisher_func=publisher.publish_entry,
        batch_size=settings.outbox_batch_size,
        poll_interval_seconds=settings.outbox_poll_interval_seconds,
        max_publish_failures=settings.outbox_max_publish_failures,
        retention_hours=settings.outbox_retention_hours,
        recorder=EventRecorder(SqlAlchemyEventSink(get_session_factory())),
    )

    def signal_handler(sig: int, frame: Any) -> None:
        logger.info("outbox_relay_worker_shutdown_signal_received", signal=sig)
        relay.stop()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    cleanup_task = asyncio.create_task(_cleanup_loop(relay))
    try:
        await relay.start()
    except Exception as e:
        logger.error("outbox_relay_worker_error", error=str(e))
        raise
    finally:
        cleanup_task.cancel()
        await connection.close()
        await close_db()
        logger.info("outbox_relay_worker_stopped")


def main() -> None:
    asyncio.run(start_outbox_relay())


if __name__ == "__main__":
    main()
