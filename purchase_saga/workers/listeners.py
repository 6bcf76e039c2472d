"""
Message listener worker.

    python -m purchase_saga.workers.listeners --role order    # payment results
    python -m purchase_saga.workers.listeners --role payment --gateway pkg.module:Gateway
"""
import argparse
import asyncio
import importlib
import signal
from typing import Optional

import structlog

from purchase_saga.config import Settings, get_settings
from purchase_saga.core.payment_results import PaymentResultHandler
from purchase_saga.core.payments import PaymentRequestService
from purchase_saga.core.ports import PaymentGateway
from purchase_saga.core.publisher import DomainEventPublisher
from purchase_saga.database.connection import close_db, get_session_factory
from purchase_saga.database.repositories import SqlAlchemyEventSink
from purchase_saga.database.unit_of_work import SqlAlchemyUnitOfWorkFactory
from purchase_saga.messaging.listener import PaymentRequestListener, PaymentResultListener
from purchase_saga.messaging.topology import connect, declare_topology
from purchase_saga.monitoring.event_log import EventRecorder
from purchase_saga.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def run_listeners(
    role: str,
    gateway: Optional[PaymentGateway] = None,
    settings: Optional[Settings] = None,
) -> None:
    """
    Consume saga messages until SIGINT/SIGTERM.

    Args:
        role: "order" consumes payment results, "payment" consumes payment requests
        gateway: Payment provider integration, required for the payment role
        settings: Settings override
    """
    settings = settings or get_settings()
    uow_factory = SqlAlchemyUnitOfWorkFactory()
    recorder = EventRecorder(SqlAlchemyEventSink(get_session_factory()))

    connection = await connect(settings)
    channel = await connection.channel()
    await channel.set_qos(prefetch_count=settings.consumer_prefetch_count)
    await declare_topology(channel, settings)

    if role == "order":
        handler = PaymentResultHandler(
            uow_factory, settings.retry_policy(), recorder=recorder
        )
        await PaymentResultListener(handler).start(
            await channel.get_queue(settings.payment_confirmation_queue),
            await channel.get_queue(settings.payment_failure_queue),
        )
    elif role == "payment":
        if gateway is None:
            raise ValueError("The payment role needs a PaymentGateway")
        service = PaymentRequestService(
            uow_factory,
            gateway,
            publisher=DomainEventPublisher(recorder=recorder),
            gateway_timeout_seconds=settings.gateway_timeout_seconds,
        )
        await PaymentRequestListener(service).start(
            await channel.get_queue(settings.payment_request_queue)
        )
    else:
        raise ValueError(f"Unknown listener role: {role}")

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    logger.info("listener_worker_started", role=role)
    try:
        await stop.wait()
    finally:
        await connection.close()
        await close_db()
        logger.info("listener_worker_stopped", role=role)


def load_gateway(path: str) -> PaymentGateway:
    """Instantiate a gateway class given as ``package.module:ClassName``."""
    module_name, _, attr = path.partition(":")
    if not module_name or not attr:
        raise ValueError(f"Gateway must be given as module:ClassName, got {path!r}")
    return getattr(importlib.import_module(module_name), attr)()


def main() -> None:
    parser = argparse.ArgumentParser(description="Purchase saga message listeners")
    parser.add_argument("--role", choices=["order", "payment"], required=True)
    parser.add_argument("--gateway", help="Payment gateway class (module:ClassName), payment role")
    args = parser.parse_args()

    setup_logging(f"{args.role}-listener")
    gateway = None
    if args.role == "payment":
        if not args.gateway:
            parser.error("--gateway is required for the payment role")
        gateway = load_gateway(args.gateway)
    asyncio.run(run_listeners(args.role, gateway=gateway))


if __name__ == "__main__":
    main()
