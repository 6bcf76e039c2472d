"""Broker connection and exchange/queue declarations."""
import aio_pika
import structlog
from aio_pika.abc import AbstractChannel, AbstractExchange, AbstractRobustConnection
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from purchase_saga.config import Settings

logger = structlog.get_logger(__name__)


@retry(
    retry=retry_if_exception_type((ConnectionError, OSError)),
    stop=stop_after_attempt(5),
    wait=wait_exponential(multiplier=1, min=1, max=16),
    reraise=True,
)
async def connect(settings: Settings) -> AbstractRobustConnection:
    """
    Open a robust (auto-reconnecting) connection to RabbitMQ.

    connect_robust only reconnects after a first successful connection, so
    the initial connect is retried with exponential backoff.
    """
    connection = await aio_pika.connect_robust(
        settings.rabbitmq_url, timeout=settings.publish_timeout_seconds
    )
    logger.info("broker_connected")
    return connection


async def declare_topology(channel: AbstractChannel, settings: Settings) -> AbstractExchange:
    """
    Declare the payment exchange and its queues.

    Returns:
        AbstractExchange: The durable direct payment exchange
    """
    exchange = await channel.declare_exchange(
        settings.payment_exchange, aio_pika.ExchangeType.DIRECT, durable=True
    )
    bindings = (
        (settings.payment_request_queue, settings.payment_request_routing_key),
        (settings.payment_confirmation_queue, settings.payment_confirmation_routing_key),
        (settings.payment_failure_queue, settings.payment_failure_routing_key),
    )
    for queue_name, routing_key in bindings:
        queue = await channel.declare_queue(queue_name, durable=True)
        await queue.bind(exchange, routing_key=routing_key)
        logger.debug("queue_declared", queue=queue_name, routing_key=routing_key)
    return exchange
