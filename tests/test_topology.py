"""
Unit tests for broker topology declaration and connection.
"""
from unittest.mock import AsyncMock, MagicMock

import aio_pika
import pytest

from purchase_saga.messaging import topology


class TestTopology:
    """Test suite for broker topology."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_declares_exchange_and_bound_queues(self, test_settings) -> None:
        channel = AsyncMock()
        queue = AsyncMock()
        channel.declare_queue.return_value = queue

        exchange = await topology.declare_topology(channel, test_settings)

        channel.declare_exchange.assert_awaited_once_with(
            "payment.exchange", aio_pika.ExchangeType.DIRECT, durable=True
        )
        assert exchange is channel.declare_exchange.return_value
        declared = [call.args[0] for call in channel.declare_queue.await_args_list]
        assert declared == [
            "payment.request.queue",
            "payment.confirmation.queue",
            "payment.failure.queue",
        ]
        routing_keys = [call.kwargs["routing_key"] for call in queue.bind.await_args_list]
        assert routing_keys == ["payment.request", "payment.confirmation", "payment.failure"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_initial_connect_is_retried(self, test_settings, mocker) -> None:
        connection = MagicMock()
        connect_robust = mocker.patch.object(
            topology.aio_pika,
            "connect_robust",
            AsyncMock(side_effect=[ConnectionError("refused"), connection]),
        )
        mocker.patch.object(topology.connect.retry, "sleep", AsyncMock())

        result = await topology.connect(test_settings)

        assert result is connection
        assert connect_robust.await_count == 2
