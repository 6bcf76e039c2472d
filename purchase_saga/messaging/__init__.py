"""RabbitMQ messaging adapters (aio-pika)."""
