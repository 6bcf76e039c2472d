"""Purchase saga: transactional outbox, domain event dispatch and payment retry coordination."""

__version__ = "0.1.0"
