"""Domain model: events, aggregates and the payment retry state machine."""
