"""Saga use cases: dispatch, outbox writing and relaying, retry coordination."""
