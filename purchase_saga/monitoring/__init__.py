"""Logging, message event log and metrics."""
