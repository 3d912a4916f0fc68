"""Asynchronous task distribution for the payment backend.

Modules include configuration, the RabbitMQ topology and connection manager,
the JSON publisher, the consumer/retry engine with dead-letter escalation,
DLQ helpers, metrics, tracing, and logging setup.
"""
