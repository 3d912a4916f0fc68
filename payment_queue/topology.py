"""Static RabbitMQ topology for the payment layer and its declaration.

The descriptor is pure data. ``declare_topology`` applies it to a channel,
once per connection establishment, in a fixed order:

1. the dead-letter queue (with its 24h message TTL, no dead-letter wiring)
2. every other queue, dead-letter-routed to the DLQ via the default exchange
3. exchanges
4. bindings

Declaring the DLQ first means no queue is ever declared pointing at a
dead-letter target that does not exist yet. Declares are idempotent on the
broker; redeclaring an entity with different arguments fails with
``PRECONDITION_FAILED`` and surfaces as ``TopologyError``.

Example:
    >>> channel = await connection.channel()
    >>> exchanges = await declare_topology(channel, DEFAULT_TOPOLOGY)
    >>> sorted(exchanges)
    ['notification.exchange', 'payment.exchange']
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

from aio_pika import ExchangeType
from aio_pika.abc import AbstractChannel, AbstractExchange
from aio_pika.exceptions import AMQPChannelError

from payment_queue.constants import (
    EXCHANGE_NOTIFICATION,
    EXCHANGE_PAYMENT,
    PAYMENT_ROUTING_PATTERN,
    QUEUE_PAYMENT_DLQ,
    QUEUE_PAYMENT_PROCESSING,
    QUEUE_WEBHOOK_DELIVERY,
    WORK_QUEUES,
    DLQ_MESSAGE_TTL_MS,
)
from payment_queue.dlq import dead_letter_arguments, dlq_arguments
from payment_queue.exceptions import TopologyError


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QueueSpec:
    """A durable queue, optionally dead-letter-wired to the topology's DLQ."""

    name: str
    durable: bool = True
    dead_letter: bool = True
    message_ttl_ms: Optional[int] = None

    def arguments(self, dlq_name: str) -> Dict[str, Any]:
        args: Dict[str, Any] = {}
        if self.message_ttl_ms is not None:
            args.update(dlq_arguments(self.message_ttl_ms))
        if self.dead_letter:
            args.update(dead_letter_arguments(dlq_name))
        return args


@dataclass(frozen=True)
class ExchangeSpec:
    name: str
    type: ExchangeType
    durable: bool = True


@dataclass(frozen=True)
class BindingSpec:
    queue: str
    exchange: str
    routing_key: str = ""


@dataclass(frozen=True)
class Topology:
    """Complete broker topology: a terminal DLQ plus work queues, exchanges, bindings."""

    dead_letter_queue: QueueSpec
    queues: Tuple[QueueSpec, ...] = field(default_factory=tuple)
    exchanges: Tuple[ExchangeSpec, ...] = field(default_factory=tuple)
    bindings: Tuple[BindingSpec, ...] = field(default_factory=tuple)

    @property
    def queue_names(self) -> Tuple[str, ...]:
        return (self.dead_letter_queue.name,) + tuple(q.name for q in self.queues)

    @property
    def exchange_names(self) -> Tuple[str, ...]:
        return tuple(e.name for e in self.exchanges)

    def validate(self) -> None:
        """Raise ``TopologyError`` if the descriptor is internally inconsistent."""
        if self.dead_letter_queue.dead_letter:
            raise TopologyError("dead-letter queue must not itself be dead-letter-wired", self.dead_letter_queue.name)
        queue_names = self.queue_names
        if len(set(queue_names)) != len(queue_names):
            raise TopologyError("duplicate queue names in topology")
        exchange_names = self.exchange_names
        if len(set(exchange_names)) != len(exchange_names):
            raise TopologyError("duplicate exchange names in topology")
        for binding in self.bindings:
            if binding.queue not in queue_names:
                raise TopologyError(f"binding references unknown queue {binding.queue!r}", binding.queue)
            if binding.exchange not in exchange_names:
                raise TopologyError(f"binding references unknown exchange {binding.exchange!r}", binding.exchange)


def build_default_topology() -> Topology:
    """Return the fixed payment topology."""
    return Topology(
        dead_letter_queue=QueueSpec(QUEUE_PAYMENT_DLQ, dead_letter=False, message_ttl_ms=DLQ_MESSAGE_TTL_MS),
        queues=tuple(QueueSpec(name) for name in WORK_QUEUES),
        exchanges=(
            ExchangeSpec(EXCHANGE_PAYMENT, ExchangeType.TOPIC),
            ExchangeSpec(EXCHANGE_NOTIFICATION, ExchangeType.FANOUT),
        ),
        bindings=(
            BindingSpec(QUEUE_PAYMENT_PROCESSING, EXCHANGE_PAYMENT, PAYMENT_ROUTING_PATTERN),
            BindingSpec(QUEUE_WEBHOOK_DELIVERY, EXCHANGE_NOTIFICATION, ""),
        ),
    )


DEFAULT_TOPOLOGY = build_default_topology()


async def declare_topology(channel: AbstractChannel, topology: Topology = DEFAULT_TOPOLOGY) -> Dict[str, AbstractExchange]:
    """Declare ``topology`` on ``channel`` and return the declared exchanges by name.

    Channel-level failures (argument mismatches, missing entities) raise
    ``TopologyError``. Connection-level failures propagate unchanged so the
    caller can treat them as connectivity problems.
    """
    topology.validate()
    dlq_name = topology.dead_letter_queue.name
    exchanges: Dict[str, AbstractExchange] = {}
    entity = dlq_name
    try:
        queues = {}
        for spec in (topology.dead_letter_queue,) + topology.queues:
            entity = spec.name
            queues[spec.name] = await channel.declare_queue(
                spec.name,
                durable=spec.durable,
                arguments=spec.arguments(dlq_name),
            )
        for ex in topology.exchanges:
            entity = ex.name
            exchanges[ex.name] = await channel.declare_exchange(ex.name, ex.type, durable=ex.durable)
        for binding in topology.bindings:
            entity = f"{binding.exchange}->{binding.queue}"
            # aio_pika falls back to the queue name when routing_key is None
            await queues[binding.queue].bind(exchanges[binding.exchange], routing_key=binding.routing_key)
    except AMQPChannelError as exc:
        logger.error("Error declaring RabbitMQ topology at %s: %r", entity, exc)
        raise TopologyError(f"failed to declare {entity}: {exc!r}", entity) from exc

    logger.info(
        "RabbitMQ topology declared: %d queues, %d exchanges, %d bindings",
        len(topology.queue_names),
        len(exchanges),
        len(topology.bindings),
    )
    return exchanges
