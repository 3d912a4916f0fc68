"""Dead-letter queue helpers and queue administration.

The DLQ is not an active component: it is a durable terminal queue with a
24h message TTL, populated only by the broker's own dead-letter routing when
a consumer rejects a delivery without requeue. This module holds the queue
arguments that wire that routing, a decoder for dead-lettered messages, and
small admin helpers (depth and purge) used by operator scripts.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any, Optional

from pydantic import BaseModel, ConfigDict

from payment_queue.constants import (
    ARG_DEAD_LETTER_EXCHANGE,
    ARG_DEAD_LETTER_ROUTING_KEY,
    ARG_MESSAGE_TTL,
    DEATH_HEADER,
    DLQ_MESSAGE_TTL_MS,
)
from payment_queue.envelope import decode_body, retry_count_from_headers
from payment_queue.exceptions import MessageDecodeError

if TYPE_CHECKING:  # pragma: no cover - import only for typing
    from aio_pika.abc import AbstractMessage

    from payment_queue.connection import BrokerConnection


logger = logging.getLogger(__name__)


def dead_letter_arguments(dlq_name: str) -> dict[str, Any]:
    """Queue arguments routing rejected messages to ``dlq_name`` via the default exchange."""
    return {
        ARG_DEAD_LETTER_EXCHANGE: "",
        ARG_DEAD_LETTER_ROUTING_KEY: dlq_name,
    }


def dlq_arguments(ttl_ms: int = DLQ_MESSAGE_TTL_MS) -> dict[str, Any]:
    """Queue arguments for the terminal DLQ itself (TTL only, no dead-letter wiring)."""
    return {ARG_MESSAGE_TTL: ttl_ms}


class DeadLetterRecord(BaseModel):
    """Decoded view of a message sitting in the DLQ."""
    model_config = ConfigDict(extra="allow")

    source_queue: Optional[str] = None
    reason: Optional[str] = None
    death_count: int = 0
    died_at: Optional[datetime] = None
    retry_count: int = 0
    payload: Any = None
    decode_error: Optional[str] = None


def parse_dead_letter(message: "AbstractMessage") -> DeadLetterRecord:
    """Build a ``DeadLetterRecord`` from a dead-lettered message.

    RabbitMQ prepends an entry to the ``x-death`` header each time a message
    is dead-lettered; the first entry describes the most recent death.
    """
    headers = dict(message.headers or {})
    deaths = headers.get(DEATH_HEADER) or []
    latest: dict[str, Any] = dict(deaths[0]) if deaths else {}

    payload: Any = None
    decode_error: Optional[str] = None
    try:
        payload = decode_body(message.body)
    except MessageDecodeError as exc:
        decode_error = str(exc)

    reason = latest.get("reason")
    if isinstance(reason, bytes):
        reason = reason.decode("utf-8", errors="replace")
    return DeadLetterRecord(
        source_queue=latest.get("queue"),
        reason=reason,
        death_count=int(latest.get("count", 0) or 0),
        died_at=latest.get("time"),
        retry_count=retry_count_from_headers(headers),
        payload=payload,
        decode_error=decode_error,
    )


class QueueStats(BaseModel):
    queue: str
    message_count: int
    consumer_count: int


async def get_queue_stats(manager: "BrokerConnection", queue: str) -> Optional[QueueStats]:
    """Return depth and consumer count for ``queue``, or ``None`` on any error.

    Uses a passive declare on a short-lived channel: a missing queue closes
    the channel it was checked on, and that must not be the shared one.
    """
    try:
        connection = await manager.ensure_connection()
        channel = await connection.channel()
        try:
            declared = await channel.declare_queue(queue, passive=True)
            result = declared.declaration_result
            return QueueStats(
                queue=queue,
                message_count=int(result.message_count or 0),
                consumer_count=int(result.consumer_count or 0),
            )
        finally:
            if not channel.is_closed:
                await channel.close()
    except Exception as exc:  # noqa: BLE001
        logger.error("Error getting stats for queue %s: %r", queue, exc)
        return None


async def purge_queue(manager: "BrokerConnection", queue: str) -> bool:
    """Drop every ready message in ``queue``. Returns ``False`` on any error."""
    try:
        connection = await manager.ensure_connection()
        channel = await connection.channel()
        try:
            declared = await channel.declare_queue(queue, passive=True)
            await declared.purge()
        finally:
            if not channel.is_closed:
                await channel.close()
    except Exception as exc:  # noqa: BLE001
        logger.error("Error purging queue %s: %r", queue, exc)
        return False
    logger.info("Queue %s purged", queue)
    return True
