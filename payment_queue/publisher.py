"""Publishing JSON work items to queues and exchanges.

Every publish serializes the payload to compact JSON, marks the message
persistent with ``content_type=application/json`` and a timestamp, merges
caller options (e.g. ``headers``) over those defaults, and hands it to the
current channel. Publishing never raises: serialization errors, broker errors
and backpressure all surface as a ``False`` return, and the caller decides
whether to retry, drop, or block.

Example:
    >>> publisher = Publisher(BrokerConnection())
    >>> await publisher.publish_to_queue("payment.processing", {"amount": 100, "currency": "USD"})
    True
    >>> await publisher.publish_to_exchange("payment.exchange", "payment.captured", {"id": "pay_1"})
    True
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Mapping, Optional

from aio_pika.exceptions import (
    AMQPConnectionError,
    ChannelClosed,
    ChannelInvalidStateError,
    DeliveryError,
    PublishError,
)

from payment_queue.connection import BrokerConnection
from payment_queue.envelope import build_message, encode_payload
from payment_queue.exceptions import BrokerConnectionError, TopologyError
from payment_queue.metrics import PUBLISH_TOTAL
from payment_queue.tracing import inject_headers


logger = logging.getLogger(__name__)

# Raised when the channel we were handed was closed under us by a reconnect
STALE_CHANNEL_ERRORS = (ChannelInvalidStateError, ChannelClosed, AMQPConnectionError, ConnectionError)


class Publisher:
    """Durable JSON publisher bound to a ``BrokerConnection``."""

    def __init__(self, connection: BrokerConnection) -> None:
        self._connection = connection

    @property
    def connection(self) -> BrokerConnection:
        return self._connection

    async def publish_to_queue(
        self,
        queue: str,
        payload: Any,
        options: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        """Publish ``payload`` directly to ``queue`` via the default exchange.

        Returns ``False`` when the broker did not accept the message (buffer
        saturated, nacked, or any error); never raises.
        """
        try:
            body = encode_payload(payload)
        except (TypeError, ValueError) as exc:
            logger.error("Error publishing to queue %s: payload is not JSON-serializable: %r", queue, exc)
            PUBLISH_TOTAL.labels(target=queue, result="error").inc()
            return False
        return await self._send("", queue, body, options, target=queue)

    async def publish_to_exchange(
        self,
        exchange: str,
        routing_key: str,
        payload: Any,
        options: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        """Publish ``payload`` to ``exchange`` with ``routing_key``.

        Fanout exchanges ignore the routing key; topic exchanges match it
        against their bindings (``payment.#`` for ``payment.exchange``).
        """
        try:
            body = encode_payload(payload)
        except (TypeError, ValueError) as exc:
            logger.error("Error publishing to exchange %s: payload is not JSON-serializable: %r", exchange, exc)
            PUBLISH_TOTAL.labels(target=exchange, result="error").inc()
            return False
        return await self._send(exchange, routing_key, body, options, target=exchange)

    async def republish(self, queue: str, body: bytes, headers: Mapping[str, Any]) -> bool:
        """Send an already-encoded ``body`` to ``queue`` with ``headers``.

        Used by the retry engine so a retried message carries exactly the
        bytes it was first published with.
        """
        return await self._send("", queue, body, {"headers": dict(headers)}, target=queue)

    async def _send(
        self,
        exchange_name: str,
        routing_key: str,
        body: bytes,
        options: Optional[Mapping[str, Any]],
        *,
        target: str,
    ) -> bool:
        opts = dict(options or {})
        opts["headers"] = inject_headers(opts.get("headers"))
        try:
            message = build_message(body, opts)
        except (TypeError, ValueError) as exc:
            logger.error("Error publishing to %s: invalid publish options: %r", target, exc)
            PUBLISH_TOTAL.labels(target=target, result="error").inc()
            return False

        timeout = self._connection.settings.publish_timeout_s
        for attempt in (1, 2):
            channel = None
            try:
                channel = await self._connection.connect()
                exchange = await self._connection.get_exchange(exchange_name, channel)
                await exchange.publish(message, routing_key=routing_key, timeout=timeout)
            except PublishError as exc:
                logger.warning("Message to %s was returned unroutable (routing key %s): %r", target, routing_key, exc)
                PUBLISH_TOTAL.labels(target=target, result="unroutable").inc()
                return False
            except (asyncio.TimeoutError, DeliveryError) as exc:
                logger.warning("Message not sent to %s, channel buffer full or broker refused: %r", target, exc)
                PUBLISH_TOTAL.labels(target=target, result="backpressure").inc()
                return False
            except (BrokerConnectionError, TopologyError) as exc:
                logger.error("Error publishing to %s: broker unavailable: %r", target, exc)
                PUBLISH_TOTAL.labels(target=target, result="unavailable").inc()
                return False
            except STALE_CHANNEL_ERRORS as exc:
                self._connection.invalidate(channel)
                if attempt == 1:
                    logger.warning("Channel closed while publishing to %s; retrying on a new channel", target)
                    continue
                logger.error("Error publishing to %s: %r", target, exc)
                PUBLISH_TOTAL.labels(target=target, result="error").inc()
                return False
            except Exception as exc:  # noqa: BLE001
                logger.error("Error publishing to %s: %r", target, exc)
                PUBLISH_TOTAL.labels(target=target, result="error").inc()
                return False

            logger.debug("Message published to %s (routing key %s)", target, routing_key)
            PUBLISH_TOTAL.labels(target=target, result="ok").inc()
            return True
        return False
