"""Consumer and retry engine.

Lifecycle of one delivery:

1. **Delivered**: the broker pushes a message; channel QoS (``prefetch``)
   bounds how many are in flight per consumer.
2. **Handling**: the body is decoded and the handler runs with a ``Delivery``.
   - ``Success`` (or a plain return) -> ack. Terminal.
   - ``Failure`` or a raised exception -> ``decide_retry``:
     - retry: schedule a re-publish of the same body to the same queue with
       ``retry-count + 1`` after ``min(1000 * 2**n, 60000)`` ms, then ack the
       original right away. The retry is a new message.
     - dead-letter: ``nack(requeue=False)``; the queue's dead-letter
       arguments make the broker move it to the DLQ. Terminal.
3. A crash or disconnect before ack/nack leaves the delivery unacked; the
   broker redelivers it later. Handlers must be idempotent.

Exactly one of ack/nack is issued per delivery, and handler failures never
escape the consumer callback.

Example:
    >>> consumer = Consumer(manager)
    >>> async def settle(delivery):
    ...     await ledger.apply(delivery.payload)
    >>> await consumer.consume("settlement.calculation", settle, prefetch=4, max_retries=5)
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from aio_pika.abc import AbstractChannel, AbstractIncomingMessage
from aio_pika.exceptions import (
    AMQPConnectionError,
    ChannelClosed,
    ChannelInvalidStateError,
    ChannelNotFoundEntity,
    ChannelPreconditionFailed,
)
from opentelemetry import context  # type: ignore

from payment_queue.config import Settings
from payment_queue.connection import BrokerConnection
from payment_queue.constants import (
    OUTCOME_ACKED,
    OUTCOME_DEAD_LETTERED,
    OUTCOME_RETRIED,
    RETRY_COUNT_HEADER,
)
from payment_queue.envelope import Delivery, retry_count_from_headers
from payment_queue.exceptions import BrokerConnectionError, ConsumerSetupError, MessageDecodeError
from payment_queue.metrics import (
    CONSUMED_TOTAL,
    DEAD_LETTERED_TOTAL,
    HANDLER_LATENCY_SECONDS,
    RETRY_REPUBLISH_FAILED_TOTAL,
    RETRY_SCHEDULED_TOTAL,
)
from payment_queue.publisher import Publisher
from payment_queue.results import Failure, HandlerResult, Success, as_result
from payment_queue.retry import RetryDecision, decide_retry
from payment_queue.scheduler import RetryScheduler
from payment_queue.tracing import extract_context_from_headers, get_tracer


logger = logging.getLogger(__name__)

Handler = Callable[[Delivery], Awaitable[Any]]

# Broker refusals; the channel is closed but retrying will not help
SETUP_ERRORS = (ChannelNotFoundEntity, ChannelPreconditionFailed)
# The channel went away underneath a call; the reconnect listener picks it up
DROPPED_CHANNEL_ERRORS = (ChannelInvalidStateError, ChannelClosed, AMQPConnectionError, ConnectionError)


@dataclass(eq=False)
class Subscription:
    """Handle for one queue consumer; survives reconnects until cancelled."""

    queue: str
    handler: Handler
    prefetch: int
    max_retries: int
    consumer_tag: Optional[str] = None
    channel: Optional[AbstractChannel] = field(default=None, repr=False)
    active: bool = True
    _consumer: Optional["Consumer"] = field(default=None, repr=False)

    async def cancel(self) -> None:
        """Stop receiving deliveries for this subscription."""
        if self._consumer is not None:
            await self._consumer.unsubscribe(self)
        else:
            self.active = False


class Consumer:
    """Subscribes handlers to queues and applies the two-tier retry policy.

    Interim retries are re-published by the application with backoff; the
    terminal failure is a reject that the broker dead-letters into the DLQ.
    """

    def __init__(
        self,
        connection: BrokerConnection,
        publisher: Optional[Publisher] = None,
        *,
        scheduler: Optional[RetryScheduler] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self._connection = connection
        self._publisher = publisher or Publisher(connection)
        self._scheduler = scheduler or RetryScheduler()
        self.settings = settings or connection.settings
        self._subscriptions: List[Subscription] = []
        self._tracer = get_tracer("payment-queue-consumer")
        connection.add_reconnect_listener(self._on_reconnected)

    @property
    def subscriptions(self) -> List[Subscription]:
        return [s for s in self._subscriptions if s.active]

    @property
    def scheduler(self) -> RetryScheduler:
        return self._scheduler

    async def subscribe(
        self,
        queue: str,
        handler: Handler,
        *,
        prefetch: Optional[int] = None,
        max_retries: Optional[int] = None,
    ) -> Subscription:
        """Start consuming ``queue`` with ``handler`` and return the subscription.

        If the broker is unreachable, or the channel drops during setup, the
        subscription is kept and attached by the next reconnect. Raises
        ``ConsumerSetupError`` if the broker refuses the consumer (e.g. the
        queue does not exist) and ``TopologyError`` from the connection manager.
        """
        prefetch = self.settings.prefetch_count if prefetch is None else int(prefetch)
        max_retries = self.settings.max_retries if max_retries is None else int(max_retries)
        if prefetch < 1:
            raise ConsumerSetupError(f"prefetch must be >= 1, got {prefetch}", queue)
        if max_retries < 1:
            raise ConsumerSetupError(f"max_retries must be >= 1, got {max_retries}", queue)

        subscription = Subscription(
            queue=queue,
            handler=handler,
            prefetch=prefetch,
            max_retries=max_retries,
            _consumer=self,
        )
        if self._connection.is_closing:
            raise BrokerConnectionError("connection manager is closed")

        try:
            channel = await self._connection.connect()
        except BrokerConnectionError as exc:
            self._subscriptions.append(subscription)
            logger.warning("RabbitMQ unavailable; consumer on %s starts once reconnected: %r", queue, exc)
            return subscription

        # Registered before attaching so a reconnect during setup re-attaches it
        self._subscriptions.append(subscription)
        try:
            await self._attach(subscription, channel)
        except Exception as exc:  # noqa: BLE001
            if isinstance(exc, DROPPED_CHANNEL_ERRORS) and not isinstance(exc, SETUP_ERRORS):
                logger.warning("Channel closed while consuming %s; resuming after reconnect: %r", queue, exc)
                return subscription
            self._forget(subscription)
            logger.error("Error consuming queue %s: %r", queue, exc)
            raise ConsumerSetupError(f"failed to consume {queue}: {exc!r}", queue) from exc
        except BaseException:
            self._forget(subscription)
            raise
        logger.info("Started consuming queue %s (prefetch=%d, max_retries=%d)", queue, prefetch, max_retries)
        return subscription

    async def consume(
        self,
        queue: str,
        handler: Handler,
        *,
        prefetch: Optional[int] = None,
        max_retries: Optional[int] = None,
    ) -> None:
        """Subscribe and keep consuming until the connection manager is closed."""
        await self.subscribe(queue, handler, prefetch=prefetch, max_retries=max_retries)
        await self._connection.wait_closed()

    async def unsubscribe(self, subscription: Subscription) -> None:
        self._forget(subscription)
        channel, tag = subscription.channel, subscription.consumer_tag
        subscription.channel = None
        subscription.consumer_tag = None
        if channel is None or tag is None or channel.is_closed:
            return
        try:
            queue = await channel.get_queue(subscription.queue, ensure=False)
            await queue.cancel(tag)
            logger.info("Stopped consuming queue %s", subscription.queue)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Error cancelling consumer on %s: %r", subscription.queue, exc)

    async def close(self, drain_timeout: Optional[float] = None) -> None:
        """Cancel all subscriptions and wait for pending retry re-publishes.

        Re-publishes still waiting after ``drain_timeout`` are cancelled; their
        originals were already acked, so each cancellation is logged.
        """
        self._connection.remove_reconnect_listener(self._on_reconnected)
        for subscription in list(self._subscriptions):
            await self.unsubscribe(subscription)
        timeout = self.settings.shutdown_drain_timeout_s if drain_timeout is None else drain_timeout
        dropped = await self._scheduler.drain(timeout)
        if dropped:
            logger.error("Dropped %d pending retry re-publishes at shutdown", dropped)

    # -------------------------
    # Wiring
    # -------------------------

    def _forget(self, subscription: Subscription) -> None:
        subscription.active = False
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    async def _attach(self, subscription: Subscription, channel: AbstractChannel) -> None:
        await channel.set_qos(prefetch_count=subscription.prefetch)
        queue = await channel.get_queue(subscription.queue, ensure=False)

        async def on_message(message: AbstractIncomingMessage) -> None:
            await self._on_message(subscription, message)

        subscription.consumer_tag = await queue.consume(on_message, no_ack=False)
        subscription.channel = channel

    async def _on_reconnected(self, channel: AbstractChannel) -> None:
        for subscription in list(self._subscriptions):
            if not subscription.active or subscription.channel is channel:
                continue
            try:
                await self._attach(subscription, channel)
                logger.info("Resumed consuming queue %s after reconnect", subscription.queue)
            except Exception as exc:  # noqa: BLE001
                logger.error("Error resuming consumer on %s: %r", subscription.queue, exc)

    # -------------------------
    # Delivery handling
    # -------------------------

    async def _on_message(self, subscription: Subscription, message: AbstractIncomingMessage) -> None:
        queue = subscription.queue
        try:
            headers = dict(message.headers or {})
            retry_count = retry_count_from_headers(headers)
            result = await self._run_handler(subscription, message, headers)
            if isinstance(result, Success):
                await self._ack(message, queue)
                CONSUMED_TOTAL.labels(queue=queue, outcome=OUTCOME_ACKED).inc()
                logger.debug("Message acknowledged from queue %s", queue)
                return
            await self._handle_failure(subscription, message, headers, retry_count, result)
        except Exception:  # noqa: BLE001
            logger.exception("Unexpected error handling message from queue %s", queue)

    async def _run_handler(
        self,
        subscription: Subscription,
        message: AbstractIncomingMessage,
        headers: Dict[str, Any],
    ) -> HandlerResult:
        queue = subscription.queue
        try:
            delivery = Delivery.from_incoming(queue, message)
        except MessageDecodeError as exc:
            logger.error("Malformed message body on queue %s: %s", queue, exc)
            return Failure(exc, retryable=not self.settings.dead_letter_malformed)

        logger.debug("Processing message from queue %s (retry %d)", queue, delivery.retry_count)
        token = context.attach(extract_context_from_headers(headers))
        start = time.perf_counter()
        try:
            with self._tracer.start_as_current_span("consume") as span:
                span.set_attribute("messaging.destination", queue)
                span.set_attribute("retry_count", delivery.retry_count)
                try:
                    return as_result(await subscription.handler(delivery))
                except Exception as exc:  # noqa: BLE001
                    span.record_exception(exc)
                    return Failure(exc)
        finally:
            HANDLER_LATENCY_SECONDS.labels(queue=queue).observe(time.perf_counter() - start)
            context.detach(token)

    async def _handle_failure(
        self,
        subscription: Subscription,
        message: AbstractIncomingMessage,
        headers: Dict[str, Any],
        retry_count: int,
        failure: Failure,
    ) -> None:
        queue = subscription.queue
        logger.error("Error processing message from queue %s: %s", queue, failure.reason)
        decision = decide_retry(retry_count, subscription.max_retries, failure)
        if decision.should_retry:
            await self._schedule_retry(subscription, message, headers, decision)
            return

        await self._reject(message, queue)
        CONSUMED_TOTAL.labels(queue=queue, outcome=OUTCOME_DEAD_LETTERED).inc()
        DEAD_LETTERED_TOTAL.labels(queue=queue).inc()
        logger.error(
            "Message sent to DLQ from %s after %d attempt(s) (max %d): %s",
            queue,
            decision.next_retry_count,
            decision.max_retries,
            failure.reason,
        )

    async def _schedule_retry(
        self,
        subscription: Subscription,
        message: AbstractIncomingMessage,
        headers: Dict[str, Any],
        decision: RetryDecision,
    ) -> None:
        queue = subscription.queue
        retry_headers = {**headers, RETRY_COUNT_HEADER: decision.next_retry_count}
        task = self._scheduler.call_later(
            decision.delay_ms / 1000.0,
            self._republish,
            queue,
            message.body,
            retry_headers,
        )
        RETRY_SCHEDULED_TOTAL.labels(queue=queue).inc()

        # TODO: require a publisher confirm before acking by default once the
        # added latency has been measured against settlement throughput.
        if self.settings.confirm_retry_before_ack:
            try:
                ok = await task
            except asyncio.CancelledError:
                # Shutdown dropped the re-publish; hand the original back to the broker
                await self._requeue(message, queue)
                if task.cancelled():
                    logger.warning("Retry re-publish to %s cancelled; original requeued", queue)
                    return
                raise
            if not ok:
                await self._requeue(message, queue)
                return

        await self._ack(message, queue)
        CONSUMED_TOTAL.labels(queue=queue, outcome=OUTCOME_RETRIED).inc()
        logger.info(
            "Message requeued to %s in %d ms (retry %d/%d)",
            queue,
            decision.delay_ms,
            decision.next_retry_count,
            decision.max_retries,
        )

    async def _republish(self, queue: str, body: bytes, headers: Dict[str, Any]) -> bool:
        ok = await self._publisher.republish(queue, body, headers)
        if not ok:
            RETRY_REPUBLISH_FAILED_TOTAL.labels(queue=queue).inc()
            logger.error(
                "Retry re-publish to %s failed (retry %s); message may be lost",
                queue,
                headers.get(RETRY_COUNT_HEADER),
            )
        return ok

    # -------------------------
    # Broker acknowledgements
    # -------------------------

    @staticmethod
    async def _ack(message: AbstractIncomingMessage, queue: str) -> None:
        try:
            await message.ack()
        except Exception as exc:  # noqa: BLE001
            logger.warning("Could not ack message from %s (broker will redeliver): %r", queue, exc)

    @staticmethod
    async def _reject(message: AbstractIncomingMessage, queue: str) -> None:
        try:
            await message.nack(requeue=False)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Could not reject message from %s (broker will redeliver): %r", queue, exc)

    @staticmethod
    async def _requeue(message: AbstractIncomingMessage, queue: str) -> None:
        try:
            await message.nack(requeue=True)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Could not requeue message from %s (broker will redeliver): %r", queue, exc)
