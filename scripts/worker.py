"""
Asynchronous payment queue worker.

- Consumes one or more work queues (``WORKER_QUEUES``, comma separated)
- Hands each delivery to the handler registered for its queue
- Retries failures with capped exponential backoff, then lets the broker
  dead-letter them into ``payment.dlq``
- Closes the channel and connection gracefully on SIGINT/SIGTERM

Examples:
    python -m scripts.worker
    WORKER_QUEUES=payment.processing,fraud.detection WORKER_PREFETCH=4 python -m scripts.worker
"""

import asyncio
import logging
import os
from typing import Any, Awaitable, Callable, Dict

from payment_queue.config import Settings
from payment_queue.connection import BrokerConnection, install_signal_handlers
from payment_queue.constants import QUEUE_PAYMENT_PROCESSING, WORK_QUEUES
from payment_queue.consumer import Consumer
from payment_queue.envelope import Delivery
from payment_queue.log import setup_logging
from payment_queue.metrics import start_metrics_server
from payment_queue.results import Failure, HandlerResult, Success
from payment_queue.tracing import start_tracing


logger = logging.getLogger("payment_queue.worker")

Handler = Callable[[Delivery], Awaitable[Any]]


class Worker:
    """Payment queue worker bound to a set of queues.

    Concurrency model:
    - `WORKER_PREFETCH` (AMQP QoS) bounds in-flight deliveries per queue; the
      default of 1 processes each queue strictly one message at a time
    - Ordering is best-effort only; handlers must be idempotent because
      delivery is at-least-once

    Business logic lives outside this layer: replace the passthrough handlers
    in `handlers` with the real settlement, fraud, webhook, and billing calls.

    Example:
    ```python
    worker = Worker(["payment.processing"])
    worker.handlers["payment.processing"] = my_payment_handler
    await worker.run()
    ```
    """

    def __init__(
        self,
        queues: list[str],
        settings: Settings | None = None,
        *,
        connection: BrokerConnection | None = None,
    ):
        self.settings = settings or (connection.settings if connection is not None else Settings())
        self._connection = connection
        self.queues = queues
        self._stopping = asyncio.Event()
        self.handlers: Dict[str, Handler] = {queue: self.handle_passthrough for queue in WORK_QUEUES}

    async def run(self, *, handle_signals: bool = True) -> None:
        """Subscribe every configured queue and wait for stop().

        An unreachable broker does not end the run: subscriptions stay
        registered and start consuming once the connection manager reconnects.
        """
        if self.settings.metrics_enabled:
            try:
                start_metrics_server(self.settings.metrics_port)
                logger.info("Metrics server listening on :%d /metrics", self.settings.metrics_port)
            except OSError:
                # Already started in this process
                pass
        if self.settings.tracing_enabled:
            start_tracing("payment-queue-worker")

        manager = self._connection or BrokerConnection(self.settings)
        consumer = Consumer(manager)
        if handle_signals:
            install_signal_handlers(manager, shutdown=self._request_stop)

        try:
            for queue in self.queues:
                handler = self.handlers.get(queue, self.handle_passthrough)
                await consumer.subscribe(queue, handler)
            logger.info("Worker consuming queues: %s", ", ".join(self.queues))
            await self._stopping.wait()
        finally:
            await consumer.close()
            await manager.close()

    async def _request_stop(self) -> None:
        self.stop()

    async def handle_passthrough(self, delivery: Delivery) -> HandlerResult:
        """Default handler: logs the delivery and succeeds.

        A producer can set ``context.force_error = true`` in the payload to
        exercise the retry and DLQ path.
        """
        payload = delivery.payload if isinstance(delivery.payload, dict) else {}
        if (payload.get("context") or {}).get("force_error"):
            return Failure(RuntimeError("Forced error for retry testing"))
        logger.info(
            "Handled message on %s (retry %d): %s",
            delivery.queue,
            delivery.retry_count,
            payload.get("id") or payload.get("message_id"),
        )
        return Success()

    def stop(self) -> None:
        """Signal the run loop to stop (used by signal handlers)."""
        self._stopping.set()


async def main() -> None:
    """Entrypoint for running a worker as a script."""
    settings = Settings()
    setup_logging(settings.log_level, log_file=settings.log_file or None)
    queues = [q.strip() for q in os.getenv("WORKER_QUEUES", QUEUE_PAYMENT_PROCESSING).split(",") if q.strip()]
    await Worker(queues, settings).run()


if __name__ == "__main__":
    asyncio.run(main())
