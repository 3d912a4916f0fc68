"""
Simple producer script.

- Builds a demo payment message
- Publishes it either straight to a queue or through an exchange
- Exits non-zero when the broker did not accept the message

Examples:
    python -m scripts.producer --amount 100 --currency USD
    python -m scripts.producer --exchange payment.exchange --routing-key payment.captured
    FORCE_ERROR=true python -m scripts.producer   # exercise the retry/DLQ path
"""

import argparse
import asyncio
import os
import sys
import uuid
from datetime import datetime, timezone
from typing import Any

from payment_queue.config import Settings
from payment_queue.connection import BrokerConnection
from payment_queue.constants import QUEUE_PAYMENT_PROCESSING
from payment_queue.log import setup_logging
from payment_queue.publisher import Publisher
from payment_queue.tracing import get_tracer, start_tracing


def build_message(amount: int, currency: str, force_error: bool) -> dict[str, Any]:
    return {
        "id": f"pay_{uuid.uuid4().hex[:16]}",
        "amount": amount,
        "currency": currency,
        "created_at": datetime.now(timezone.utc).isoformat(),
        "context": {"demo": True, "force_error": force_error},
    }


async def main(args: argparse.Namespace) -> int:
    """Publish one demo payment and return the process exit code."""
    settings = Settings()
    setup_logging(settings.log_level)
    if settings.tracing_enabled:
        start_tracing("payment-queue-producer")
    tracer = get_tracer("payment-queue-producer")

    force_error = os.getenv("FORCE_ERROR", "false").lower() in {"1", "true", "yes"}
    message = build_message(args.amount, args.currency, force_error)

    manager = BrokerConnection(settings)
    publisher = Publisher(manager)
    try:
        with tracer.start_as_current_span("publish") as span:
            span.set_attribute("payment_id", message["id"])
            options = {"message_id": message["id"]}
            if args.exchange:
                ok = await publisher.publish_to_exchange(args.exchange, args.routing_key, message, options)
                target = f"{args.exchange} ({args.routing_key})"
            else:
                ok = await publisher.publish_to_queue(args.queue, message, options)
                target = args.queue
    finally:
        await manager.close()

    if not ok:
        print(f"not published: {message['id']} -> {target}")
        return 1
    print(f"published {message['id']} -> {target}")
    return 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Publish a demo payment message")
    parser.add_argument("--queue", default=QUEUE_PAYMENT_PROCESSING)
    parser.add_argument("--exchange", help="Publish through this exchange instead of directly to --queue")
    parser.add_argument("--routing-key", default="payment.created")
    parser.add_argument("--amount", type=int, default=100)
    parser.add_argument("--currency", default="USD")
    sys.exit(asyncio.run(main(parser.parse_args())))
