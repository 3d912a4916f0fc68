"""
Print depth and consumer count for the payment queues, optionally purging one.

Usage examples:
- Show every queue in the topology:
  python -m scripts.queue_stats

- Show the DLQ only:
  python -m scripts.queue_stats --queue payment.dlq

- Drop everything waiting in a queue (asks for confirmation unless --yes):
  python -m scripts.queue_stats --queue payment.retry --purge --yes
"""

import argparse
import asyncio
import sys

from payment_queue.config import Settings
from payment_queue.connection import BrokerConnection
from payment_queue.dlq import get_queue_stats, purge_queue
from payment_queue.log import setup_logging


async def run(queues: list[str] | None, purge: bool, yes: bool) -> int:
    settings = Settings()
    setup_logging(settings.log_level)
    settings.max_reconnect_attempts = 1
    manager = BrokerConnection(settings)
    try:
        names = queues or list(manager.topology.queue_names)
        if purge:
            if len(names) != 1:
                print("Refusing to purge more than one queue at a time; pass a single --queue.")
                return 1
            if not yes:
                print(f"Refusing to purge {names[0]} without --yes confirmation.")
                return 1
            return 0 if await purge_queue(manager, names[0]) else 1

        failed = 0
        for name in names:
            stats = await get_queue_stats(manager, name)
            if stats is None:
                print(f"{name:<28} unavailable")
                failed += 1
                continue
            print(f"{name:<28} messages={stats.message_count:<8} consumers={stats.consumer_count}")
        return 1 if failed else 0
    finally:
        await manager.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="Inspect or purge payment queues")
    parser.add_argument("--queue", action="append", dest="queues", help="Queue name (repeatable)")
    parser.add_argument("--purge", action="store_true", help="Purge the given queue")
    parser.add_argument("--yes", action="store_true", help="Confirm a purge")
    args = parser.parse_args()
    sys.exit(asyncio.run(run(args.queues, args.purge, args.yes)))


if __name__ == "__main__":
    main()
