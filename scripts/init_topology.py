"""
Topology initializer.

- Declares the payment DLQ (24h TTL), the dead-letter-wired work queues,
  the payment/notification exchanges, and their bindings
- Exits non-zero on a topology conflict (an entity already exists with
  different arguments)

New behavior:
- Supports a best-effort mode via ``--best-effort`` or ``INIT_TOPOLOGY_BEST_EFFORT=1``
  which will skip errors if RabbitMQ is not reachable (useful in CI without a broker).

Examples:
    python -m scripts.init_topology
    python -m scripts.init_topology --best-effort
"""

import argparse
import asyncio
import os
import sys

from payment_queue.config import Settings
from payment_queue.connection import BrokerConnection
from payment_queue.exceptions import BrokerConnectionError, TopologyError
from payment_queue.log import setup_logging


async def main(best_effort: bool) -> int:
    """Declare the payment topology once and report the outcome.

    When ``best_effort`` is True, an unreachable broker is reported to stdout
    and the function returns successfully. Topology conflicts always fail.
    """
    settings = Settings()
    setup_logging(settings.log_level)
    # One attempt only: this is a one-shot job, not a long-running process
    settings.max_reconnect_attempts = 1
    manager = BrokerConnection(settings)
    try:
        await manager.connect()
    except BrokerConnectionError as exc:
        if best_effort:
            print(f"[init_topology] Skipping: RabbitMQ not reachable ({exc})")
            return 0
        print(f"[init_topology] RabbitMQ not reachable: {exc}")
        return 1
    except TopologyError as exc:
        print(f"[init_topology] Topology conflict at {exc.entity}: {exc}")
        return 2
    finally:
        await manager.close()

    topology = manager.topology
    print(
        f"[init_topology] Declared {len(topology.queue_names)} queues, "
        f"{len(topology.exchange_names)} exchanges, {len(topology.bindings)} bindings"
    )
    return 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Declare the RabbitMQ topology for the payment queues")
    parser.add_argument("--best-effort", action="store_true", help="Do not fail if RabbitMQ is unreachable")
    args = parser.parse_args()

    best_effort_env = os.getenv("INIT_TOPOLOGY_BEST_EFFORT", "false").lower() in {"1", "true", "yes"}
    sys.exit(asyncio.run(main(bool(args.best_effort or best_effort_env))))
