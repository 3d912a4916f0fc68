"""Error taxonomy for the payment task-distribution layer.

- Connectivity errors are never fatal; the connection manager keeps retrying.
- Setup errors (topology conflicts, consumer registration) propagate to the
  caller so the process can decide to abort startup.
- Publish backpressure is not an error at all: publishers return ``False``.
- Handler failures are recovered by the retry engine and never raised here.
"""


class TaskQueueError(Exception):
    """Base class for all task-distribution errors."""


class BrokerConnectionError(TaskQueueError):
    """Raised when the broker cannot be reached or the connection drops."""


class TopologyError(TaskQueueError):
    """Raised when declaring exchanges, queues, or bindings fails.

    Typically a ``PRECONDITION_FAILED`` from the broker because an existing
    entity was declared with different arguments.
    """

    def __init__(self, message: str, entity: str | None = None) -> None:
        self.entity = entity
        super().__init__(message)


class ConsumerSetupError(TaskQueueError):
    """Raised when a consumer cannot be registered on a queue."""

    def __init__(self, message: str, queue: str | None = None) -> None:
        self.queue = queue
        super().__init__(message)


class MessageDecodeError(TaskQueueError, ValueError):
    """Raised when a message body is not valid UTF-8 JSON."""
