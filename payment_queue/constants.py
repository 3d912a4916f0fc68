"""Shared names for the payment task-distribution topology and wire format.

These values centralize naming so producers, workers, and operator scripts
remain consistent with what is declared on the broker.

Queues:
- ``payment.processing``: primary work queue for payment jobs; bound to the
  payment topic exchange with ``payment.#``.
- ``payment.retry``: reserved for retry-specific producers.
- ``payment.dlq``: terminal dead-letter queue; messages expire after 24h.
- ``settlement.calculation``, ``fraud.detection``, ``webhook.delivery``,
  ``subscription.billing``, ``currency.update``, ``chargeback.notification``:
  work queues consumed by the business-logic collaborators.

Exchanges:
- ``payment.exchange``: topic exchange for routed payment events.
- ``notification.exchange``: fanout exchange broadcasting to webhook delivery.

Outcomes (consumer side):
- ``acked``: handler succeeded and the delivery was acknowledged.
- ``retried``: handler failed; a delayed re-publish was scheduled.
- ``dead_lettered``: retries exhausted; delivery rejected into the DLQ.
"""

# Queues
QUEUE_PAYMENT_PROCESSING = "payment.processing"
QUEUE_PAYMENT_RETRY = "payment.retry"
QUEUE_PAYMENT_DLQ = "payment.dlq"
QUEUE_SETTLEMENT_CALCULATION = "settlement.calculation"
QUEUE_FRAUD_DETECTION = "fraud.detection"
QUEUE_WEBHOOK_DELIVERY = "webhook.delivery"
QUEUE_SUBSCRIPTION_BILLING = "subscription.billing"
QUEUE_CURRENCY_UPDATE = "currency.update"
QUEUE_CHARGEBACK_NOTIFICATION = "chargeback.notification"

WORK_QUEUES = (
    QUEUE_PAYMENT_PROCESSING,
    QUEUE_PAYMENT_RETRY,
    QUEUE_SETTLEMENT_CALCULATION,
    QUEUE_FRAUD_DETECTION,
    QUEUE_WEBHOOK_DELIVERY,
    QUEUE_SUBSCRIPTION_BILLING,
    QUEUE_CURRENCY_UPDATE,
    QUEUE_CHARGEBACK_NOTIFICATION,
)

# Exchanges
EXCHANGE_PAYMENT = "payment.exchange"
EXCHANGE_NOTIFICATION = "notification.exchange"

PAYMENT_ROUTING_PATTERN = "payment.#"

# Wire format
CONTENT_TYPE_JSON = "application/json"
RETRY_COUNT_HEADER = "retry-count"

# Broker queue arguments
ARG_MESSAGE_TTL = "x-message-ttl"
ARG_DEAD_LETTER_EXCHANGE = "x-dead-letter-exchange"
ARG_DEAD_LETTER_ROUTING_KEY = "x-dead-letter-routing-key"
DEATH_HEADER = "x-death"

DLQ_MESSAGE_TTL_MS = 86_400_000  # 24 hours

# Two-tier retry: application-side delayed re-publish, broker-side dead-lettering
RETRY_BASE_DELAY_MS = 1000
RETRY_MAX_DELAY_MS = 60_000
DEFAULT_MAX_RETRIES = 3
DEFAULT_PREFETCH = 1

RECONNECT_DELAY_MS = 5000

# Consumer outcomes
OUTCOME_ACKED = "acked"
OUTCOME_RETRIED = "retried"
OUTCOME_DEAD_LETTERED = "dead_lettered"
