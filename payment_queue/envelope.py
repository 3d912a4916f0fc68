"""Message envelope encoding and decoding.

Every message moved through the layer is a UTF-8 JSON body with
``content_type=application/json``, persistent delivery mode, a publish
timestamp, and a headers table. Retry state lives only in
``headers['retry-count']`` (absent means 0).
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

from aio_pika import DeliveryMode, Message
from aio_pika.abc import AbstractIncomingMessage

from payment_queue.constants import CONTENT_TYPE_JSON, RETRY_COUNT_HEADER
from payment_queue.exceptions import MessageDecodeError


# Properties a caller may override per publish. Content type and delivery mode
# are fixed by the wire format.
MESSAGE_OPTIONS = frozenset(
    {
        "headers",
        "content_encoding",
        "priority",
        "correlation_id",
        "reply_to",
        "expiration",
        "message_id",
        "timestamp",
        "type",
        "user_id",
        "app_id",
    }
)
FIXED_OPTIONS = frozenset({"persistent", "delivery_mode", "content_type"})


def encode_payload(payload: Any) -> bytes:
    """Serialize a JSON-compatible payload to compact UTF-8 bytes.

    >>> encode_payload({"amount": 100, "currency": "USD"})
    b'{"amount":100,"currency":"USD"}'
    """
    return json.dumps(payload, separators=(",", ":")).encode("utf-8")


def decode_body(body: bytes) -> Any:
    """Parse a message body, raising ``MessageDecodeError`` when it is not JSON."""
    try:
        return json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise MessageDecodeError(f"message body is not valid JSON: {exc}") from exc


def retry_count_from_headers(headers: Optional[Mapping[str, Any]]) -> int:
    """Return the retry count carried in ``headers``; absent or invalid means 0."""
    if not headers:
        return 0
    raw = headers.get(RETRY_COUNT_HEADER)
    if raw is None:
        return 0
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    try:
        return max(int(raw), 0)
    except (TypeError, ValueError):
        return 0


def build_message(body: bytes, options: Optional[Mapping[str, Any]] = None) -> Message:
    """Build a persistent JSON ``aio_pika.Message`` with caller options merged in.

    Caller options override the defaults (timestamp, empty headers) except for
    content type and delivery mode, which are always JSON and persistent.
    Unknown option names raise ``TypeError``.
    """
    opts = {k: v for k, v in dict(options or {}).items() if k not in FIXED_OPTIONS}
    unknown = set(opts) - MESSAGE_OPTIONS
    if unknown:
        raise TypeError(f"unsupported publish options: {sorted(unknown)}")
    headers: dict[str, Any] = dict(opts.pop("headers", None) or {})
    properties: dict[str, Any] = {"timestamp": datetime.now(timezone.utc), **opts}
    return Message(
        body=body,
        content_type=CONTENT_TYPE_JSON,
        delivery_mode=DeliveryMode.PERSISTENT,
        headers=headers,
        **properties,
    )


@dataclass
class Delivery:
    """Decoded view of one broker delivery, handed to consumer handlers."""

    queue: str
    payload: Any
    body: bytes
    headers: dict[str, Any] = field(default_factory=dict)
    retry_count: int = 0
    redelivered: bool = False
    message_id: Optional[str] = None
    timestamp: Optional[datetime] = None

    @classmethod
    def from_incoming(cls, queue: str, message: AbstractIncomingMessage) -> "Delivery":
        headers = dict(message.headers or {})
        return cls(
            queue=queue,
            payload=decode_body(message.body),
            body=message.body,
            headers=headers,
            retry_count=retry_count_from_headers(headers),
            redelivered=bool(message.redelivered),
            message_id=message.message_id,
            timestamp=message.timestamp,
        )
