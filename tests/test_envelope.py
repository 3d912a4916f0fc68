from types import SimpleNamespace

import pytest
from aio_pika import DeliveryMode

from payment_queue.envelope import Delivery, build_message, decode_body, encode_payload, retry_count_from_headers
from payment_queue.exceptions import MessageDecodeError


def test_encode_payload_is_compact_utf8():
    assert encode_payload({"amount": 100, "currency": "USD"}) == b'{"amount":100,"currency":"USD"}'
    assert encode_payload({"note": "café"}) == '{"note":"caf\\u00e9"}'.encode("utf-8")


def test_decode_body_rejects_invalid_json():
    with pytest.raises(MessageDecodeError):
        decode_body(b"{not json")
    with pytest.raises(ValueError):
        decode_body(b"\xff\xfe")


def test_build_message_is_persistent_json_with_timestamp():
    msg = build_message(b"{}")
    assert msg.content_type == "application/json"
    assert msg.delivery_mode == DeliveryMode.PERSISTENT
    assert msg.timestamp is not None
    assert msg.headers == {}


def test_build_message_merges_caller_options():
    msg = build_message(b"{}", {"headers": {"tenant": "acme"}, "message_id": "pay_1", "priority": 5})
    assert msg.headers == {"tenant": "acme"}
    assert msg.message_id == "pay_1"
    assert msg.priority == 5


def test_build_message_keeps_wire_format_fixed():
    msg = build_message(b"{}", {"persistent": False, "delivery_mode": 1, "content_type": "text/plain"})
    assert msg.delivery_mode == DeliveryMode.PERSISTENT
    assert msg.content_type == "application/json"


def test_build_message_rejects_unknown_options():
    with pytest.raises(TypeError):
        build_message(b"{}", {"mandatory": True})


@pytest.mark.parametrize(
    "headers,expected",
    [
        (None, 0),
        ({}, 0),
        ({"retry-count": 2}, 2),
        ({"retry-count": "3"}, 3),
        ({"retry-count": b"1"}, 1),
        ({"retry-count": "garbage"}, 0),
        ({"retry-count": -4}, 0),
    ],
)
def test_retry_count_from_headers(headers, expected):
    assert retry_count_from_headers(headers) == expected


def test_delivery_from_incoming():
    incoming = SimpleNamespace(
        body=b'{"id":"pay_1"}',
        headers={"retry-count": 1},
        redelivered=True,
        message_id="pay_1",
        timestamp=None,
    )
    delivery = Delivery.from_incoming("payment.processing", incoming)
    assert delivery.payload == {"id": "pay_1"}
    assert delivery.retry_count == 1
    assert delivery.redelivered is True
    assert delivery.queue == "payment.processing"
