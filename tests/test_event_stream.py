"""Tests for the delivery event listener (mocked Redis)."""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "api"))

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from schemas import NotificationKind
from services.event_stream import listen_for_delivery_events, parse_notification


def test_parse_snake_case_message():
    n = parse_notification(json.dumps({"kind": "delivery_ready", "delivery_id": 42, "message": "ready"}))
    assert n.kind == NotificationKind.DELIVERY_READY
    assert n.delivery_id == "42"
    assert n.message == "ready"


def test_parse_socket_style_message():
    """Hyphenated kinds and camelCase ids from the websocket are accepted."""
    n = parse_notification(b'{"kind": "product-collected", "deliveryId": 7}')
    assert n.kind == NotificationKind.PRODUCT_COLLECTED
    assert n.delivery_id == "7"


@pytest.mark.parametrize("data", [
    "not json",
    "[1, 2]",
    '{"kind": "order-exploded", "delivery_id": 1}',
    '{"delivery_id": 1}',
    None,
])
def test_malformed_messages_are_dropped(data):
    assert parse_notification(data) is None


class FakePubSub:
    def __init__(self, messages):
        self.messages = messages
        self.subscribe = AsyncMock()
        self.unsubscribe = AsyncMock()
        self.aclose = AsyncMock()

    async def listen(self):
        for message in self.messages:
            yield message


@pytest.mark.asyncio
async def test_listener_invalidates_once_per_valid_message():
    """Subscription confirmations and junk are skipped; valid pushes become invalidations."""
    pubsub = FakePubSub([
        {"type": "subscribe", "data": 1},
        {"type": "message", "data": '{"kind": "delivery-completed", "deliveryId": 3}'},
        {"type": "message", "data": "garbage"},
        {"type": "message", "data": '{"kind": "product_collected", "delivery_id": 3}'},
    ])
    redis = MagicMock()
    redis.pubsub.return_value = pubsub
    reconciler = MagicMock()

    delivered = await listen_for_delivery_events(reconciler, redis=redis, channel="deliveries:test")

    assert delivered == 2
    assert reconciler.invalidate.call_count == 2
    first = reconciler.invalidate.call_args_list[0].args[0]
    assert first.kind == NotificationKind.DELIVERY_COMPLETED
    pubsub.subscribe.assert_awaited_once_with("deliveries:test")
    pubsub.unsubscribe.assert_awaited_once_with("deliveries:test")
    pubsub.aclose.assert_awaited_once()
