"""
Delivery Event Stream — push notifications from the marketplace over Redis pub/sub.

Messages are JSON objects:
  {"kind": "product_collected" | "delivery_ready" | "delivery_completed",
   "delivery_id": 42, "message": "..."}

The socket-style spelling used by the marketplace websocket
("product-collected", "deliveryId") is accepted as well. Every valid message
becomes one invalidation on the reconciler; malformed ones are logged and dropped.
"""

from __future__ import annotations
import asyncio
import json
import logging

import redis.asyncio as aioredis
from pydantic import ValidationError
from redis.exceptions import RedisError

from config import settings
from schemas import DeliveryNotification
from services.reconciler import Reconciler

logger = logging.getLogger(__name__)

RECONNECT_DELAY_SEC = 5

_redis: aioredis.Redis | None = None


async def get_redis() -> aioredis.Redis:
    """Singleton Redis connection."""
    global _redis
    if _redis is None:
        _redis = aioredis.from_url(settings.REDIS_URL, decode_responses=True)
    return _redis


def parse_notification(data: str | bytes) -> DeliveryNotification | None:
    try:
        raw = json.loads(data)
    except (TypeError, ValueError):
        logger.warning("Dropping non-JSON delivery event: %r", data[:120] if data else data)
        return None
    if not isinstance(raw, dict):
        logger.warning("Dropping delivery event that is not an object: %r", raw)
        return None

    if isinstance(raw.get("kind"), str):
        raw["kind"] = raw["kind"].replace("-", "_")
    if "delivery_id" not in raw and "deliveryId" in raw:
        raw["delivery_id"] = raw.pop("deliveryId")

    try:
        return DeliveryNotification.model_validate(raw)
    except ValidationError as e:
        logger.warning("Dropping malformed delivery event: %s", e.errors()[0].get("msg"))
        return None


async def listen_for_delivery_events(
    reconciler: Reconciler,
    redis: aioredis.Redis | None = None,
    channel: str | None = None,
) -> int:
    """
    Subscribe to the delivery events channel until the connection ends.

    Returns:
        Number of notifications handed to the reconciler
    """
    r = redis or await get_redis()
    channel = channel or settings.DELIVERY_EVENTS_CHANNEL
    pubsub = r.pubsub()
    await pubsub.subscribe(channel)
    logger.info("📡 Listening for delivery events on '%s'", channel)

    delivered = 0
    try:
        async for message in pubsub.listen():
            if message.get("type") != "message":
                continue
            notification = parse_notification(message.get("data"))
            if notification is not None:
                reconciler.invalidate(notification)
                delivered += 1
    finally:
        await pubsub.unsubscribe(channel)
        await pubsub.aclose()
    return delivered


async def event_listener_loop(reconciler: Reconciler):
    """
    Background task keeping the subscription alive.

    After every reconnect the view is invalidated once, since pushes sent
    while disconnected are lost.
    """
    while True:
        try:
            await listen_for_delivery_events(reconciler)
        except RedisError as e:
            logger.error("Delivery event stream error: %s", e)
        logger.info("Reconnecting to delivery events in %ds", RECONNECT_DELAY_SEC)
        await asyncio.sleep(RECONNECT_DELAY_SEC)
        reconciler.invalidate()
