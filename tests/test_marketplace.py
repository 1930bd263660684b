"""Tests for the marketplace HTTP client (httpx MockTransport)."""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "api"))

import json
from datetime import timezone

import httpx
import pytest

from errors import InvalidState, NotFound, TransientIO
from schemas import DeliveryStatus
from services.marketplace import MarketplaceClient, parse_delivery

RAW_DELIVERY = {
    "id": 12,
    "order_id": 340,
    "delivery_person_id": 5,
    "status": "picked_up",
    "total_products": 3,
    "collected_products": 3,
    "assigned_at": "2025-03-01T09:00:00",
    "picked_up_at": "2025-03-01T09:40:00Z",
    "productCollections": [
        {"product_id": 1, "status": "collected"},
        {"product_id": 2, "status": "collected"},
        {"product_id": 3, "status": "collected"},
    ],
    "order": {
        "id": 340,
        "total": 899.5,
        "shipping_address": "12 MG Road",
        "buyer": {"full_name": "Asha Rao", "phone_number": "+91 90000 00000"},
        "shop": {"name": "Kirana Corner"},
    },
}


def _client(handler):
    return MarketplaceClient(
        base_url="http://marketplace.test", token="secret",
        transport=httpx.MockTransport(handler),
    )


def test_parse_delivery():
    """Integer ids become strings, naive times are UTC, the order is projected."""
    d = parse_delivery(RAW_DELIVERY)
    assert d.id == "12"
    assert d.order_id == "340"
    assert d.delivery_person_id == "5"
    assert d.status == DeliveryStatus.PICKED_UP
    assert d.collected_product_ids == frozenset({"1", "2", "3"})
    assert d.assigned_at.tzinfo == timezone.utc
    assert d.order.buyer_name == "Asha Rao"
    assert d.order.shop_name == "Kirana Corner"
    assert d.order.order_total == 899.5


def test_parse_delivery_clamps_impossible_counts():
    raw = dict(RAW_DELIVERY, collected_products=7, productCollections=[])
    assert parse_delivery(raw).collected_products == 3


@pytest.mark.asyncio
async def test_fetch_deliveries_follows_pagination():
    """Pages are requested until hasMore is false."""
    offsets = []

    def handler(request: httpx.Request):
        assert request.headers["Authorization"] == "Bearer secret"
        offset = int(request.url.params["offset"])
        offsets.append(offset)
        page = [dict(RAW_DELIVERY, id=offset + 1, order_id=offset + 1)]
        return httpx.Response(200, json={
            "deliveries": page,
            "pagination": {"hasMore": offset == 0},
        })

    client = _client(handler)
    deliveries = await client.fetch_deliveries()
    await client.aclose()

    assert offsets == [0, 1]
    assert [d.id for d in deliveries] == ["1", "2"]


@pytest.mark.asyncio
async def test_fetch_personnel_and_stats():
    def handler(request: httpx.Request):
        if request.url.path == "/api/admin/delivery-personnel":
            return httpx.Response(200, json={"personnel": [
                {"id": 5, "full_name": "Ravi", "email": "ravi@example.com", "active_deliveries": 99},
            ]})
        return httpx.Response(200, json={"stats": {
            "total_deliveries": 4, "active_deliveries": 1,
            "delivery_personnel": 1, "status_breakdown": {"delivered": 3, "assigned": 1},
        }})

    client = _client(handler)
    persons = await client.fetch_personnel()
    stats = await client.fetch_stats()
    await client.aclose()

    assert persons[0].id == "5"
    assert persons[0].active_deliveries == 0
    assert stats.total_deliveries == 4
    assert stats.status_breakdown["delivered"] == 3


@pytest.mark.asyncio
async def test_writes_send_integer_ids():
    seen = []

    def handler(request: httpx.Request):
        seen.append((request.method, request.url.path, json.loads(request.content)))
        return httpx.Response(200, json={"success": True})

    client = _client(handler)
    await client.persist_assignment("12", "5")
    await client.persist_collection("12", "3")
    await client.persist_status("12", DeliveryStatus.DELIVERED, {"validation_code": "DEL0A1B2C3D"})
    await client.aclose()

    assert seen == [
        ("PUT", "/api/admin/deliveries/12/assign", {"delivery_person_id": 5}),
        ("POST", "/api/delivery/12/collect", {"product_id": 3}),
        ("PUT", "/api/delivery/status",
         {"deliveryId": 12, "status": "delivered", "validation_code": "DEL0A1B2C3D"}),
    ]


@pytest.mark.asyncio
@pytest.mark.parametrize("status,error", [
    (404, NotFound),
    (409, InvalidState),
    (422, InvalidState),
    (500, TransientIO),
    (503, TransientIO),
])
async def test_error_mapping(status, error):
    client = _client(lambda request: httpx.Response(status, json={"error": "nope"}))
    with pytest.raises(error):
        await client.persist_assignment("1", "2")
    await client.aclose()


@pytest.mark.asyncio
async def test_network_failure_is_transient():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    client = _client(handler)
    with pytest.raises(TransientIO):
        await client.fetch_personnel()
    await client.aclose()


@pytest.mark.asyncio
async def test_malformed_payload_is_transient():
    client = _client(lambda request: httpx.Response(200, json={"personnel": [{"id": 1}]}))
    with pytest.raises(TransientIO):
        await client.fetch_personnel()
    await client.aclose()


@pytest.mark.asyncio
async def test_unreadable_body_is_transient():
    client = _client(lambda request: httpx.Response(200, content=b"<html>oops</html>"))
    with pytest.raises(TransientIO):
        await client.fetch_stats()
    await client.aclose()
