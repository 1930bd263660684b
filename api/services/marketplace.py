"""
Marketplace Client — data access to the marketplace admin API.

Every call either returns parsed records or raises:
  - NotFound      the marketplace does not know the delivery / person (404)
  - InvalidState  the marketplace rejected the write (400, 409, 422)
  - TransientIO   network failure, timeout, 5xx or an unreadable body

No retries happen here; callers decide.
"""

from __future__ import annotations
import logging
from datetime import datetime, timezone
from typing import Any, Protocol

import httpx
from pydantic import ValidationError

from config import settings
from errors import InvalidState, NotFound, TransientIO
from models import Delivery, DeliveryPerson, OrderSnapshot
from schemas import (
    DeliveryPayload, DeliveryPersonPayload, DeliveryStatus, FleetStatsPayload,
)
from services.stats import FleetSnapshot

logger = logging.getLogger(__name__)

PAGE_SIZE = 200


class DataAccess(Protocol):
    async def fetch_deliveries(self) -> list[Delivery]: ...

    async def fetch_personnel(self) -> list[DeliveryPerson]: ...

    async def fetch_stats(self) -> FleetSnapshot: ...

    async def persist_assignment(self, delivery_id: str, person_id: str) -> None: ...

    async def persist_collection(self, delivery_id: str, product_id: str) -> None: ...

    async def persist_status(self, delivery_id: str, status: DeliveryStatus, extra: dict) -> None: ...

    async def create_delivery(
        self, order: OrderSnapshot, person_id: str, total_products: int, validation_code_hash: str,
    ) -> Delivery: ...


# ── Payload conversion ─────────────────────────────────────

def _wire_id(value: str) -> int | str:
    """Marketplace ids are integers; anything else is passed through."""
    return int(value) if value.isdigit() else value


def _aware(dt: datetime | None) -> datetime | None:
    if dt is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def parse_delivery(raw: dict) -> Delivery:
    """Build a Delivery from a marketplace delivery object (with nested order/buyer/shop)."""
    raw = dict(raw)
    if "collected_product_ids" not in raw and raw.get("productCollections"):
        raw["collected_product_ids"] = [
            c["product_id"] for c in raw["productCollections"]
            if c.get("status") == "collected" and c.get("product_id") is not None
        ]
    payload = DeliveryPayload.model_validate(raw)

    total = max(payload.total_products, 0)
    collected = payload.collected_products
    if not 0 <= collected <= total:
        logger.warning(
            "Delivery %s reports %d/%d collected — clamping",
            payload.id, collected, total,
        )
        collected = min(max(collected, 0), total)

    order = None
    if payload.order is not None:
        buyer = payload.order.buyer
        shop = payload.order.shop
        order = OrderSnapshot(
            order_id=payload.order.id,
            buyer_name=(buyer.full_name or buyer.name) if buyer else None,
            buyer_phone=(buyer.phone_number or buyer.phone) if buyer else None,
            shop_name=(shop.name or shop.full_name) if shop else None,
            order_total=payload.order.total,
            shipping_address=payload.order.shipping_address,
        )

    return Delivery(
        id=payload.id,
        order_id=payload.order_id,
        status=payload.status,
        delivery_person_id=payload.delivery_person_id,
        total_products=total,
        collected_products=collected,
        collected_product_ids=frozenset(payload.collected_product_ids),
        assigned_at=_aware(payload.assigned_at),
        picked_up_at=_aware(payload.picked_up_at),
        delivered_at=_aware(payload.delivered_at),
        failed_at=_aware(payload.failed_at),
        failure_reason=payload.failure_reason,
        notes=payload.notes,
        validation_code_hash=payload.validation_code_hash,
        order=order,
        revision=payload.revision,
    )


def parse_person(raw: dict) -> DeliveryPerson:
    payload = DeliveryPersonPayload.model_validate(raw)
    return DeliveryPerson(
        id=payload.id,
        full_name=payload.full_name,
        email=payload.email,
        phone_number=payload.phone_number,
    )


# ── Client ─────────────────────────────────────────────────

class MarketplaceClient:
    """httpx-backed DataAccess implementation."""

    def __init__(
        self,
        base_url: str | None = None,
        token: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        token = settings.MARKETPLACE_API_TOKEN if token is None else token
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._client = httpx.AsyncClient(
            base_url=base_url or settings.MARKETPLACE_API_URL,
            headers=headers,
            timeout=timeout or settings.HTTP_TIMEOUT_SEC,
            transport=transport,
        )

    async def aclose(self):
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> dict[str, Any]:
        try:
            resp = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            logger.error("Marketplace %s %s failed: %s", method, path, e)
            raise TransientIO(f"Marketplace unreachable: {e}", path=path) from e

        if resp.status_code == 404:
            raise NotFound(f"Marketplace has no resource at {path}", path=path)
        if resp.status_code in (400, 409, 422):
            logger.warning(
                "Marketplace rejected %s %s: status=%s, body=%s",
                method, path, resp.status_code, resp.text[:200],
            )
            raise InvalidState(
                f"Marketplace rejected {method} {path}: {resp.text[:200]}",
                path=path, status=resp.status_code,
            )
        if resp.status_code >= 400:
            logger.warning(
                "Marketplace %s %s returned status=%s", method, path, resp.status_code,
            )
            raise TransientIO(
                f"Marketplace returned {resp.status_code} for {path}",
                path=path, status=resp.status_code,
            )

        try:
            return resp.json()
        except ValueError as e:
            raise TransientIO(f"Unreadable marketplace response for {path}", path=path) from e

    # ── Reads ──────────────────────────────────────────────

    async def fetch_deliveries(self) -> list[Delivery]:
        deliveries: list[Delivery] = []
        offset = 0
        while True:
            body = await self._request(
                "GET", "/api/admin/deliveries",
                params={"limit": PAGE_SIZE, "offset": offset},
            )
            page = body.get("deliveries") or []
            try:
                deliveries.extend(parse_delivery(raw) for raw in page)
            except ValidationError as e:
                raise TransientIO(f"Malformed delivery payload: {e}") from e

            has_more = (body.get("pagination") or {}).get("hasMore", False)
            if not has_more or not page:
                break
            offset += len(page)
        return deliveries

    async def fetch_personnel(self) -> list[DeliveryPerson]:
        body = await self._request("GET", "/api/admin/delivery-personnel")
        try:
            return [parse_person(raw) for raw in body.get("personnel") or []]
        except ValidationError as e:
            raise TransientIO(f"Malformed personnel payload: {e}") from e

    async def fetch_stats(self) -> FleetSnapshot:
        body = await self._request("GET", "/api/admin/deliveries/stats")
        try:
            payload = FleetStatsPayload.model_validate(body.get("stats") or {})
        except ValidationError as e:
            raise TransientIO(f"Malformed stats payload: {e}") from e
        return FleetSnapshot(
            total_deliveries=payload.total_deliveries,
            active_deliveries=payload.active_deliveries,
            delivery_personnel=payload.delivery_personnel,
            status_breakdown=dict(payload.status_breakdown),
        )

    # ── Writes ─────────────────────────────────────────────

    async def persist_assignment(self, delivery_id: str, person_id: str) -> None:
        await self._request(
            "PUT", f"/api/admin/deliveries/{delivery_id}/assign",
            json={"delivery_person_id": _wire_id(person_id)},
        )

    async def persist_collection(self, delivery_id: str, product_id: str) -> None:
        await self._request(
            "POST", f"/api/delivery/{delivery_id}/collect",
            json={"product_id": _wire_id(product_id)},
        )

    async def persist_status(self, delivery_id: str, status: DeliveryStatus, extra: dict) -> None:
        await self._request(
            "PUT", "/api/delivery/status",
            json={"deliveryId": _wire_id(delivery_id), "status": status.value, **extra},
        )

    async def create_delivery(
        self,
        order: OrderSnapshot,
        person_id: str,
        total_products: int,
        validation_code_hash: str,
    ) -> Delivery:
        body = await self._request(
            "POST", "/api/admin/deliveries/create",
            json={
                "order_id": _wire_id(order.order_id),
                "delivery_person_id": _wire_id(person_id),
                "total_products": total_products,
                "validation_code_hash": validation_code_hash,
            },
        )
        try:
            return parse_delivery(body["delivery"])
        except (KeyError, ValidationError) as e:
            raise TransientIO(f"Malformed created delivery: {e}") from e
