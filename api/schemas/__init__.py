"""Pydantic schemas for API request/response models and marketplace payloads."""

from __future__ import annotations
from datetime import datetime
from enum import Enum
from pydantic import BaseModel, Field


# ── Enums ──────────────────────────────────────────────────

class DeliveryStatus(str, Enum):
    ASSIGNED = "assigned"
    PICKED_UP = "picked_up"
    IN_TRANSIT = "in_transit"
    DELIVERED = "delivered"
    FAILED = "failed"


class Availability(str, Enum):
    AVAILABLE = "available"
    BUSY = "busy"
    OVERLOADED = "overloaded"


class ActorRole(str, Enum):
    OPERATOR = "operator"
    SUPERADMIN = "superadmin"
    DELIVERY = "delivery"


class NotificationKind(str, Enum):
    PRODUCT_COLLECTED = "product_collected"
    DELIVERY_READY = "delivery_ready"
    DELIVERY_COMPLETED = "delivery_completed"


class EventKind(str, Enum):
    OPENED = "opened"
    ASSIGNED = "assigned"
    REASSIGNED = "reassigned"
    COLLECTED = "collected"
    STATUS_CHANGED = "status_changed"


# ── Delivery Schemas ───────────────────────────────────────

class OrderSnapshotResponse(BaseModel):
    order_id: str
    buyer_name: str | None
    buyer_phone: str | None
    shop_name: str | None
    order_total: float | None
    shipping_address: str | None

    class Config:
        from_attributes = True


class DeliveryResponse(BaseModel):
    id: str
    order_id: str
    status: DeliveryStatus
    delivery_person_id: str | None
    total_products: int
    collected_products: int
    progress: int
    assigned_at: datetime
    picked_up_at: datetime | None
    delivered_at: datetime | None
    failed_at: datetime | None
    failure_reason: str | None
    notes: str | None
    order: OrderSnapshotResponse | None
    revision: int | None

    class Config:
        from_attributes = True


class DeliveryListResponse(BaseModel):
    deliveries: list[DeliveryResponse]
    total: int
    limit: int
    offset: int
    has_more: bool


class DeliveryCreate(BaseModel):
    order_id: str
    delivery_person_id: str
    total_products: int = Field(..., ge=0)
    buyer_name: str | None = None
    buyer_phone: str | None = None
    shop_name: str | None = None
    order_total: float | None = None
    shipping_address: str | None = None


class DeliveryCreatedResponse(BaseModel):
    delivery: DeliveryResponse
    validation_code: str


class AssignRequest(BaseModel):
    delivery_person_id: str


class CollectRequest(BaseModel):
    product_id: str


class DeliveryStatusUpdate(BaseModel):
    status: DeliveryStatus
    allow_partial: bool = False
    validation_code: str | None = None
    reason: str | None = None
    notes: str | None = None


class DeliveryEventResponse(BaseModel):
    delivery_id: str
    kind: EventKind
    from_status: DeliveryStatus | None
    to_status: DeliveryStatus | None
    actor_id: str | None
    actor_role: str | None
    metadata: dict
    created_at: datetime

    class Config:
        from_attributes = True


# ── Personnel Schemas ──────────────────────────────────────

class DeliveryPersonResponse(BaseModel):
    id: str
    full_name: str
    email: str | None
    phone_number: str | None
    active_deliveries: int
    availability: Availability

    class Config:
        from_attributes = True


# ── Stats ──────────────────────────────────────────────────

class FleetStatsResponse(BaseModel):
    total_deliveries: int
    active_deliveries: int
    delivery_personnel: int
    status_breakdown: dict[str, int]
    success_rate: float


class RefreshResponse(BaseModel):
    refreshed: bool
    last_refresh_at: datetime | None
    last_error: str | None


# ── Push Notifications ─────────────────────────────────────

class DeliveryNotification(BaseModel):
    kind: NotificationKind
    delivery_id: str | None = None
    message: str = ""

    class Config:
        coerce_numbers_to_str = True


# ── Marketplace Payloads ───────────────────────────────────
# Shapes returned by the marketplace admin API. Ids arrive as integers.

class PartyPayload(BaseModel):
    full_name: str | None = None
    name: str | None = None
    phone_number: str | None = None
    phone: str | None = None

    class Config:
        coerce_numbers_to_str = True
        extra = "ignore"


class OrderPayload(BaseModel):
    id: str
    total: float | None = None
    shipping_address: str | None = None
    buyer: PartyPayload | None = None
    shop: PartyPayload | None = None

    class Config:
        coerce_numbers_to_str = True
        extra = "ignore"


class DeliveryPayload(BaseModel):
    id: str
    order_id: str
    status: DeliveryStatus
    delivery_person_id: str | None = None
    total_products: int = 0
    collected_products: int = 0
    collected_product_ids: list[str] = []
    assigned_at: datetime
    picked_up_at: datetime | None = None
    delivered_at: datetime | None = None
    failed_at: datetime | None = None
    failure_reason: str | None = None
    notes: str | None = None
    validation_code_hash: str | None = None
    revision: int | None = None
    order: OrderPayload | None = None

    class Config:
        coerce_numbers_to_str = True
        extra = "ignore"


class DeliveryPersonPayload(BaseModel):
    id: str
    full_name: str
    email: str | None = None
    phone_number: str | None = None

    class Config:
        coerce_numbers_to_str = True
        extra = "ignore"


class FleetStatsPayload(BaseModel):
    total_deliveries: int = 0
    active_deliveries: int = 0
    delivery_personnel: int = 0
    status_breakdown: dict[str, int] = {}

    class Config:
        extra = "ignore"
