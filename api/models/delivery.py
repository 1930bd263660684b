"""Delivery record — one shipment for one order, from assignment to completion."""

from __future__ import annotations
from dataclasses import dataclass, replace
from datetime import datetime

from schemas import DeliveryStatus


ACTIVE_STATUSES = frozenset({
    DeliveryStatus.ASSIGNED,
    DeliveryStatus.PICKED_UP,
    DeliveryStatus.IN_TRANSIT,
})
TERMINAL_STATUSES = frozenset({DeliveryStatus.DELIVERED, DeliveryStatus.FAILED})


def compute_progress(collected: int, total: int) -> int:
    """Percentage of products collected, rounded half up. 0 when nothing is expected."""
    if total <= 0:
        return 0
    return (200 * collected + total) // (2 * total)


@dataclass(frozen=True)
class OrderSnapshot:
    """Read-only projection of the owning order, replaced on every refresh."""

    order_id: str
    buyer_name: str | None = None
    buyer_phone: str | None = None
    shop_name: str | None = None
    order_total: float | None = None
    shipping_address: str | None = None


@dataclass
class Delivery:
    id: str
    order_id: str
    delivery_person_id: str | None
    total_products: int
    assigned_at: datetime
    status: DeliveryStatus = DeliveryStatus.ASSIGNED
    collected_products: int = 0
    collected_product_ids: frozenset[str] = frozenset()

    picked_up_at: datetime | None = None
    delivered_at: datetime | None = None
    failed_at: datetime | None = None

    validation_code: str | None = None
    validation_code_hash: str | None = None
    failure_reason: str | None = None
    notes: str | None = None

    order: OrderSnapshot | None = None
    revision: int | None = None

    def __post_init__(self):
        if self.total_products < 0:
            raise ValueError("total_products must be non-negative")
        if not 0 <= self.collected_products <= self.total_products:
            raise ValueError(
                f"collected_products={self.collected_products} outside 0..{self.total_products}"
            )

    @property
    def progress(self) -> int:
        return compute_progress(self.collected_products, self.total_products)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def fully_collected(self) -> bool:
        return self.collected_products == self.total_products

    def copy(self, **changes) -> Delivery:
        return replace(self, **changes)

    def bumped(self, **changes) -> Delivery:
        """Copy with changes applied and the revision advanced, when revisions are tracked."""
        if self.revision is not None:
            changes.setdefault("revision", self.revision + 1)
        return replace(self, **changes)
