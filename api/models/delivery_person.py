"""DeliveryPerson record — a fleet member with a derived workload tier."""

from __future__ import annotations
from dataclasses import dataclass, replace

from schemas import Availability

# Active deliveries at which a person is considered overloaded
OVERLOADED_AT = 5

TIER_ORDER = {
    Availability.AVAILABLE: 0,
    Availability.BUSY: 1,
    Availability.OVERLOADED: 2,
}


def availability_for(active_deliveries: int) -> Availability:
    if active_deliveries <= 0:
        return Availability.AVAILABLE
    if active_deliveries < OVERLOADED_AT:
        return Availability.BUSY
    return Availability.OVERLOADED


@dataclass
class DeliveryPerson:
    id: str
    full_name: str
    email: str | None = None
    phone_number: str | None = None
    # Maintained by DeliveryStore from the live delivery collection
    active_deliveries: int = 0

    @property
    def availability(self) -> Availability:
        return availability_for(self.active_deliveries)

    def copy(self, **changes) -> DeliveryPerson:
        return replace(self, **changes)
