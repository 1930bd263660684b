"""Fleet statistics computed on demand from the store's current contents."""

from __future__ import annotations
from collections import Counter
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from models import DeliveryPerson
from models.delivery_person import TIER_ORDER
from schemas import DeliveryStatus

if TYPE_CHECKING:
    from services.delivery_store import DeliveryStore


@dataclass(frozen=True)
class FleetSnapshot:
    total_deliveries: int
    active_deliveries: int
    delivery_personnel: int
    status_breakdown: dict[str, int] = field(default_factory=dict)


def fleet_snapshot(store: DeliveryStore) -> FleetSnapshot:
    deliveries, persons = store.view()
    histogram = Counter(d.status.value for d in deliveries)
    return FleetSnapshot(
        total_deliveries=len(deliveries),
        active_deliveries=sum(1 for d in deliveries if d.is_active),
        delivery_personnel=len(persons),
        status_breakdown={s.value: histogram.get(s.value, 0) for s in DeliveryStatus},
    )


def success_rate(snapshot: FleetSnapshot) -> float:
    """Share of all deliveries that ended delivered; 0 for an empty fleet."""
    if snapshot.total_deliveries <= 0:
        return 0.0
    delivered = snapshot.status_breakdown.get(DeliveryStatus.DELIVERED.value, 0)
    return delivered / snapshot.total_deliveries


def workload_key(person: DeliveryPerson) -> tuple[int, int, str]:
    """Least loaded first; availability tier then id keep the order total."""
    return (person.active_deliveries, TIER_ORDER[person.availability], person.id)


def personnel_by_workload(store: DeliveryStore) -> list[DeliveryPerson]:
    return sorted(store.list_persons(), key=workload_key)
