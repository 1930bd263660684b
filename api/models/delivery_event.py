"""DeliveryEvent — audit trail entry written with every successful mutation."""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timezone

from schemas import DeliveryStatus, EventKind


@dataclass(frozen=True)
class DeliveryEvent:
    delivery_id: str
    kind: EventKind
    from_status: DeliveryStatus | None = None
    to_status: DeliveryStatus | None = None
    actor_id: str | None = None
    actor_role: str | None = None
    metadata: dict = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
