"""
Progress Tracker — collection progress and the delivery state machine.

States:
  assigned → picked_up → in_transit → delivered
  assigned | picked_up | in_transit → failed
  delivered and failed are terminal

Rules:
  - picked_up needs every product collected, unless the caller passes allow_partial
  - delivered needs a non-empty validation code (checked against the issued
    code's bcrypt hash when one exists) and delivered_at ≥ picked_up_at ≥ assigned_at
  - failed needs a reason code
  - Recording a collection never changes status; the operator decides when
    "fully collected" becomes "picked up"
"""

from __future__ import annotations
import logging
from datetime import datetime, timezone

import bcrypt

from errors import (
    Forbidden, IllegalTransition, InvalidState, InvalidTimeline,
    InvalidValidationCode, OverCollection,
)
from models import Actor, Delivery, DeliveryEvent
from schemas import DeliveryStatus, EventKind
from services.delivery_store import DeliveryStore
from services.marketplace import DataAccess

logger = logging.getLogger(__name__)

S = DeliveryStatus

TRANSITIONS: dict[DeliveryStatus, frozenset[DeliveryStatus]] = {
    S.ASSIGNED: frozenset({S.PICKED_UP, S.FAILED}),
    S.PICKED_UP: frozenset({S.IN_TRANSIT, S.FAILED}),
    S.IN_TRANSIT: frozenset({S.DELIVERED, S.FAILED}),
    S.DELIVERED: frozenset(),
    S.FAILED: frozenset(),
}

# Position along the forward path; failed ranks after every live state
STATUS_RANK = {
    S.ASSIGNED: 0,
    S.PICKED_UP: 1,
    S.IN_TRANSIT: 2,
    S.DELIVERED: 3,
    S.FAILED: 3,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def is_terminal(status: DeliveryStatus) -> bool:
    return not TRANSITIONS[status]


def can_transition(current: DeliveryStatus, target: DeliveryStatus) -> bool:
    return target in TRANSITIONS[current]


def hash_validation_code(code: str) -> str:
    return bcrypt.hashpw(code.encode(), bcrypt.gensalt()).decode()


def check_validation_code(code: str, code_hash: str) -> bool:
    return bcrypt.checkpw(code.encode(), code_hash.encode())


def apply_collection(delivery: Delivery, product_id: str) -> Delivery:
    """
    Count one more distinct product as collected.

    Returns:
        Updated copy; the same delivery (unchanged) if the product was already counted

    Raises:
        InvalidState: delivery is delivered or failed
        OverCollection: every product is already collected
    """
    if delivery.is_terminal:
        raise InvalidState(
            f"Delivery {delivery.id} is {delivery.status.value}; collections are closed",
            delivery_id=delivery.id,
        )
    if delivery.collected_products >= delivery.total_products:
        raise OverCollection(
            f"Delivery {delivery.id} already has {delivery.total_products}/"
            f"{delivery.total_products} products collected",
            delivery_id=delivery.id,
            product_id=product_id,
        )
    if product_id in delivery.collected_product_ids:
        return delivery

    return delivery.bumped(
        collected_products=delivery.collected_products + 1,
        collected_product_ids=delivery.collected_product_ids | {product_id},
    )


def apply_transition(
    delivery: Delivery,
    target: DeliveryStatus,
    *,
    now: datetime | None = None,
    allow_partial: bool = False,
    validation_code: str | None = None,
    reason: str | None = None,
    notes: str | None = None,
) -> Delivery:
    """
    Move a delivery to `target`, returning the updated copy.

    Raises:
        IllegalTransition: move not allowed from the current status, products
            missing for pickup, missing validation code or reason
        InvalidValidationCode: code does not match the one issued
        InvalidTimeline: resulting timestamps would be out of order
    """
    now = now or _utcnow()
    current = delivery.status

    if not can_transition(current, target):
        raise IllegalTransition(
            f"Cannot move delivery {delivery.id} from {current.value} to {target.value}",
            delivery_id=delivery.id, from_status=current.value, to_status=target.value,
        )

    changes: dict = {"status": target}
    if notes is not None:
        changes["notes"] = notes

    if target is S.PICKED_UP:
        if not delivery.fully_collected and not allow_partial:
            raise IllegalTransition(
                f"Delivery {delivery.id} has {delivery.collected_products}/"
                f"{delivery.total_products} products collected",
                delivery_id=delivery.id, from_status=current.value, to_status=target.value,
            )
        if now < delivery.assigned_at:
            raise InvalidTimeline(
                f"Pickup time {now.isoformat()} precedes assignment", delivery_id=delivery.id,
            )
        changes["picked_up_at"] = now

    elif target is S.DELIVERED:
        if not validation_code:
            raise IllegalTransition(
                f"Delivery {delivery.id} needs a validation code to be marked delivered",
                delivery_id=delivery.id, from_status=current.value, to_status=target.value,
            )
        if delivery.validation_code_hash and not check_validation_code(
            validation_code, delivery.validation_code_hash,
        ):
            raise InvalidValidationCode(
                f"Validation code for delivery {delivery.id} is incorrect",
                delivery_id=delivery.id,
            )
        picked_up_at = delivery.picked_up_at or delivery.assigned_at
        if not (delivery.assigned_at <= picked_up_at <= now):
            raise InvalidTimeline(
                f"Delivery {delivery.id} timeline out of order: assigned "
                f"{delivery.assigned_at.isoformat()}, picked up {picked_up_at.isoformat()}, "
                f"delivered {now.isoformat()}",
                delivery_id=delivery.id,
            )
        changes["delivered_at"] = now
        changes["validation_code"] = validation_code

    elif target is S.FAILED:
        if not reason:
            raise IllegalTransition(
                f"Failing delivery {delivery.id} requires a reason code",
                delivery_id=delivery.id, from_status=current.value, to_status=target.value,
            )
        changes["failed_at"] = now
        changes["failure_reason"] = reason

    return delivery.bumped(**changes)


def ensure_can_act(actor: Actor, delivery: Delivery):
    """Managers may act on any delivery; couriers only on their own."""
    if actor.is_manager:
        return
    if delivery.delivery_person_id != actor.id:
        raise Forbidden(
            f"Delivery {delivery.id} is not assigned to {actor.id}",
            delivery_id=delivery.id, actor_id=actor.id,
        )


class ProgressTracker:
    """Validates, persists and applies collections and status moves for one delivery at a time."""

    def __init__(self, store: DeliveryStore, client: DataAccess):
        self.store = store
        self.client = client

    async def record_collection(self, delivery_id: str, product_id: str, actor: Actor) -> Delivery:
        async with self.store.lock(delivery_id):
            delivery = self.store.get(delivery_id)
            ensure_can_act(actor, delivery)

            updated = apply_collection(delivery, product_id)
            if updated is delivery:
                logger.info(
                    "Product %s already collected for delivery %s — nothing to do",
                    product_id, delivery_id,
                )
                return delivery

            await self.client.persist_collection(delivery_id, product_id)

            def collected_event(current: Delivery, new: Delivery) -> DeliveryEvent:
                return DeliveryEvent(
                    delivery_id=delivery_id,
                    kind=EventKind.COLLECTED,
                    from_status=current.status,
                    to_status=new.status,
                    actor_id=actor.id,
                    actor_role=actor.role.value,
                    metadata={
                        "product_id": product_id,
                        "collected": new.collected_products,
                        "total": new.total_products,
                    },
                )

            # Re-applied to whatever a refresh left behind during the await
            stored = self.store.update(
                delivery_id,
                lambda current: apply_collection(current, product_id),
                collected_event,
            )

        logger.info(
            "Product %s collected for delivery %s — %d/%d (%d%%)",
            product_id, delivery_id,
            stored.collected_products, stored.total_products, stored.progress,
        )
        return stored

    async def transition(
        self,
        delivery_id: str,
        target: DeliveryStatus,
        actor: Actor,
        *,
        allow_partial: bool = False,
        validation_code: str | None = None,
        reason: str | None = None,
        notes: str | None = None,
        now: datetime | None = None,
    ) -> Delivery:
        async with self.store.lock(delivery_id):
            delivery = self.store.get(delivery_id)
            ensure_can_act(actor, delivery)
            if allow_partial and not actor.is_manager:
                raise Forbidden(
                    "Only operators may confirm a partial pickup",
                    delivery_id=delivery_id, actor_id=actor.id,
                )

            now = now or _utcnow()
            updated = apply_transition(
                delivery, target,
                now=now,
                allow_partial=allow_partial,
                validation_code=validation_code,
                reason=reason,
                notes=notes,
            )

            extra: dict = {}
            if notes:
                extra["notes"] = notes
            if reason:
                extra["reason"] = reason
            if target is S.DELIVERED:
                extra["validation_code"] = validation_code
            if target is S.PICKED_UP and not delivery.fully_collected:
                extra["partial_pickup"] = True
            await self.client.persist_status(delivery_id, target, extra)

            def reapply(current: Delivery) -> Delivery:
                if current == delivery:
                    return updated
                if current.status is target:
                    # A refresh already brought in this move
                    return current
                return apply_transition(
                    current, target,
                    now=now,
                    allow_partial=allow_partial,
                    validation_code=validation_code,
                    reason=reason,
                    notes=notes,
                )

            def status_event(current: Delivery, new: Delivery) -> DeliveryEvent:
                return DeliveryEvent(
                    delivery_id=delivery_id,
                    kind=EventKind.STATUS_CHANGED,
                    from_status=current.status,
                    to_status=target,
                    actor_id=actor.id,
                    actor_role=actor.role.value,
                    metadata={k: v for k, v in extra.items() if k != "validation_code"},
                )

            stored = self.store.update(delivery_id, reapply, status_event)

        logger.info(
            "Delivery %s moved %s → %s by %s",
            delivery_id, delivery.status.value, target.value, actor.id,
        )
        return stored
