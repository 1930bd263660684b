"""
Assignment Engine — validates and applies operator choices of delivery person.

The engine never picks a person on its own. `suggest` ranks candidates by
workload; applying one is always a separate `assign` call.
"""

from __future__ import annotations
import logging
import secrets

from errors import Forbidden, InvalidState, NotFound
from models import Actor, Delivery, DeliveryEvent, DeliveryPerson, OrderSnapshot
from schemas import EventKind
from services.delivery_store import DeliveryStore
from services.marketplace import DataAccess
from services.progress_tracker import hash_validation_code
from services.stats import workload_key

logger = logging.getLogger(__name__)


def generate_validation_code() -> str:
    """Handoff code shown to the buyer: DEL + 8 upper-case hex characters."""
    return "DEL" + secrets.token_hex(4).upper()


def _require_manager(actor: Actor, action: str):
    if not actor.is_manager:
        raise Forbidden(f"Role {actor.role.value} may not {action}", actor_id=actor.id)


class AssignmentEngine:
    def __init__(self, store: DeliveryStore, client: DataAccess):
        self.store = store
        self.client = client

    async def assign(self, delivery_id: str, person_id: str, actor: Actor) -> Delivery:
        """
        Hand a delivery to `person_id`.

        Status, collected products and timestamps are left as they are; only the
        responsible person changes. Both people's workload moves in the same
        store write.

        Raises:
            Forbidden: actor is not an operator
            NotFound: unknown delivery or person
            InvalidState: delivery is already delivered or failed
        """
        _require_manager(actor, "assign deliveries")

        async with self.store.lock(delivery_id):
            delivery = self.store.get(delivery_id)
            person = self.store.get_person(person_id)

            if delivery.is_terminal:
                raise InvalidState(
                    f"Delivery {delivery_id} is {delivery.status.value} and cannot be reassigned",
                    delivery_id=delivery_id,
                )
            previous_id = delivery.delivery_person_id
            if previous_id == person.id:
                logger.info("Delivery %s already assigned to %s — nothing to do", delivery_id, person.id)
                return delivery

            await self.client.persist_assignment(delivery_id, person.id)

            def reassign(current: Delivery) -> Delivery:
                # Only the person changes; anything a refresh brought in meanwhile stays
                if current.is_terminal:
                    raise InvalidState(
                        f"Delivery {delivery_id} became {current.status.value} while being reassigned",
                        delivery_id=delivery_id,
                    )
                if current.delivery_person_id == person.id:
                    return current
                return current.bumped(delivery_person_id=person.id)

            def assigned_event(current: Delivery, new: Delivery) -> DeliveryEvent:
                return DeliveryEvent(
                    delivery_id=delivery_id,
                    kind=EventKind.REASSIGNED if current.delivery_person_id else EventKind.ASSIGNED,
                    from_status=current.status,
                    to_status=new.status,
                    actor_id=actor.id,
                    actor_role=actor.role.value,
                    metadata={"from_person_id": current.delivery_person_id, "to_person_id": person.id},
                )

            stored = self.store.update(delivery_id, reassign, assigned_event)

        logger.info(
            "Delivery %s assigned to %s (was %s) by %s",
            delivery_id, person.full_name, previous_id or "nobody", actor.id,
        )
        return stored

    def suggest(self, delivery_id: str) -> list[DeliveryPerson]:
        """
        Candidates for a delivery, least loaded first.

        The person currently holding the delivery is left out. Ordering is
        (active_deliveries, availability tier, id).
        """
        delivery = self.store.get(delivery_id)
        candidates = [
            p for p in self.store.list_persons()
            if p.id != delivery.delivery_person_id
        ]
        return sorted(candidates, key=workload_key)

    async def open_delivery(
        self,
        order: OrderSnapshot,
        total_products: int,
        person_id: str,
        actor: Actor,
    ) -> tuple[Delivery, str]:
        """
        Open the delivery for an order handed to fulfillment.

        Returns:
            (delivery, plaintext validation code). Only the code's bcrypt hash is
            kept; the plaintext goes to the buyer.

        Raises:
            Forbidden: actor is not an operator
            NotFound: unknown person
            InvalidState: the order already has a delivery
        """
        _require_manager(actor, "open deliveries")
        self.store.get_person(person_id)

        existing = self.store.find_by_order(order.order_id)
        if existing is not None:
            raise InvalidState(
                f"Order {order.order_id} already has delivery {existing.id}",
                order_id=order.order_id, delivery_id=existing.id,
            )

        code = generate_validation_code()
        code_hash = hash_validation_code(code)
        created = await self.client.create_delivery(order, person_id, total_products, code_hash)

        delivery = created.copy(
            delivery_person_id=created.delivery_person_id or person_id,
            validation_code_hash=code_hash,
            order=created.order if created.order and created.order.buyer_name else order,
        )
        event = DeliveryEvent(
            delivery_id=delivery.id,
            kind=EventKind.OPENED,
            to_status=delivery.status,
            actor_id=actor.id,
            actor_role=actor.role.value,
            metadata={"order_id": order.order_id, "to_person_id": delivery.delivery_person_id},
        )
        stored = self.store.upsert(delivery, event)
        logger.info(
            "Delivery %s opened for order %s with %d products, assigned to %s",
            stored.id, order.order_id, stored.total_products, stored.delivery_person_id,
        )
        return stored, code
