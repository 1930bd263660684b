"""
Delivery Store — authoritative in-memory collection of deliveries and personnel.

Rules:
  - Reads hand out copies; state only changes through upsert / update / replace_all
  - Every write recomputes the derived workload of the people it touches
    under the same lock, so a reader never sees a delivery counted twice
    or not at all while it moves between two people
  - Local writes advance `generation`; the reconciler uses it to spot
    mutations that happened while a fetch was in flight
"""

from __future__ import annotations
import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Iterable

from errors import NotFound
from models import Delivery, DeliveryEvent, DeliveryPerson
from schemas import DeliveryStatus

logger = logging.getLogger(__name__)

Resolver = Callable[[Delivery, Delivery], Delivery]


@dataclass
class DeliveryFilter:
    status: DeliveryStatus | None = None
    delivery_person_id: str | None = None
    order_id: str | None = None
    limit: int | None = None
    offset: int = 0

    def matches(self, delivery: Delivery) -> bool:
        if self.status is not None and delivery.status != self.status:
            return False
        if self.delivery_person_id is not None and delivery.delivery_person_id != self.delivery_person_id:
            return False
        if self.order_id is not None and delivery.order_id != self.order_id:
            return False
        return True


class DeliveryStore:
    def __init__(
        self,
        deliveries: Iterable[Delivery] = (),
        persons: Iterable[DeliveryPerson] = (),
    ):
        self._mutex = threading.RLock()
        self._deliveries: dict[str, Delivery] = {d.id: d.copy() for d in deliveries}
        self._persons: dict[str, DeliveryPerson] = {p.id: p.copy() for p in persons}
        self._events: list[DeliveryEvent] = []
        self._locks: dict[str, asyncio.Lock] = {}
        self._generation = 0
        self._touched: dict[str, int] = {}
        self._recount(self._persons)

    # ── Reads ──────────────────────────────────────────────

    @property
    def generation(self) -> int:
        return self._generation

    def get(self, delivery_id: str) -> Delivery:
        with self._mutex:
            delivery = self._deliveries.get(delivery_id)
            if delivery is None:
                raise NotFound(f"Delivery {delivery_id} not found", delivery_id=delivery_id)
            return delivery.copy()

    def find_by_order(self, order_id: str) -> Delivery | None:
        with self._mutex:
            for delivery in self._deliveries.values():
                if delivery.order_id == order_id:
                    return delivery.copy()
        return None

    def list(self, flt: DeliveryFilter | None = None) -> list[Delivery]:
        """Matching deliveries, most recently assigned first."""
        flt = flt or DeliveryFilter()
        with self._mutex:
            matched = [d.copy() for d in self._deliveries.values() if flt.matches(d)]
        matched.sort(key=lambda d: (d.assigned_at, d.id), reverse=True)
        end = None if flt.limit is None else flt.offset + flt.limit
        return matched[flt.offset:end]

    def count(self, flt: DeliveryFilter | None = None) -> int:
        flt = flt or DeliveryFilter()
        with self._mutex:
            return sum(1 for d in self._deliveries.values() if flt.matches(d))

    def get_person(self, person_id: str) -> DeliveryPerson:
        with self._mutex:
            person = self._persons.get(person_id)
            if person is None:
                raise NotFound(f"Delivery person {person_id} not found", person_id=person_id)
            return person.copy()

    def list_persons(self) -> list[DeliveryPerson]:
        with self._mutex:
            return [p.copy() for p in self._persons.values()]

    def view(self) -> tuple[list[Delivery], list[DeliveryPerson]]:
        """Both collections read under one lock."""
        with self._mutex:
            return (
                [d.copy() for d in self._deliveries.values()],
                [p.copy() for p in self._persons.values()],
            )

    def events(self, delivery_id: str | None = None) -> list[DeliveryEvent]:
        with self._mutex:
            if delivery_id is None:
                return list(self._events)
            return [e for e in self._events if e.delivery_id == delivery_id]

    def touched_since(self, delivery_id: str, generation: int) -> bool:
        return self._touched.get(delivery_id, 0) > generation

    # ── Writes ─────────────────────────────────────────────

    def lock(self, delivery_id: str) -> asyncio.Lock:
        """Lock serializing read-modify-write sequences on one delivery."""
        with self._mutex:
            return self._locks.setdefault(delivery_id, asyncio.Lock())

    def upsert(self, delivery: Delivery, event: DeliveryEvent | None = None) -> Delivery:
        """Insert or replace a delivery together with the workload of everyone it affects."""
        with self._mutex:
            previous = self._deliveries.get(delivery.id)
            self._deliveries[delivery.id] = delivery.copy()

            affected = {delivery.delivery_person_id}
            if previous is not None:
                affected.add(previous.delivery_person_id)
            self._recount(affected)

            if event is not None:
                self._events.append(event)
            self._generation += 1
            self._touched[delivery.id] = self._generation
            return delivery.copy()

    def update(
        self,
        delivery_id: str,
        change: Callable[[Delivery], Delivery],
        event: Callable[[Delivery, Delivery], DeliveryEvent] | None = None,
    ) -> Delivery:
        """
        Apply `change` to the record as it is now and store the result, under one lock.

        A refresh may have replaced the record while the caller awaited the
        marketplace; `change` is re-run against that newer record and may raise.
        Returning the record unchanged writes nothing.
        """
        with self._mutex:
            current = self.get(delivery_id)
            updated = change(current)
            if updated is current:
                return current
            return self.upsert(updated, event(current, updated) if event else None)

    def upsert_person(self, person: DeliveryPerson) -> DeliveryPerson:
        with self._mutex:
            self._persons[person.id] = person.copy()
            self._recount({person.id})
            return self._persons[person.id].copy()

    def replace_all(
        self,
        deliveries: Iterable[Delivery],
        persons: Iterable[DeliveryPerson] | None = None,
        *,
        since: int | None = None,
        resolve: Resolver | None = None,
    ) -> int:
        """
        Replace the collections with a fetched snapshot, keyed by id.

        Args:
            deliveries: Full fetched delivery collection
            persons: Full fetched personnel collection (kept as-is when None)
            since: Store generation observed when the fetch started
            resolve: Called as resolve(local, fetched) for deliveries written
                locally after `since`; returns the record to keep

        Returns:
            Number of deliveries in the store afterwards
        """
        with self._mutex:
            merged: dict[str, Delivery] = {}
            for fetched in deliveries:
                local = self._deliveries.get(fetched.id)
                if (
                    since is not None and resolve is not None and local is not None
                    and self.touched_since(fetched.id, since)
                ):
                    fetched = resolve(local, fetched)
                merged[fetched.id] = fetched.copy()

            if since is not None:
                # Written locally during the flight but not in the fetch yet
                for delivery_id, delivery in self._deliveries.items():
                    if delivery_id not in merged and self.touched_since(delivery_id, since):
                        logger.debug("Keeping local delivery %s missing from fetch", delivery_id)
                        merged[delivery_id] = delivery

            for delivery_id in list(self._locks):
                if delivery_id not in merged and not self._locks[delivery_id].locked():
                    del self._locks[delivery_id]

            self._deliveries = merged
            if persons is not None:
                self._persons = {p.id: p.copy() for p in persons}
            self._recount(self._persons)
            return len(self._deliveries)

    # ── Derived workload ───────────────────────────────────

    def _recount(self, person_ids: Iterable[str | None]):
        for person_id in person_ids:
            person = self._persons.get(person_id) if person_id is not None else None
            if person is None:
                continue
            active = sum(
                1 for d in self._deliveries.values()
                if d.delivery_person_id == person_id and d.is_active
            )
            if active != person.active_deliveries:
                self._persons[person_id] = person.copy(active_deliveries=active)
