"""Tests for the assignment engine."""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "api"))

import re

import bcrypt
import pytest

from errors import Forbidden, InvalidState, NotFound, TransientIO
from models import Actor, OrderSnapshot
from schemas import ActorRole, Availability, DeliveryStatus, EventKind
from services.assignment import AssignmentEngine, generate_validation_code
from services.delivery_store import DeliveryStore
from fakes import FakeMarketplace, make_delivery, make_person

OPERATOR = Actor(id="op-1", role=ActorRole.OPERATOR)
COURIER = Actor(id="P1", role=ActorRole.DELIVERY)


def _setup(deliveries=None, persons=None):
    deliveries = deliveries if deliveries is not None else [
        make_delivery("D1", "P1"),
        make_delivery("D2", "P1"),
        make_delivery("D3", "P2", status=DeliveryStatus.DELIVERED),
    ]
    persons = persons if persons is not None else [make_person("P1"), make_person("P2"), make_person("P3")]
    fake = FakeMarketplace(deliveries, persons)
    store = DeliveryStore(deliveries, persons)
    return store, fake, AssignmentEngine(store, fake)


def test_validation_code_format():
    """Codes are DEL followed by 8 upper-case hex characters."""
    for _ in range(20):
        assert re.fullmatch(r"DEL[0-9A-F]{8}", generate_validation_code())


@pytest.mark.asyncio
async def test_reassignment_moves_exactly_one_unit_of_workload():
    """Old holder loses one, new holder gains one, status and timestamps stay."""
    store, fake, engine = _setup()
    before = store.get("D1")
    p1, p3 = store.get_person("P1").active_deliveries, store.get_person("P3").active_deliveries

    d = await engine.assign("D1", "P3", OPERATOR)

    assert d.delivery_person_id == "P3"
    assert d.status == before.status
    assert d.assigned_at == before.assigned_at
    assert store.get_person("P1").active_deliveries == p1 - 1
    assert store.get_person("P3").active_deliveries == p3 + 1
    assert store.get_person("P3").availability == Availability.BUSY
    assert fake.calls == [("assign", "D1", "P3")]

    event = store.events("D1")[-1]
    assert event.kind == EventKind.REASSIGNED
    assert event.metadata == {"from_person_id": "P1", "to_person_id": "P3"}


@pytest.mark.asyncio
async def test_first_assignment_takes_person_from_available_to_busy():
    """An unassigned delivery counts once its first person is set."""
    store, fake, engine = _setup(deliveries=[make_delivery("D1", None)])
    assert store.get_person("P1").availability == Availability.AVAILABLE

    await engine.assign("D1", "P1", OPERATOR)
    assert store.get_person("P1").active_deliveries == 1
    assert store.get_person("P1").availability == Availability.BUSY
    assert store.events("D1")[-1].kind == EventKind.ASSIGNED


@pytest.mark.asyncio
async def test_assign_unknown_person_leaves_delivery_unchanged():
    """NotFound for an unknown person, and nothing moves."""
    store, fake, engine = _setup()
    before = store.get("D2")
    with pytest.raises(NotFound):
        await engine.assign("D2", "P_unknown", OPERATOR)
    assert store.get("D2") == before
    assert fake.calls == []


@pytest.mark.asyncio
async def test_assign_unknown_delivery_is_not_found():
    store, fake, engine = _setup()
    with pytest.raises(NotFound):
        await engine.assign("D404", "P1", OPERATOR)


@pytest.mark.asyncio
async def test_assign_delivered_is_invalid_state():
    """A terminal delivery cannot change hands."""
    store, fake, engine = _setup()
    with pytest.raises(InvalidState):
        await engine.assign("D3", "P3", OPERATOR)
    assert store.get("D3").delivery_person_id == "P2"


@pytest.mark.asyncio
async def test_assign_to_current_holder_is_a_no_op():
    store, fake, engine = _setup()
    d = await engine.assign("D1", "P1", OPERATOR)
    assert d.delivery_person_id == "P1"
    assert fake.calls == []
    assert store.events() == []


@pytest.mark.asyncio
async def test_couriers_cannot_assign():
    store, fake, engine = _setup()
    with pytest.raises(Forbidden):
        await engine.assign("D1", "P3", COURIER)


@pytest.mark.asyncio
async def test_failed_persist_keeps_old_assignment():
    """When the marketplace write fails the local view is untouched."""
    store, fake, engine = _setup()
    fake.fail_writes = TransientIO("timeout")
    with pytest.raises(TransientIO):
        await engine.assign("D1", "P3", OPERATOR)
    assert store.get("D1").delivery_person_id == "P1"
    assert store.get_person("P1").active_deliveries == 2
    assert store.get_person("P3").active_deliveries == 0


def test_suggest_orders_by_workload_and_skips_current_holder():
    """Least loaded first, ties broken by id; the holder is not suggested."""
    store, fake, engine = _setup(
        deliveries=[
            make_delivery("D1", "P1"),
            make_delivery("D2", "P2"),
            make_delivery("D3", "P2"),
        ],
        persons=[make_person("P1"), make_person("P2"), make_person("P4"), make_person("P3")],
    )
    assert [p.id for p in engine.suggest("D1")] == ["P3", "P4", "P2"]
    assert [p.id for p in engine.suggest("D2")] == ["P3", "P4", "P1"]


@pytest.mark.asyncio
async def test_open_delivery_issues_code_and_stores_only_its_hash():
    """The plaintext code is returned once; the delivery keeps its bcrypt hash."""
    store, fake, engine = _setup()
    order = OrderSnapshot(order_id="O-77", buyer_name="Asha", shop_name="Kirana")

    delivery, code = await engine.open_delivery(order, 4, "P3", OPERATOR)

    assert re.fullmatch(r"DEL[0-9A-F]{8}", code)
    assert delivery.validation_code is None
    assert bcrypt.checkpw(code.encode(), delivery.validation_code_hash.encode())
    assert delivery.status == DeliveryStatus.ASSIGNED
    assert delivery.total_products == 4
    assert delivery.order.buyer_name == "Asha"
    assert store.get_person("P3").active_deliveries == 1
    assert store.events(delivery.id)[0].kind == EventKind.OPENED


@pytest.mark.asyncio
async def test_open_delivery_twice_for_one_order_is_invalid_state():
    store, fake, engine = _setup()
    with pytest.raises(InvalidState):
        await engine.open_delivery(OrderSnapshot(order_id="O-D1"), 1, "P2", OPERATOR)


@pytest.mark.asyncio
async def test_open_delivery_requires_known_person_and_operator():
    store, fake, engine = _setup()
    with pytest.raises(NotFound):
        await engine.open_delivery(OrderSnapshot(order_id="O-9"), 1, "P9", OPERATOR)
    with pytest.raises(Forbidden):
        await engine.open_delivery(OrderSnapshot(order_id="O-9"), 1, "P1", COURIER)
