"""Delivery lifecycle API endpoints — listing, assignment, collection, status."""

from fastapi import APIRouter, Depends, Query

from deps import get_actor, get_engine, get_manager, get_store, get_tracker
from models import Actor, Delivery, OrderSnapshot
from schemas import (
    AssignRequest, CollectRequest, DeliveryCreate, DeliveryCreatedResponse,
    DeliveryEventResponse, DeliveryListResponse, DeliveryPersonResponse,
    DeliveryResponse, DeliveryStatus, DeliveryStatusUpdate,
)
from services.assignment import AssignmentEngine
from services.delivery_store import DeliveryFilter, DeliveryStore
from services.progress_tracker import ProgressTracker, ensure_can_act

router = APIRouter()


def _response(delivery: Delivery) -> DeliveryResponse:
    return DeliveryResponse.model_validate(delivery)


# ── Listing ────────────────────────────────────────────────

@router.get("/", response_model=DeliveryListResponse)
async def list_deliveries(
    status: DeliveryStatus | None = None,
    delivery_person_id: str | None = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    store: DeliveryStore = Depends(get_store),
    actor: Actor = Depends(get_manager),
):
    """All deliveries, most recently assigned first."""
    flt = DeliveryFilter(status=status, delivery_person_id=delivery_person_id)
    total = store.count(flt)
    page = store.list(DeliveryFilter(
        status=status, delivery_person_id=delivery_person_id, limit=limit, offset=offset,
    ))
    return DeliveryListResponse(
        deliveries=[_response(d) for d in page],
        total=total,
        limit=limit,
        offset=offset,
        has_more=offset + len(page) < total,
    )


@router.get("/assigned", response_model=list[DeliveryResponse])
async def my_deliveries(
    status: DeliveryStatus | None = None,
    store: DeliveryStore = Depends(get_store),
    actor: Actor = Depends(get_actor),
):
    """Deliveries currently held by the calling courier."""
    deliveries = store.list(DeliveryFilter(status=status, delivery_person_id=actor.id))
    return [_response(d) for d in deliveries]


@router.post("/", response_model=DeliveryCreatedResponse)
async def open_delivery(
    data: DeliveryCreate,
    engine: AssignmentEngine = Depends(get_engine),
    actor: Actor = Depends(get_manager),
):
    """Open the delivery of an order handed to fulfillment."""
    order = OrderSnapshot(
        order_id=data.order_id,
        buyer_name=data.buyer_name,
        buyer_phone=data.buyer_phone,
        shop_name=data.shop_name,
        order_total=data.order_total,
        shipping_address=data.shipping_address,
    )
    delivery, code = await engine.open_delivery(
        order, data.total_products, data.delivery_person_id, actor,
    )
    return DeliveryCreatedResponse(delivery=_response(delivery), validation_code=code)


@router.get("/{delivery_id}", response_model=DeliveryResponse)
async def get_delivery(
    delivery_id: str,
    store: DeliveryStore = Depends(get_store),
    actor: Actor = Depends(get_actor),
):
    delivery = store.get(delivery_id)
    ensure_can_act(actor, delivery)
    return _response(delivery)


@router.get("/{delivery_id}/events", response_model=list[DeliveryEventResponse])
async def delivery_events(
    delivery_id: str,
    store: DeliveryStore = Depends(get_store),
    actor: Actor = Depends(get_manager),
):
    """Audit trail of every mutation applied to this delivery."""
    store.get(delivery_id)
    return [DeliveryEventResponse.model_validate(e) for e in store.events(delivery_id)]


# ── Assignment ─────────────────────────────────────────────

@router.get("/{delivery_id}/suggestions", response_model=list[DeliveryPersonResponse])
async def suggest_personnel(
    delivery_id: str,
    engine: AssignmentEngine = Depends(get_engine),
    actor: Actor = Depends(get_manager),
):
    """Candidate couriers, least loaded first. Nothing is assigned."""
    return [DeliveryPersonResponse.model_validate(p) for p in engine.suggest(delivery_id)]


@router.put("/{delivery_id}/assign", response_model=DeliveryResponse)
async def assign_delivery(
    delivery_id: str,
    data: AssignRequest,
    engine: AssignmentEngine = Depends(get_engine),
    actor: Actor = Depends(get_manager),
):
    delivery = await engine.assign(delivery_id, data.delivery_person_id, actor)
    return _response(delivery)


# ── Progress ───────────────────────────────────────────────

@router.post("/{delivery_id}/collect", response_model=DeliveryResponse)
async def collect_product(
    delivery_id: str,
    data: CollectRequest,
    tracker: ProgressTracker = Depends(get_tracker),
    actor: Actor = Depends(get_actor),
):
    """Record one product picked up from its shop."""
    delivery = await tracker.record_collection(delivery_id, data.product_id, actor)
    return _response(delivery)


@router.patch("/{delivery_id}/status", response_model=DeliveryResponse)
async def update_delivery_status(
    delivery_id: str,
    data: DeliveryStatusUpdate,
    tracker: ProgressTracker = Depends(get_tracker),
    actor: Actor = Depends(get_actor),
):
    delivery = await tracker.transition(
        delivery_id,
        data.status,
        actor,
        allow_partial=data.allow_partial,
        validation_code=data.validation_code,
        reason=data.reason,
        notes=data.notes,
    )
    return _response(delivery)
