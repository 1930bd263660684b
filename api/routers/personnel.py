"""Delivery personnel API endpoints — workload views."""

from fastapi import APIRouter, Depends

from deps import get_manager, get_store
from models import Actor
from schemas import DeliveryPersonResponse, DeliveryResponse, DeliveryStatus
from services.delivery_store import DeliveryFilter, DeliveryStore
from services.stats import personnel_by_workload

router = APIRouter()


@router.get("/", response_model=list[DeliveryPersonResponse])
async def list_personnel(
    store: DeliveryStore = Depends(get_store),
    actor: Actor = Depends(get_manager),
):
    """All delivery personnel, least loaded first."""
    return [DeliveryPersonResponse.model_validate(p) for p in personnel_by_workload(store)]


@router.get("/{person_id}", response_model=DeliveryPersonResponse)
async def get_person(
    person_id: str,
    store: DeliveryStore = Depends(get_store),
    actor: Actor = Depends(get_manager),
):
    return DeliveryPersonResponse.model_validate(store.get_person(person_id))


@router.get("/{person_id}/deliveries", response_model=list[DeliveryResponse])
async def person_deliveries(
    person_id: str,
    status: DeliveryStatus | None = None,
    store: DeliveryStore = Depends(get_store),
    actor: Actor = Depends(get_manager),
):
    store.get_person(person_id)
    deliveries = store.list(DeliveryFilter(status=status, delivery_person_id=person_id))
    return [DeliveryResponse.model_validate(d) for d in deliveries]
