"""FastAPI dependencies — services from app state and the calling actor."""

from fastapi import Header, HTTPException, Request

from models import Actor
from schemas import ActorRole
from services.assignment import AssignmentEngine
from services.delivery_store import DeliveryStore
from services.progress_tracker import ProgressTracker
from services.reconciler import Reconciler


def get_store(request: Request) -> DeliveryStore:
    return request.app.state.store


def get_tracker(request: Request) -> ProgressTracker:
    return request.app.state.tracker


def get_engine(request: Request) -> AssignmentEngine:
    return request.app.state.engine


def get_reconciler(request: Request) -> Reconciler:
    return request.app.state.reconciler


async def get_actor(
    x_actor_id: str | None = Header(None),
    x_actor_role: str | None = Header(None),
) -> Actor:
    """
    Identity forwarded by the authenticating gateway.
    Authentication itself happens upstream; this only reads the result.
    """
    if not x_actor_id or not x_actor_role:
        raise HTTPException(status_code=401, detail="Missing actor identity")
    try:
        role = ActorRole(x_actor_role.lower())
    except ValueError:
        raise HTTPException(status_code=403, detail=f"Unknown role '{x_actor_role}'")
    return Actor(id=x_actor_id, role=role)


async def get_manager(
    x_actor_id: str | None = Header(None),
    x_actor_role: str | None = Header(None),
) -> Actor:
    actor = await get_actor(x_actor_id, x_actor_role)
    if not actor.is_manager:
        raise HTTPException(status_code=403, detail="Operator access required")
    return actor
