"""Admin dashboard API endpoints — fleet stats and view synchronization."""

from fastapi import APIRouter, Depends

from deps import get_manager, get_reconciler, get_store
from models import Actor
from schemas import FleetStatsResponse, RefreshResponse
from services.delivery_store import DeliveryStore
from services.reconciler import Reconciler
from services.stats import fleet_snapshot, success_rate

router = APIRouter()


@router.get("/stats", response_model=FleetStatsResponse)
async def get_fleet_stats(
    store: DeliveryStore = Depends(get_store),
    actor: Actor = Depends(get_manager),
):
    """Fleet statistics derived from the current view."""
    snapshot = fleet_snapshot(store)
    return FleetStatsResponse(
        total_deliveries=snapshot.total_deliveries,
        active_deliveries=snapshot.active_deliveries,
        delivery_personnel=snapshot.delivery_personnel,
        status_breakdown=snapshot.status_breakdown,
        success_rate=round(success_rate(snapshot), 4),
    )


@router.post("/refresh", response_model=RefreshResponse)
async def refresh_view(
    reconciler: Reconciler = Depends(get_reconciler),
    actor: Actor = Depends(get_manager),
):
    """Pull deliveries, personnel and stats now and wait for the result."""
    refreshed = await reconciler.refresh()
    return RefreshResponse(
        refreshed=refreshed,
        last_refresh_at=reconciler.last_refresh_at,
        last_error=reconciler.last_error,
    )


@router.get("/sync-status")
async def sync_status(
    reconciler: Reconciler = Depends(get_reconciler),
    actor: Actor = Depends(get_manager),
):
    counters = reconciler.counters
    return {
        "in_flight": reconciler.in_flight,
        "pending": reconciler.pending,
        "last_refresh_at": reconciler.last_refresh_at,
        "last_error": reconciler.last_error,
        "signals": counters.signals,
        "coalesced": counters.coalesced,
        "refreshes": counters.refreshes,
        "failures": counters.failures,
        "retired": counters.retired,
        "ambiguous": counters.ambiguous,
    }
