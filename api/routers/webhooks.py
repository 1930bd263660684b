"""
Webhook endpoints — change notifications pushed by the marketplace over HTTP.

Same payload as the Redis channel; each accepted call is one invalidation.
"""

from fastapi import APIRouter, Depends, HTTPException, Request

from deps import get_reconciler
from services.event_stream import parse_notification
from services.reconciler import Reconciler

router = APIRouter()


@router.post("/delivery-events", status_code=202)
async def delivery_event(
    request: Request,
    reconciler: Reconciler = Depends(get_reconciler),
):
    """Accept a delivery change notification and schedule a refresh."""
    notification = parse_notification(await request.body())
    if notification is None:
        raise HTTPException(status_code=422, detail="Malformed delivery event")
    reconciler.invalidate(notification)
    return {"accepted": True, "pending": reconciler.pending, "in_flight": reconciler.in_flight}
