"""
Fleetdesk — FastAPI Backend
Delivery lifecycle management on top of the marketplace API
"""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import settings
from errors import DeliveryError
from routers import admin, deliveries, personnel, webhooks
from services.assignment import AssignmentEngine
from services.delivery_store import DeliveryStore
from services.event_stream import event_listener_loop
from services.marketplace import DataAccess, MarketplaceClient
from services.progress_tracker import ProgressTracker
from services.reconciler import Reconciler

logger = logging.getLogger(__name__)


def create_app(client: DataAccess | None = None, enable_listener: bool | None = None) -> FastAPI:
    """Build the app. `client` replaces the marketplace HTTP client when given."""
    if enable_listener is None:
        enable_listener = settings.EVENT_LISTENER_ENABLED

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown events."""
        logging.basicConfig(
            level=settings.LOG_LEVEL.upper(),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
        data_access = client or MarketplaceClient()
        store = DeliveryStore()
        reconciler = Reconciler(store, data_access)
        app.state.store = store
        app.state.tracker = ProgressTracker(store, data_access)
        app.state.engine = AssignmentEngine(store, data_access)
        app.state.reconciler = reconciler

        logger.info("🚀 Fleetdesk API starting...")
        reconciler.start()
        listener = None
        if enable_listener:
            listener = asyncio.create_task(event_listener_loop(reconciler))
        yield
        if listener is not None:
            listener.cancel()
            try:
                await listener
            except asyncio.CancelledError:
                pass
        await reconciler.stop()
        if client is None:
            await data_access.aclose()
        logger.info("🛑 Fleetdesk API shut down.")

    app = FastAPI(
        title="Fleetdesk Delivery API",
        description="Delivery assignment, progress tracking and fleet statistics",
        version="1.0.0",
        lifespan=lifespan,
    )

    # ── CORS ───────────────────────────────────────────────────
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Restrict in production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ── Errors ─────────────────────────────────────────────────
    @app.exception_handler(DeliveryError)
    async def delivery_error_handler(request: Request, exc: DeliveryError):
        if exc.status_code >= 500:
            logger.warning("%s %s: %s", request.method, request.url.path, exc.message)
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.message, "error": type(exc).__name__},
        )

    # ── Routers ────────────────────────────────────────────────
    app.include_router(deliveries.router, prefix="/api/deliveries", tags=["Deliveries"])
    app.include_router(personnel.router, prefix="/api/personnel", tags=["Delivery Personnel"])
    app.include_router(admin.router, prefix="/api/admin", tags=["Admin Dashboard"])
    app.include_router(webhooks.router, prefix="/api/webhooks", tags=["Marketplace Webhooks"])

    @app.get("/health")
    async def health_check():
        return {"status": "healthy", "service": "Fleetdesk API v1"}

    @app.get("/health/sync")
    async def health_sync(request: Request):
        """Whether the local view has been refreshed from the marketplace."""
        reconciler = request.app.state.reconciler
        return {
            "status": "ok" if reconciler.last_error is None else "degraded",
            "last_refresh_at": reconciler.last_refresh_at,
            "last_error": reconciler.last_error,
            "deliveries": reconciler.store.count(),
        }

    return app


app = create_app()
