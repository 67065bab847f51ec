"""Main FastAPI application entry point."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from . import __version__
from .api_models import HealthResponse
from .config import config
from .dispatch import DispatchService
from .feed import InMemoryChangeFeed
from .http_client import SupabaseClient
from .realtime import RealtimeSync
from .routes import dispatch_router, incidents_router, realtime_router, units_router
from .routes.deps import set_backend, set_realtime, set_store
from .service import IncidentService
from .store import ResQStore

# Configure logging
logging.basicConfig(
    level=getattr(logging, config.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Global services
store: ResQStore | None = None
http_client: SupabaseClient | None = None
realtime: RealtimeSync | None = None


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Manage application lifespan events."""
    global store, http_client, realtime

    # Startup
    logger.info("Starting ResQ dispatch service")
    logger.info(
        f"Configuration: backend={config.supabase_url}, "
        f"nearby_radius={config.nearby_radius_km}km, port={config.server_port}"
    )

    try:
        config.validate()
        logger.info("Configuration validation passed")
    except ValueError as e:
        logger.error(f"Configuration validation failed: {e}")
        raise

    try:
        http_client = SupabaseClient(config)
        await http_client.start()
        logger.info("Backend client initialized")

        store = ResQStore(
            IncidentService(http_client),
            DispatchService(http_client, nearby_radius_km=config.nearby_radius_km),
            config,
        )
        await store.load_all()
        logger.info(
            f"Store loaded: {len(store.incidents)} incidents, {len(store.units)} units, "
            f"{len(store.dispatch_routes)} routes"
        )

        feed = InMemoryChangeFeed()
        realtime = RealtimeSync(store, feed)
        if not await realtime.start():
            logger.warning("Realtime sync unavailable, serving bulk-loaded data only")

        set_store(store)
        set_backend(http_client)
        set_realtime(feed, realtime)
        logger.info("All services started successfully")

    except Exception as e:
        logger.error(f"Failed to initialize services: {e}")
        if realtime:
            await realtime.stop()
        if http_client:
            await http_client.close()
        raise

    yield

    # Shutdown
    logger.info("Shutting down ResQ dispatch service")

    try:
        set_store(None)
        set_backend(None)
        set_realtime(None, None)

        if realtime:
            logger.info("Stopping realtime sync...")
            await realtime.stop()

        if store:
            store.shutdown()

        if http_client:
            logger.info("Shutting down backend client...")
            await http_client.close()

        logger.info("All services shut down successfully")

    except Exception as e:
        logger.error(f"Error during shutdown: {e}")


# Create FastAPI application
app = FastAPI(
    title="ResQ Dispatch API",
    description="Incident dispatch and realtime state synchronization service",
    version=__version__,
    lifespan=lifespan,
)

app.include_router(incidents_router)
app.include_router(units_router)
app.include_router(dispatch_router)
app.include_router(realtime_router)


@app.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Health check with store and realtime status."""
    service_status = "healthy"
    store_status = None
    realtime_status = None

    try:
        if store is None:
            service_status = "starting"
        else:
            store_status = store.get_statistics()
            if realtime is not None:
                realtime_status = realtime.get_health_status()
                if realtime_status["status"] != "healthy":
                    service_status = "degraded"
            if http_client is not None and http_client.circuit_breaker.is_open:
                service_status = "degraded"

    except Exception as e:
        logger.error(f"Error checking service health: {e}")
        service_status = "unhealthy"

    return HealthResponse(
        status=service_status,
        service="resq-dispatch",
        version=__version__,
        config={
            "supabase_url": config.supabase_url,
            "nearby_radius_km": config.nearby_radius_km,
            "clear_on_load_failure": config.clear_on_load_failure,
            "server_port": config.server_port,
            "server_host": config.server_host,
        },
        store_status=store_status,
        realtime_status=realtime_status,
    )


@app.get("/")
async def root():
    """Root endpoint with service information."""
    return {
        "message": "ResQ Dispatch API",
        "version": __version__,
        "description": "Incident dispatch and realtime state synchronization service",
        "endpoints": {
            "health": "/health",
            "incidents": "/incidents",
            "units": "/units",
            "nearby_units": "/units/nearby",
            "dispatch_routes": "/dispatch/routes",
            "preview_dispatch": "/dispatch/preview",
            "commit_dispatch": "/dispatch/commit",
            "realtime_webhook": "/realtime/webhook",
            "docs": "/docs",
        },
    }


def run() -> None:
    """Run the API server with uvicorn."""
    import uvicorn

    logger.info(f"Starting server on {config.server_host}:{config.server_port}")
    uvicorn.run(
        "resq_dispatch.main:app",
        host=config.server_host,
        port=config.server_port,
        log_level=config.log_level.lower(),
        reload=False,
    )


if __name__ == "__main__":
    run()
