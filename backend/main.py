import asyncio
import traceback
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import settings
from api import router
from models.contracts import enabled_contracts
from models.database import init_database
from services.population import population_orchestrator
from utils.logger import setup_logging, get_logger
from utils.utcnow import utcnow
from workers.holders_worker import run_refresh_loop

# Setup logging
setup_logging(level=settings.LOG_LEVEL, json_format=settings.LOG_JSON)
logger = get_logger("main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    logger.info("Starting NFT holders service...", cache_backend=settings.CACHE_BACKEND)
    app.state.orchestrator = population_orchestrator

    if settings.CACHE_BACKEND == "sqlite":
        await init_database()
        logger.info("Database initialized")

    # Recover persisted progress (closes out runs that died with the process)
    for config in enabled_contracts():
        await population_orchestrator.tracker.load(config.key)

    if settings.HOLDERS_WARM_ON_STARTUP:
        for config in enabled_contracts():
            population_orchestrator.trigger(config.key)
        logger.info("Cache warm-up triggered", contracts=len(enabled_contracts()))

    stop_event = asyncio.Event()
    refresh_task = None
    if settings.HOLDERS_REFRESH_ENABLED:
        refresh_task = asyncio.create_task(
            run_refresh_loop(population_orchestrator, settings.HOLDERS_REFRESH_INTERVAL_SECONDS, stop_event),
            name="holders-refresh",
        )

    try:
        yield
    finally:
        logger.info("Shutting down...")
        stop_event.set()
        if refresh_task is not None:
            refresh_task.cancel()
            try:
                await refresh_task
            except asyncio.CancelledError:
                pass
        await population_orchestrator.shutdown()
        await population_orchestrator.gateway.close()
        await population_orchestrator.store.close()
        logger.info("Shutdown complete")


app = FastAPI(
    title="NFT Holders",
    description="Holder aggregation and caching for tiered NFT collections",
    version="1.0.0",
    lifespan=lifespan,
)


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(
        "Unhandled exception",
        path=request.url.path,
        method=request.method,
        error=str(exc),
        traceback=traceback.format_exc(),
    )
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# API routes
app.include_router(router, prefix="/api")


# Health checks
@app.get("/health")
async def health_check():
    """Basic health check - for load balancers"""
    return {"status": "ok"}


@app.get("/health/live")
async def liveness_check():
    """Liveness check - is the service running?"""
    return {"status": "alive", "timestamp": utcnow().isoformat()}


@app.get("/health/ready")
async def readiness_check():
    """Readiness check - can the cache backend be reached?"""
    checks = {"cache": await population_orchestrator.store.ping()}
    return {
        "status": "ready" if all(checks.values()) else "not_ready",
        "checks": checks,
        "cacheBackend": settings.CACHE_BACKEND,
        "rpcEndpoint": population_orchestrator.gateway.active_url,
        "timestamp": utcnow().isoformat(),
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        app,
        host="0.0.0.0",
        port=settings.PORT,
        # Single worker: population state and snapshots live in-process.
        timeout_keep_alive=30,
    )
