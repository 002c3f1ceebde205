"""
BasketSync API — FastAPI Application Entry Point
"""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.requests import Request

from core.config import get_settings
from db.session import AsyncSessionLocal
from workers.inventory_sync import InventorySyncRunner
from workers.sync import OrderSyncOrchestrator

settings = get_settings()
logger = structlog.get_logger()

# Bare paths kept for existing dashboard clients
ROUTE_ALIASES = {
    "/sync": "/api/v1/sync",
    "/correlations": "/api/v1/correlations",
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    logger.info("BasketSync API starting up", version=settings.app_version)
    yield
    logger.info("BasketSync API shutting down")


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Incremental order sync and bought-together analytics",
    lifespan=lifespan,
)

# One runner per sync type per process: the single-flight guard lives here
app.state.order_sync = OrderSyncOrchestrator(AsyncSessionLocal, settings=settings)
app.state.inventory_sync = InventorySyncRunner(AsyncSessionLocal, settings=settings)


@app.middleware("http")
async def route_alias_middleware(request: Request, call_next):
    """
    Rewrite bare paths onto the versioned API:
      - /sync/* -> /api/v1/sync/*
      - /correlations/* -> /api/v1/correlations/*
    """
    path = request.scope.get("path", "")
    for alias, canonical in ROUTE_ALIASES.items():
        if path == alias or path.startswith(f"{alias}/"):
            request.scope["path"] = f"{canonical}{path[len(alias):]}"
            break
    return await call_next(request)


# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Import and register routers
from api.v1.routers import correlations, sync

app.include_router(sync.router)
app.include_router(correlations.router)


@app.get("/health")
async def health_check():
    """Health check endpoint for load balancers."""
    return {"status": "healthy", "version": settings.app_version}
