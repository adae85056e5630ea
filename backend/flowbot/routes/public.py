# /flowbot/routes/public.py

from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from flowbot.dependencies.context import AppContext, get_app_context

# Unauthenticated operational endpoints: service banner, health check and
# the Prometheus scrape target.

router = APIRouter()


@router.get("/")
async def root(ctx: AppContext = Depends(get_app_context)):
    """Root endpoint."""
    return {
        "service": "FlowBot Flow Engine",
        "version": "1.0.0",
        "status": "operational",
        "environment": ctx.settings.environment,
    }


@router.get("/health", summary="Basic Health Check")
async def health_check(ctx: AppContext = Depends(get_app_context)):
    """Basic health check for load balancers."""
    return {
        "status": "healthy",
        "store": ctx.settings.store_backend,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/metrics", summary="Prometheus metrics")
async def metrics():
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
