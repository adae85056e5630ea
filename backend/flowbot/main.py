# /flowbot/main.py

import os
import time
import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware

from flowbot.config.settings import settings
from flowbot.utils.errors import FlowbotError
from flowbot.utils.lifecycle import lifespan
from flowbot.utils.metrics import response_time_histogram
from flowbot.routes import public, webhooks

# Initialize the FastAPI application
app = FastAPI(
    title="FlowBot Flow Engine",
    version="1.0.0",
    description="Executes operator-authored WhatsApp conversation flows driven by inbound messages and webhooks",
    lifespan=lifespan,
    openapi_url=f"/api/{settings.api_version}/openapi.json" if settings.environment != "production" else None,
    docs_url=f"/api/{settings.api_version}/docs" if settings.environment != "production" else None,
    redoc_url=f"/api/{settings.api_version}/redoc" if settings.environment != "production" else None,
)

# --- Middleware ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins or ["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(GZipMiddleware, minimum_size=1000)


@app.middleware("http")
async def performance_middleware(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    elapsed = time.perf_counter() - started
    # Route template, not the raw path
    route = request.scope.get("route")
    response_time_histogram.labels(endpoint=getattr(route, "path", "unmatched")).observe(elapsed)
    response.headers["X-Process-Time"] = f"{elapsed:.4f}"
    return response


# --- Error Handling ---
@app.exception_handler(FlowbotError)
async def flowbot_error_handler(request: Request, exc: FlowbotError):
    return JSONResponse(exc.to_dict(), status_code=exc.status_code)


# --- API Routers ---
app.include_router(public.router)
app.include_router(webhooks.router, prefix=f"/api/{settings.api_version}/webhooks")

# --- Main Entry Point for Uvicorn (for local development) ---
if __name__ == "__main__":
    port = int(os.getenv("PORT", "8000"))
    host = os.getenv("HOST", "127.0.0.1")

    uvicorn.run(
        "flowbot.main:app",
        host=host,
        port=port,
        reload=True if settings.environment == "development" else False,
        workers=settings.workers if settings.environment == "production" else 1
    )
