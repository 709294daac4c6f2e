"""
Telemetry ingestion service

Mounts the input/* routes under the versioned API prefix. Devices post to
input/post and input/bulk; the remaining routes manage stored inputs.
"""
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import logging
import time

from telemetry_ingest.core.cache import check_cache_connection
from telemetry_ingest.core.config import settings
from telemetry_ingest.core.database import check_db_connection, init_db
from telemetry_ingest.api import ingestion

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

logger = logging.getLogger(__name__)

SERVICE_VERSION = "1.0.0"

app = FastAPI(
    title=settings.APP_NAME,
    description="Telemetry input ingestion for remote sensor nodes",
    version=SERVICE_VERSION,
)

# dashboards read input lists from the browser
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)

app.include_router(
    ingestion.router,
    prefix=f"{settings.API_V1_PREFIX}/input",
    tags=["Inputs"]
)


@app.middleware("http")
async def time_requests(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    elapsed = time.perf_counter() - started

    # device posts arrive constantly, keep them out of the info log
    level = logging.DEBUG if request.url.path.endswith(("/post", "/bulk")) else logging.INFO
    logger.log(level, f"{request.method} {request.url.path} {response.status_code} in {elapsed * 1000:.1f}ms")
    response.headers["X-Process-Time"] = f"{elapsed:.4f}"
    return response


@app.exception_handler(Exception)
async def unhandled_error(request: Request, exc: Exception):
    logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=True)
    detail = str(exc) if settings.ENVIRONMENT == "development" else "An error occurred"
    return JSONResponse(status_code=500, content={"detail": "Internal server error", "error": detail})


@app.get("/health")
async def health_check():
    """Store and cache reachability; the cache being down only degrades reads"""
    db_healthy = check_db_connection()
    cache_healthy = check_cache_connection()

    if not db_healthy:
        status = "unhealthy"
    elif not cache_healthy:
        status = "degraded"
    else:
        status = "healthy"

    return {
        "status": status,
        "database": "connected" if db_healthy else "disconnected",
        "cache": "connected" if cache_healthy else "disconnected",
        "environment": settings.ENVIRONMENT,
    }


@app.get("/")
async def root():
    return {
        "service": settings.APP_NAME,
        "version": SERVICE_VERSION,
        "inputs": f"{settings.API_V1_PREFIX}/input",
        "health": "/health",
    }


@app.on_event("startup")
async def startup_event():
    logger.info(f"Starting {settings.APP_NAME} ({settings.ENVIRONMENT})")

    if not check_db_connection():
        logger.error("Store unreachable at startup, input tables not checked")
        return
    init_db()
    logger.info("Input store ready")


@app.on_event("shutdown")
async def shutdown_event():
    logger.info(f"Shutting down {settings.APP_NAME}")
