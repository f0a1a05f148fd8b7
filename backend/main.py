"""
Inventory Allocation & Rebalancing Engine - FastAPI Application
================================================================
Distributes SKU stock across warehouses, hubs and stores, raises low-stock
and expiry alerts, and turns rebalancing decisions into transfer orders.
"""
import os
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from rebalancer.core.config import get_settings
from rebalancer.core.exceptions import EngineError
from rebalancer.database.session import check_db_connection, init_db, SessionLocal
from rebalancer.api.v1.router import api_router
from rebalancer.middleware.exception_handler import (
    engine_exception_handler, global_exception_handler, request_logging_middleware,
)
from rebalancer.schemas.common import HealthResponse
from rebalancer.services.replenishment import DismissRetryQueue

settings = get_settings()

# ============================================================================
# Logging Configuration
# ============================================================================
logger.remove()
logger.add(sys.stderr, level=settings.LOG_LEVEL, format="{time:YYYY-MM-DD HH:mm:ss} | {level} | {message}")
os.makedirs(os.path.dirname(settings.LOG_FILE) or ".", exist_ok=True)
logger.add(
    settings.LOG_FILE,
    rotation="10 MB",
    retention="30 days",
    level=settings.LOG_LEVEL,
    format="{time:YYYY-MM-DD HH:mm:ss} | {level} | {name}:{function}:{line} | {message}",
)


# ============================================================================
# Application Lifespan
# ============================================================================
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")

    if check_db_connection():
        logger.info("✅ Database connection successful")
        init_db()
    else:
        logger.error("❌ Database connection failed!")

    app.state.dismiss_queue.start()

    logger.info(f"✅ {settings.APP_NAME} started on {settings.HOST}:{settings.PORT}")
    yield
    app.state.dismiss_queue.stop()
    logger.info(f"Shutting down {settings.APP_NAME}")


# ============================================================================
# Create FastAPI App
# ============================================================================
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Inventory allocation, alerting and rebalancing engine",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
    redirect_slashes=False,
)

# Store debug flag for exception handler
app.state.debug = settings.DEBUG
app.state.dismiss_queue = DismissRetryQueue(
    SessionLocal,
    max_attempts=settings.DISMISS_RETRY_ATTEMPTS,
    interval=settings.DISMISS_RETRY_INTERVAL_SECONDS,
)

# ============================================================================
# Middleware
# ============================================================================
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.middleware("http")(request_logging_middleware)
app.add_exception_handler(EngineError, engine_exception_handler)
app.add_exception_handler(Exception, global_exception_handler)

# ============================================================================
# Routes
# ============================================================================
app.include_router(api_router)


@app.get("/", tags=["Health"])
async def root():
    return {
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "status": "running",
        "docs": "/docs",
    }


@app.get("/health", tags=["Health"], response_model=HealthResponse)
async def health_check():
    db_ok = check_db_connection()
    return HealthResponse(
        status="healthy" if db_ok else "degraded",
        database="connected" if db_ok else "disconnected",
        version=settings.APP_VERSION,
    )


# ============================================================================
# Entry Point
# ============================================================================
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        workers=1 if settings.DEBUG else 4,
    )
