"""
MenuQR Core - Main FastAPI Application.

Entry point for the subscription entitlement and delivery dispatch API
used by the MenuQR restaurant platform.

Run with:
    uvicorn menuqr.main:app --reload
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from supabase import acreate_client
from supabase._async.client import AsyncClient as AsyncSupabaseClient

from menuqr.api.v1.deliveries import router as deliveries_router
from menuqr.api.v1.entitlements import router as entitlements_router
from menuqr.api.v1.plans import router as plans_router
from menuqr.api.v1.subscriptions import router as subscriptions_router
from menuqr.config import get_settings
from menuqr.constants import API_TITLE, API_VERSION
from menuqr.errors import MenuQRError
from menuqr.logging_config import setup_logging
from menuqr.middleware import RequestContextMiddleware
from menuqr.services.container import ServiceContainer

# Get settings before logging setup so we know the debug flag
settings = get_settings()

# Configure logging
setup_logging(settings.debug)

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Lifespan event handler for startup and shutdown."""
    logger.info("api_startup", cors_origins=settings.cors_origins)

    # Initialize Supabase async client
    supabase_client: AsyncSupabaseClient | None = None
    if settings.supabase_url and settings.supabase_service_role_key:
        try:
            supabase_client = await acreate_client(
                settings.supabase_url,
                settings.supabase_service_role_key,
            )
            logger.info("supabase_configured")
        except Exception as e:
            logger.warning("supabase_init_failed", error=str(e))
    else:
        logger.warning("supabase_not_configured", detail="Auth endpoints will return 503")

    _app.state.supabase = supabase_client

    # Create services once at startup
    container = ServiceContainer(settings, supabase_client)
    container.install(_app.state)
    _app.state.container = container

    logger.info("services_initialized")

    yield

    logger.info("api_shutdown")


# Create FastAPI app
app = FastAPI(
    title=API_TITLE,
    description=(
        "Subscription plans, feature entitlements, usage limits and delivery "
        "dispatch for MenuQR restaurants."
    ),
    version=API_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# Request context middleware must come before CORS so every response gets
# the X-Request-ID header (including preflight OPTIONS responses).
app.add_middleware(RequestContextMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(MenuQRError)
async def menuqr_error_handler(request: Request, exc: MenuQRError) -> JSONResponse:
    """Translate domain errors into their HTTP status and a structured body."""
    log = logger.warning if exc.status_code >= 500 else logger.info
    log(
        "request_rejected",
        error_code=exc.error_code,
        status_code=exc.status_code,
        path=request.url.path,
    )
    return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()})


# Include routers
app.include_router(plans_router, prefix="/api/v1")
app.include_router(subscriptions_router, prefix="/api/v1")
app.include_router(entitlements_router, prefix="/api/v1")
app.include_router(deliveries_router, prefix="/api/v1")


@app.get("/")
async def root() -> dict:
    """Root endpoint with API info."""
    return {
        "name": API_TITLE,
        "version": API_VERSION,
        "description": "Subscription entitlements and delivery dispatch for MenuQR",
        "docs": "/docs",
    }


@app.get("/health")
async def health() -> dict:
    """Health check endpoint."""
    return {"status": "healthy"}
