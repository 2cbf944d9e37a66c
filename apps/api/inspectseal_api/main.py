"""InspectSeal API - Main FastAPI application."""

import logging
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import make_asgi_app

from inspectseal_api.middleware.correlation import RequestContextMiddleware
from inspectseal_api.middleware.rate_limit import RateLimitMiddleware
from inspectseal_api.routes import sealed_exports, verify
from inspectseal_api.sealing.errors import SigningKeyError
from inspectseal_api.sealing.signer import get_key_ring
from inspectseal_api.settings import get_settings

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=settings.log_level,
    format='{"time": "%(asctime)s", "level": "%(levelname)s", "message": "%(message)s", "module": "%(name)s"}',
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    logger.info("Starting InspectSeal API...")
    try:
        settings.validate_production_settings()
    except ValueError as e:
        logger.error(f"Configuration validation failed: {e}")
        raise

    try:
        key_ring = get_key_ring()
        logger.info(f"Key ring initialized: active key {key_ring.active.key_id}")
    except SigningKeyError as e:
        if settings.environment.lower() not in ("development", "test", "dev"):
            logger.error(f"Signing configuration invalid: {e}")
            raise
        logger.warning(f"Signing keys not configured, sealing is disabled: {e}")

    yield
    logger.info("Shutting down InspectSeal API...")


app = FastAPI(
    title="InspectSeal API",
    description="Tamper-evident export bundle sealing",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=settings.cors_allow_credentials,
    allow_methods=settings.cors_allow_methods,
    allow_headers=settings.cors_allow_headers,
)

# Last added is first executed
app.add_middleware(RateLimitMiddleware)
app.add_middleware(RequestContextMiddleware)

# Prometheus metrics
metrics_app = make_asgi_app()
app.mount("/metrics", metrics_app)

app.include_router(sealed_exports.router)
app.include_router(verify.router)


@app.get("/health")
async def health_check():
    """Health check endpoint (basic liveness)."""
    return {
        "status": "healthy",
        "service": "inspectseal-api",
        "version": "0.1.0",
    }


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "service": "InspectSeal API",
        "version": "0.1.0",
        "docs": "/docs",
        "health": "/health",
    }
