"""Custody policy API - transaction policy evaluation for Ripple Custody."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST

from custody_policy.config import settings
from custody_policy.errors import CustodyApiError
from custody_policy.logging_setup import configure_logging
from custody_policy.middleware import RateLimitMiddleware, MetricsMiddleware
from custody_policy.routers import operations, policies, webhooks
from custody_policy.validation import is_valid_tenant_id, mask_sensitive

configure_logging()
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# App lifecycle
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(
        "Custody policy API ready",
        extra={
            "event": "startup",
            "environment": settings.environment,
            "auth_method": settings.auth_method,
            "tenant": mask_sensitive(settings.tenant_id) if settings.tenant_id else None,
        },
    )
    yield
    logger.info("Custody policy API shutting down", extra={"event": "shutdown"})


app = FastAPI(
    title="Custody Policy",
    description="Transaction policy evaluation for Ripple Custody",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(RateLimitMiddleware, requests_per_minute=settings.requests_per_minute)
# Starlette wraps in reverse order: metrics sits outside the limiter so 429s are counted
app.add_middleware(MetricsMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(policies.router)
app.include_router(operations.router)
app.include_router(webhooks.router)


@app.exception_handler(CustodyApiError)
async def custody_error_handler(request: Request, exc: CustodyApiError):
    """Surface upstream failures with the platform's status code."""
    logger.warning(
        "Custody API error on %s: %s (%d)", request.url.path, exc.message, exc.status_code,
    )
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.to_dict()})


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------

@app.get("/api/health")
async def health():
    """Liveness probe. Reports whether custody credentials are configured."""
    if not settings.tenant_id:
        custody_api = "unconfigured"
    elif is_valid_tenant_id(settings.tenant_id):
        custody_api = "configured"
    else:
        custody_api = "invalid_tenant_id"
    return {
        "status": "ok",
        "service": "custody-policy",
        "checks": {
            "custody_api": custody_api,
        },
    }


# ---------------------------------------------------------------------------
# Prometheus metrics
# ---------------------------------------------------------------------------

@app.get("/metrics", include_in_schema=False)
async def metrics():
    """Prometheus scrape endpoint."""
    data = generate_latest()
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)
