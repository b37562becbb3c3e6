"""
Tenant Lifecycle Manager - Main Application Entry Point
Admin API for tenant provisioning, retention, purge, backups and maintenance
"""

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import structlog

from tenant_lifecycle.api import backups, domains, maintenance, tenants
from tenant_lifecycle.core.config import get_settings
from tenant_lifecycle.core.errors import (
    LifecycleError, NotFoundError, PreconditionError, ResourcePostconditionError,
    TransientInfrastructureError, ValidationError
)
from tenant_lifecycle.core.logging import configure_logging

configure_logging("DEBUG" if get_settings().DEBUG else "INFO")

logger = structlog.get_logger(__name__)
settings = get_settings()

# Checked in order; subclasses before their bases
ERROR_STATUS_CODES = [
    (ValidationError, 422),
    (NotFoundError, 404),
    (PreconditionError, 409),
    (ResourcePostconditionError, 500),
    (TransientInfrastructureError, 503),
]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager"""
    # Startup
    logger.info("Initializing Tenant Lifecycle Manager", task_execution=settings.TASK_EXECUTION)
    # Tables are created by Alembic migrations, not auto-generated
    logger.info("Database managed by Alembic migrations")

    yield

    # Shutdown
    logger.info("Shutting down Tenant Lifecycle Manager")


# Create FastAPI application
app = FastAPI(
    title="Tenant Lifecycle Manager API",
    description="Provisioning, retention, purge, backup and maintenance of tenants",
    version="1.0.0",
    lifespan=lifespan,
)

# Configure middleware stack
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(LifecycleError)
async def lifecycle_error_handler(request: Request, exc: LifecycleError):
    """Typed service errors become JSON error responses"""
    status_code = next((code for cls, code in ERROR_STATUS_CODES if isinstance(exc, cls)), 500)
    log = logger.error if status_code >= 500 else logger.info
    log("Request failed", path=request.url.path, status_code=status_code, **exc.to_dict())
    return JSONResponse(status_code=status_code, content=exc.to_dict())


# Include routers
prefix = settings.API_V1_PREFIX
app.include_router(tenants.router, prefix=f"{prefix}/tenants", tags=["tenants"])
app.include_router(backups.router, prefix=f"{prefix}/tenants/{{tenant_id}}/backups", tags=["backups"])
app.include_router(maintenance.router, prefix=f"{prefix}/tenants/{{tenant_id}}/maintenance", tags=["maintenance"])
app.include_router(domains.router, prefix=f"{prefix}/tenants/{{tenant_id}}/domains", tags=["domains"])


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {"status": "healthy", "service": "tenant-lifecycle-api"}


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "Tenant Lifecycle Manager API",
        "version": "1.0.0",
        "docs": "/docs",
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "tenant_lifecycle.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.ENVIRONMENT == "development",
        log_level="info",
    )
