"""
Oracly - FastAPI Application
Exchange integrations, incremental sync and portfolio analytics.
"""

import logging
import os
from datetime import datetime

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from oracly.api.routes import integrations, portfolio
from oracly.config import settings, setup_logging
from oracly.database import check_db_health
from oracly.exceptions import OraclyError
from oracly.services.security.credential_vault import get_credential_vault

logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title="Oracly API",
    description="Crypto portfolio tracking API",
    version=settings.APP_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def run_migrations() -> None:
    from alembic import command as _alembic_command
    from alembic.config import Config as _AlembicConfig

    root_dir = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
    cfg = _AlembicConfig(os.path.join(root_dir, "alembic.ini"))
    # Force script_location to an absolute path so the working directory does not matter
    cfg.set_main_option("script_location", os.path.join(root_dir, "oracly", "alembic"))
    cfg.set_main_option("sqlalchemy.url", settings.DATABASE_URL)
    _alembic_command.upgrade(cfg, "head")


@app.on_event("startup")
async def startup_event():
    """Initialize logging, the credential vault and the database schema."""
    setup_logging()
    logger.info("🚀 Oracly API starting up...")

    # Fail fast: without the vault no credential can be stored or read
    get_credential_vault()
    logger.info("🔐 Credential vault initialized")

    try:
        run_migrations()
        logger.info("✅ Alembic migrations applied (upgrade head)")
    except Exception as mig_e:
        logger.warning(f"Alembic migration skipped/failed: {mig_e}")


# Health check endpoint
@app.get("/health")
async def health_check():
    """Health check endpoint for load balancers and monitoring."""
    db_ok = check_db_health()
    return {
        "status": "healthy" if db_ok else "degraded",
        "database": "connected" if db_ok else "unavailable",
        "version": settings.APP_VERSION,
        "timestamp": datetime.now().isoformat(),
        "api": settings.APP_NAME,
    }


# API root
@app.get("/")
async def root():
    """API root endpoint."""
    return {
        "message": f"{settings.APP_NAME} API",
        "version": settings.APP_VERSION,
        "docs": "/docs",
        "health": "/health",
        "api_base": "/api/v1",
    }


app.include_router(integrations.router)
app.include_router(portfolio.router)


@app.exception_handler(OraclyError)
async def oracly_exception_handler(request, exc: OraclyError):
    """Domain errors carry their own status code."""
    if exc.http_status >= 500:
        logger.error(f"❌ {type(exc).__name__}: {exc}")
    else:
        logger.info(f"{type(exc).__name__}: {exc}")
    return JSONResponse(
        status_code=exc.http_status,
        content={**exc.to_dict(), "timestamp": datetime.now().isoformat()},
    )


# Global error handler
@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    """Global exception handler for better error responses."""
    logger.error(f"❌ Global exception: {exc}")

    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "message": str(exc),
            "timestamp": datetime.now().isoformat(),
        },
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=settings.HOST, port=settings.PORT)
