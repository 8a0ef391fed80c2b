"""
Domain Certificates API

Certificate lifecycle service for user-supplied custom domains. Obtains
certificates from an ACME certificate authority, installs them for the
NGINX reverse proxy and renews them before they expire.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime

import uvicorn
from fastapi import FastAPI

from config import ensure_directories, settings
from endpoints import ssl

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Domain Certificates API starting up...")

    # Ensure required directories exist
    ensure_directories()

    # Initialize database
    from core.database import initialize_database

    await initialize_database()
    logger.info("Database initialized")

    # Start certificate renewal scheduler
    from core.cert_scheduler import get_renewal_scheduler

    renewal_scheduler = get_renewal_scheduler()
    try:
        await renewal_scheduler.start()
    except Exception as e:
        logger.warning(f"Failed to start certificate renewal scheduler: {e}")

    yield

    try:
        await renewal_scheduler.stop()
    except Exception as e:
        logger.warning(f"Error stopping certificate renewal scheduler: {e}")

    logger.info("Domain Certificates API shutting down...")


app = FastAPI(
    title="Domain Certificates API",
    description="""
    Automatic SSL for custom domains.

    - Provision certificates via ACME (HTTP-01 or DNS-01 challenges)
    - Renew certificates inside the renewal window
    - Warn domain owners before certificates expire
    - Keep the NGINX custom domain configuration in sync
    """,
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

app.include_router(ssl.router)


@app.get(
    "/health",
    summary="Health Check",
    description="Basic health check endpoint to verify the API is running.",
    tags=["Health"],
)
async def health_check():
    return {
        "status": "healthy",
        "version": "0.1.0",
        "timestamp": datetime.now().isoformat(),
        "acme_environment": settings.acme_env,
    }


if __name__ == "__main__":
    uvicorn.run("main:app", host=settings.api_host, port=settings.api_port, reload=settings.api_debug, log_level="info")
